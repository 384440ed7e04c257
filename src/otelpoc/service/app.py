"""Front-Service: HTTP-API mit Traces, Metriken und Logs.

Endpunkte:
  GET  /health            → Health-Check
  GET  /api/users         → Users von externer API (Child-Span für den Call)
  POST /api/process       → Simulierte Verarbeitung (Child-Span)
  GET  /api/metrics-demo  → Zufallswert, beobachtet vom Gauge demo_random_value
  POST /api/logs-to-lambda → Log-Payload an den Log-Processor, mit
                             metadata.traceId/spanId des Request-Spans

Fehler: ValidationError → 400, DownstreamCallError → 502, alles andere → 500.

Der TelemetryProcess wird im Lifespan initialisiert und beim Beenden
(SIGTERM/SIGINT über uvicorn) geleert.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from otelpoc import __version__
from otelpoc.config import ServiceConfig
from otelpoc.errors import DownstreamCallError, ServiceError
from otelpoc.service.models import (
    HealthResponse,
    LogsRequest,
    LogsResponse,
    MetricsDemoResponse,
    ProcessRequest,
    ProcessResponse,
    UsersResponse,
)
from otelpoc.telemetry.correlation import CrossProcessCorrelator
from otelpoc.telemetry.instrumentation import HttpMetrics, RequestPipeline
from otelpoc.telemetry.logs import TelemetryLogger
from otelpoc.telemetry.metrics import AsyncGauge, Meter, ObservationResult
from otelpoc.telemetry.process import TelemetryProcess
from otelpoc.telemetry.types import SpanKind
from otelpoc.utils.clock import iso_now
from otelpoc.utils.logging import bind_context, clear_context, get_logger

log = get_logger(__name__)


# ============================================================================
# Laufzeit-Zustand
# ============================================================================


@dataclass
class DemoValue:
    """Letzter Zufallswert von /api/metrics-demo, gelesen vom Gauge-Callback."""

    gauge: AsyncGauge
    value: int | None = None

    def observe(self, result: ObservationResult) -> None:
        if self.value is not None:
            result.observe(self.gauge, self.value, {"source": "demo"})


@dataclass
class ServiceContext:
    """Alles, was die Endpunkte brauchen. Lebt für die Dauer des Lifespans."""

    config: ServiceConfig
    telemetry: TelemetryProcess
    client: httpx.AsyncClient
    pipeline: RequestPipeline
    logger: TelemetryLogger
    meter: Meter
    http_metrics: HttpMetrics
    demo: DemoValue
    correlator: CrossProcessCorrelator = field(default_factory=CrossProcessCorrelator)


def _context(request: Request) -> ServiceContext:
    return request.app.state.service  # type: ignore[no-any-return]


def _route_of(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


async def _bounded(call: Awaitable[httpx.Response], timeout_ms: int, target: str) -> httpx.Response:
    """Begrenzt einen ausgehenden Call samt Body-Download auf ``timeout_ms``.

    Der httpx-Timeout gilt nur pro Phase (connect, read je Chunk, ...); ein
    Downstream, der langsam tröpfelt, würde ihn nie auslösen.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout_ms / 1000)
    except TimeoutError as exc:
        raise TimeoutError(f"{target} did not respond within {timeout_ms} ms") from exc


# ============================================================================
# App
# ============================================================================


def create_app(
    config: ServiceConfig,
    *,
    telemetry: TelemetryProcess | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Erstellt die FastAPI-Applikation.

    Args:
        config: Service-Konfiguration.
        telemetry: Vorbereiteter TelemetryProcess (Tests). None = aus config.
        transport: httpx-Transport für ausgehende Calls (Tests).
    """
    process = telemetry or TelemetryProcess(config.telemetry)
    service_name = config.telemetry.service_name

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await process.initialize()
        tracker = process.tracker(service_name, __version__)
        meter = process.meter(service_name, __version__)
        logger = process.logger("app")
        client = httpx.AsyncClient(
            transport=transport,
            timeout=config.downstream_timeout_ms / 1000,
        )
        app.state.service = ServiceContext(
            config=config,
            telemetry=process,
            client=client,
            pipeline=RequestPipeline(tracker, logger=logger),
            logger=logger,
            meter=meter,
            http_metrics=HttpMetrics(meter),
            demo=DemoValue(gauge=meter.gauge("demo_random_value", "Random demo value")),
        )
        logger.info(
            "Server started",
            attributes={"port": config.port, "environment": config.telemetry.environment.value},
        )
        log.info("service_started", port=config.port, service=service_name)
        try:
            yield
        finally:
            log.info("service_stopping")
            await client.aclose()
            clean = await process.shutdown()
            log.info("service_stopped", telemetry_clean=clean)

    app = FastAPI(
        title="OpenTelemetry POC",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware & Fehler ──────────────────────────────────────

    @app.middleware("http")
    async def http_metrics(
        request: Request, call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        ctx = _context(request)
        clear_context()
        bind_context(method=request.method, path=request.url.path)
        ctx.http_metrics.request_started()
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            ctx.http_metrics.request_finished(
                request.method,
                _route_of(request),
                status_code,
                (time.perf_counter() - start) * 1000,
            )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
            for err in exc.errors()
        ]
        log.info("invalid_request", path=request.url.path, details=details)
        return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})

    # ── Endpunkte ────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health(ctx: ServiceContext = Depends(_context)) -> dict[str, Any]:
        ctx.logger.info("Health check requested", attributes={"path": "/health"})
        return {"status": "healthy", "timestamp": iso_now()}

    @app.get("/api/users", response_model=UsersResponse)
    async def get_users(ctx: ServiceContext = Depends(_context)) -> dict[str, Any]:
        url = ctx.config.users_api_url
        async with ctx.pipeline.stage("get_users", error_message="Failed to fetch users") as span:
            ctx.logger.info("Fetching users", attributes={"operation": "get_users"}, span=span)
            async with ctx.pipeline.child(
                span,
                "fetch_external_api",
                kind=SpanKind.CLIENT,
                attributes={"http.method": "GET", "http.url": url},
            ) as child:
                response = await _bounded(
                    ctx.client.get(url), ctx.config.downstream_timeout_ms, "Users API",
                )
                child.set_attribute("http.status_code", response.status_code)
                response.raise_for_status()
                users = response.json()
                if not isinstance(users, list):
                    raise ValueError(f"Expected a list of users, got {type(users).__name__}")

            span.set_attribute("users.count", len(users))
            ctx.logger.info("Users fetched successfully", attributes={"count": len(users)}, span=span)
            return {"success": True, "count": len(users), "users": users[:3]}

    @app.post("/api/process", response_model=ProcessResponse)
    async def process_data(
        body: ProcessRequest, ctx: ServiceContext = Depends(_context),
    ) -> dict[str, Any]:
        items = len(body.data)
        async with ctx.pipeline.stage(
            "process_data",
            attributes={"data.size": items},
            error_message="Processing failed",
        ) as span:
            ctx.logger.info(
                "Processing data",
                attributes={"operation": "process_data", "dataSize": items},
                span=span,
            )
            async with ctx.pipeline.child(span, "data_processing") as child:
                await asyncio.sleep(ctx.config.processing_delay_ms / 1000)
                child.set_attribute("processing.time_ms", ctx.config.processing_delay_ms)

            span.set_attribute("result.items", items)
            ctx.logger.info("Data processed successfully", attributes={"items": items}, span=span)
            return {"processed": True, "items": items, "timestamp": iso_now()}

    @app.get("/api/metrics-demo", response_model=MetricsDemoResponse)
    async def metrics_demo(ctx: ServiceContext = Depends(_context)) -> dict[str, Any]:
        async with ctx.pipeline.stage("metrics_demo", error_message="Metrics demo failed") as span:
            ctx.logger.info("Generating metrics demo", attributes={"operation": "metrics_demo"}, span=span)
            value = random.randint(0, 99)
            ctx.demo.value = value
            # Gleiche gebundene Methode → wird nur einmal registriert
            ctx.meter.add_batch_callback(ctx.demo.observe, [ctx.demo.gauge])
            span.set_attribute("demo.value", value)
            ctx.logger.info("Metrics demo generated", attributes={"value": value}, span=span)
            return {
                "success": True,
                "randomValue": value,
                "message": "Metrics generated successfully",
            }

    @app.post("/api/logs-to-lambda", response_model=LogsResponse)
    async def logs_to_lambda(
        body: LogsRequest, ctx: ServiceContext = Depends(_context),
    ) -> dict[str, Any]:
        url = ctx.config.lambda_url
        async with ctx.pipeline.stage("send_logs_to_lambda", kind=SpanKind.SERVER) as span:
            ctx.logger.info(
                "Sending logs to Lambda",
                attributes={
                    "operation": "send_logs_to_lambda",
                    "message": body.message,
                    "level": body.level,
                },
                span=span,
            )
            payload = ctx.correlator.inject(
                {
                    "timestamp": iso_now(),
                    "level": body.level,
                    "message": body.message,
                    "service": service_name,
                    "metadata": body.metadata,
                },
                span,
            )
            span.set_attributes({"lambda.url": url, "log.level": body.level})

            try:
                response = await _bounded(
                    ctx.client.post(url, json=payload), ctx.config.downstream_timeout_ms, "Lambda",
                )
                response.raise_for_status()
            except (httpx.HTTPError, TimeoutError) as exc:
                log.warning("lambda_call_failed", url=url, error=str(exc) or type(exc).__name__)
                raise DownstreamCallError(
                    "Failed to send logs to Lambda",
                    details=str(exc) or type(exc).__name__,
                ) from exc

            span.set_attribute("lambda.response.status", response.status_code)
            ctx.logger.info(
                "Logs sent to Lambda successfully",
                attributes={"status": response.status_code},
                span=span,
            )
            try:
                lambda_response: Any = response.json()
            except ValueError:
                lambda_response = response.text
            return {
                "success": True,
                "message": "Logs sent to Lambda",
                "lambdaResponse": lambda_response,
            }

    return app
