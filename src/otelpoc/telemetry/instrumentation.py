"""Instrumentation -- Request-Pipeline und HTTP-Metriken.

RequestPipeline umhüllt einen Endpoint:
  - ``stage()`` öffnet den Root-Span. Fehler werden am Span erfasst
    (Exception + ERROR), der Span wird beendet und der Fehler geht weiter:
    ServiceError unverändert, alles andere als UnhandledError.
  - ``child()`` für Unterschritte (ausgehende Calls, Verarbeitung).

HttpMetrics zählt Requests, Latenz und aktive Verbindungen.

Usage:
    pipeline = RequestPipeline(tracker, logger=telemetry_logger)
    async with pipeline.stage("get_users", error_message="Failed to fetch users") as span:
        async with pipeline.child(span, "fetch_external_api") as child:
            ...
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from otelpoc.errors import ServiceError, UnhandledError
from otelpoc.telemetry.logs import TelemetryLogger
from otelpoc.telemetry.metrics import Meter
from otelpoc.telemetry.tracer import SpanScope, SpanTracker
from otelpoc.telemetry.types import AttributeValue, Span, SpanKind, StatusCode
from otelpoc.utils.logging import get_logger

log = get_logger(__name__)


class RequestPipeline:
    """Span-Disziplin für einen Endpoint."""

    def __init__(self, tracker: SpanTracker, *, logger: TelemetryLogger | None = None) -> None:
        self._tracker = tracker
        self._logger = logger

    @property
    def tracker(self) -> SpanTracker:
        return self._tracker

    @asynccontextmanager
    async def stage(
        self,
        name: str,
        *,
        parent: Span | None = None,
        kind: SpanKind = SpanKind.SERVER,
        attributes: dict[str, AttributeValue] | None = None,
        error_message: str = "Internal server error",
    ) -> AsyncIterator[Span]:
        span = self._tracker.start_span(name, parent=parent, kind=kind, attributes=attributes)
        try:
            yield span
        except ServiceError as exc:
            self._fail(span, exc, exc.message)
            raise
        except asyncio.CancelledError:
            if not span.is_ended and span.status_code != StatusCode.ERROR:
                span.set_error("cancelled")
            raise
        except Exception as exc:
            self._fail(span, exc, error_message)
            raise UnhandledError(error_message, details=str(exc)) from exc
        else:
            if not span.is_ended and span.status_code == StatusCode.UNSET:
                span.set_ok()
        finally:
            span.end()

    def child(
        self,
        parent: Span,
        name: str,
        *,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: dict[str, AttributeValue] | None = None,
    ) -> SpanScope:
        return self._tracker.span(name, parent=parent, kind=kind, attributes=attributes)

    def _fail(self, span: Span, exc: Exception, message: str) -> None:
        error = str(exc) or type(exc).__name__
        if isinstance(exc, ServiceError) and exc.details is not None:
            error = f"{exc.message}: {exc.details}"
        if not span.is_ended and span.status_code != StatusCode.ERROR:
            span.record_exception(exc)
            span.set_error(error)
        log.warning(
            "request_stage_failed",
            stage=span.name,
            error=error,
            error_type=type(exc).__name__,
            trace_id=span.trace_id,
        )
        if self._logger is not None:
            self._logger.error(
                message,
                attributes={"error": error, "error.type": type(exc).__name__},
                span=span,
            )


class HttpMetrics:
    """Request-Zähler, Latenz-Histogramm und aktive Verbindungen."""

    def __init__(self, meter: Meter) -> None:
        self.requests = meter.counter(
            "http_requests_total", "Total number of HTTP requests",
        )
        self.duration = meter.histogram(
            "http_request_duration_ms", "Duration of HTTP requests in milliseconds", unit="ms",
        )
        self.active = meter.up_down_counter(
            "http_active_connections", "Number of active HTTP connections",
        )

    def request_started(self) -> None:
        self.active.add(1)

    def request_finished(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        self.active.add(-1)
        self.requests.add(1, {"method": method, "route": route, "status_code": str(status_code)})
        self.duration.record(duration_ms, {"method": method, "route": route})
