"""Mock-Lambda-Runtime: HTTP-Server, der den Handler pro POST aufruft.

  GET  /health   → {"status": "healthy", "service": "lambda-mock"}
  POST /<beliebig> → handler(event, mock_context), Antwort = statusCode + body
  sonst          → 405 {"error": "Method not allowed"}
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from otelpoc import __version__
from otelpoc.config import ProcessorConfig
from otelpoc.log_processor.handler import LambdaContext, LogProcessor
from otelpoc.telemetry.process import TelemetryProcess
from otelpoc.utils.logging import bind_context, clear_context, get_logger

log = get_logger(__name__)

_OTHER_METHODS = ["GET", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def create_app(
    config: ProcessorConfig,
    *,
    telemetry: TelemetryProcess | None = None,
) -> FastAPI:
    """Erstellt die Mock-Runtime als FastAPI-Applikation."""
    process = telemetry or TelemetryProcess(config.telemetry)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await process.initialize()
        app.state.processor = LogProcessor(process, config)
        log.info("lambda_mock_started", port=config.port, region=config.aws_region)
        try:
            yield
        finally:
            clean = await process.shutdown()
            log.info("lambda_mock_stopped", telemetry_clean=clean)

    app = FastAPI(title="Lambda Mock Runtime", version=__version__, lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy", "service": "lambda-mock"}

    @app.post("/{path:path}")
    async def invoke(request: Request, path: str = "") -> Response:
        raw = await request.body()
        try:
            event = json.loads(raw)
        except ValueError as exc:
            log.warning("lambda_mock_bad_body", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "details": str(exc)},
            )

        context = LambdaContext.mock(region=config.aws_region)
        clear_context()
        bind_context(request_id=context.aws_request_id)
        log.info("lambda_mock_invoke", request_id=context.aws_request_id, path=f"/{path}")

        processor: LogProcessor = request.app.state.processor
        result = await processor.handle(event, context)
        log.info("lambda_mock_done", status=result.get("statusCode", 200))
        return Response(
            content=result.get("body") or json.dumps(result),
            status_code=result.get("statusCode", 200),
            media_type="application/json",
            headers={"Access-Control-Allow-Origin": "*"},
        )

    @app.api_route("/{path:path}", methods=_OTHER_METHODS)
    async def method_not_allowed(path: str = "") -> JSONResponse:
        return JSONResponse(status_code=405, content={"error": "Method not allowed"})

    return app
