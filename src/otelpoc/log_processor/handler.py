"""Log-Processor -- Funktion im Stil eines Lambda-Handlers.

Nimmt ein Log-Payload des Front-Service entgegen, startet einen eigenen
Root-Span ``lambda_process_logs`` (mit ``upstream.*``-Attributen aus
``metadata.traceId/spanId``), reichert das Log an und exportiert es als
Telemetrie-Log.

Antwort-Format (API-Gateway-kompatibel)::

    {"statusCode": 200, "body": "{\"success\": true, ...}"}
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

from otelpoc import __version__
from otelpoc.config import ProcessorConfig, load_config
from otelpoc.errors import ValidationError
from otelpoc.telemetry.correlation import CrossProcessCorrelator
from otelpoc.telemetry.process import TelemetryProcess
from otelpoc.telemetry.types import AttributeValue, Span, SpanKind
from otelpoc.utils.clock import iso_now
from otelpoc.utils.logging import get_logger

log = get_logger(__name__)

PROCESSOR_NAME = "lambda-log-processor"


@dataclass
class LambdaContext:
    """Die Felder des Lambda-Kontexts, die der Handler nutzt."""

    aws_request_id: str
    function_name: str = PROCESSOR_NAME
    function_version: str = "$LATEST"
    invoked_function_arn: str = ""
    memory_limit_in_mb: str = "256"

    @classmethod
    def mock(cls, function_name: str = "log-processor-mock", region: str = "us-east-1") -> LambdaContext:
        request_id = f"mock-{int(time.time() * 1000)}"
        return cls(
            aws_request_id=request_id,
            function_name=function_name,
            invoked_function_arn=(
                f"arn:aws:lambda:{region}:123456789012:function:{function_name}"
            ),
        )


@dataclass
class HandlerResult:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    def to_lambda(self) -> dict[str, Any]:
        return {"statusCode": self.status_code, "body": json.dumps(self.body)}


def parse_event(event: Any) -> dict[str, Any]:
    """Event → Log-Dict.

    Akzeptiert einen JSON-String, ein Dict mit ``body`` (String oder Dict)
    oder das Log-Dict selbst.

    Raises:
        ValidationError: Kein gültiges JSON-Objekt.
    """
    try:
        if isinstance(event, (str, bytes)):
            data = json.loads(event)
        elif isinstance(event, dict) and event.get("body"):
            body = event["body"]
            data = json.loads(body) if isinstance(body, (str, bytes)) else body
        else:
            data = event
    except ValueError as exc:
        raise ValidationError("Log event is not valid JSON", details=str(exc)) from exc
    if not isinstance(data, dict):
        raise ValidationError(
            "Log event must be a JSON object",
            details=type(data).__name__,
        )
    return data


def _flatten(log_data: dict[str, Any]) -> dict[str, AttributeValue]:
    attrs: dict[str, AttributeValue] = {}
    for key, value in log_data.items():
        if isinstance(value, (str, bool, int, float)):
            attrs[str(key)] = value
        elif value is not None:
            attrs[str(key)] = json.dumps(value, default=str)
    return attrs


class LogProcessor:
    """Verarbeitet Log-Events mit eigener Telemetrie."""

    def __init__(self, telemetry: TelemetryProcess, config: ProcessorConfig) -> None:
        self._config = config
        self._tracker = telemetry.tracker(PROCESSOR_NAME, __version__)
        self._logger = telemetry.logger(PROCESSOR_NAME, __version__)
        meter = telemetry.meter(PROCESSOR_NAME, __version__)
        self._processed = meter.counter(
            "lambda_logs_processed_total", "Total number of logs processed by Lambda",
        )
        self._duration = meter.histogram(
            "lambda_log_processing_duration_ms", "Duration of log processing in milliseconds",
        )
        self._correlator = CrossProcessCorrelator()

    async def handle(self, event: Any, context: LambdaContext) -> dict[str, Any]:
        """Verarbeitet ein Event. Wirft nie; Fehler werden zu statusCode 500."""
        start = time.perf_counter()
        async with self._tracker.span("lambda_process_logs", kind=SpanKind.SERVER) as span:
            try:
                log_data = parse_event(event)
                level = str(log_data.get("level") or "info")
                service = str(log_data.get("service") or "unknown")
                span.set_attributes({
                    "log.level": level,
                    "log.service": service,
                    "lambda.request_id": context.aws_request_id,
                })
                self._correlator.annotate(span, self._correlator.extract(log_data))
                self._logger.info(
                    "Processing log from application",
                    attributes={
                        "level": level,
                        "service": service,
                        "message": str(log_data.get("message", "")),
                        "requestId": context.aws_request_id,
                    },
                    span=span,
                )
            except Exception as exc:
                self._logger.error(
                    "Lambda handler error",
                    attributes={"error": str(exc), "requestId": context.aws_request_id},
                    span=span,
                )
                return self._fail(span, exc, "Internal Lambda error").to_lambda()

            enriched = {
                **log_data,
                "processedAt": iso_now(),
                "processor": PROCESSOR_NAME,
                "lambdaRequestId": context.aws_request_id,
                "awsRegion": self._config.aws_region,
            }
            try:
                await self._enrich_and_export(enriched, level, span)
            except Exception as exc:
                self._logger.error("Failed to process log", attributes={"error": str(exc)}, span=span)
                return self._fail(span, exc, "Failed to process log").to_lambda()

            duration = (time.perf_counter() - start) * 1000
            self._processed.add(1, {"level": level, "service": service})
            self._duration.record(duration, {"level": level})
            self._logger.info(
                "Log processed and exported to Observe",
                attributes={"level": level, "service": service, "duration": duration},
                span=span,
            )
            span.set_ok()
            span.set_attribute("processing.duration_ms", duration)

            metadata = log_data.get("metadata")
            log_id = metadata.get("traceId") if isinstance(metadata, dict) else None
            log.debug("log_processed", request_id=context.aws_request_id, duration_ms=round(duration, 1))
            return HandlerResult(200, {
                "success": True,
                "message": "Log processed and exported to Observe",
                "logId": log_id or "unknown",
                "processedAt": enriched["processedAt"],
            }).to_lambda()

    async def _enrich_and_export(self, enriched: dict[str, Any], level: str, parent: Span) -> None:
        async with self._tracker.span("enrich_and_export_log", parent=parent) as child:
            await asyncio.sleep(self._config.processing_delay_ms / 1000)
            self._logger.emit(
                level,
                str(enriched.get("message", "")),
                attributes=_flatten(enriched),
                span=child,
            )
            child.set_attribute("log.enriched", True)

    def _fail(self, span: Span, exc: Exception, error: str) -> HandlerResult:
        details = exc.details if isinstance(exc, ValidationError) and exc.details else str(exc)
        span.record_exception(exc)
        span.set_error(str(exc))
        log.warning("log_processing_failed", error=error, details=str(details))
        return HandlerResult(500, {"success": False, "error": error, "details": str(details)})


# ── Lambda-Einstiegspunkt ────────────────────────────────────────

async def _invoke_once(event: Any, context: LambdaContext) -> dict[str, Any]:
    config = load_config(None, "log_processor")
    telemetry = TelemetryProcess(config.telemetry)
    await telemetry.initialize()
    try:
        return await LogProcessor(telemetry, config).handle(event, context)
    finally:
        await telemetry.shutdown()


def handler(event: Any, context: Any) -> dict[str, Any]:
    """Einstiegspunkt für AWS Lambda.

    Pro Aufruf eigener TelemetryProcess, der vor der Rückkehr geleert wird
    (die Ausführungsumgebung wird zwischen Aufrufen eingefroren).
    """
    if not isinstance(context, LambdaContext):
        context = LambdaContext(
            aws_request_id=getattr(context, "aws_request_id", "unknown"),
            function_name=getattr(context, "function_name", PROCESSOR_NAME),
        )
    return asyncio.run(_invoke_once(event, context))
