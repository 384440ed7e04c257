"""Telemetrie-Logs -- OTLP-Log-Pipeline.

Logs, die an den Collector gehen (nicht zu verwechseln mit den internen
structlog-Diagnosen). Trace-/Span-ID werden nur angehängt, wenn der
Aufrufer den Span explizit übergibt.

Der Processor exportiert jeden Record sofort (sync-on-write): ``on_emit``
plant den Export als Task im laufenden Event-Loop ein. Ohne laufenden
Loop wird der Record bis zum nächsten ``force_flush()`` zurückgehalten.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from otelpoc.telemetry.exporters import Exporter
from otelpoc.telemetry.types import (
    AttributeValue,
    InstrumentationScope,
    Span,
    check_attribute,
    otlp_attributes,
)
from otelpoc.utils.logging import get_logger

log = get_logger(__name__)


class Severity(IntEnum):
    """OTLP SeverityNumber (jeweils erste Stufe)."""
    DEBUG = 5
    INFO = 9
    WARN = 13
    ERROR = 17
    FATAL = 21


_LEVEL_ALIASES = {
    "debug": Severity.DEBUG,
    "info": Severity.INFO,
    "warn": Severity.WARN,
    "warning": Severity.WARN,
    "error": Severity.ERROR,
    "fatal": Severity.FATAL,
    "critical": Severity.FATAL,
}


def severity_for(level: str) -> Severity:
    """Level-String → Severity. Unbekannte Level gelten als INFO."""
    return _LEVEL_ALIASES.get(str(level).lower(), Severity.INFO)


@dataclass
class LogRecord:
    """Ein exportierbarer Log-Eintrag."""
    body: str
    severity: Severity = Severity.INFO
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    trace_id: str = ""
    span_id: str = ""
    timestamp_ns: int = 0
    scope: InstrumentationScope = field(default_factory=lambda: InstrumentationScope("otelpoc"))

    def __post_init__(self) -> None:
        if not self.timestamp_ns:
            self.timestamp_ns = time.time_ns()

    @property
    def severity_text(self) -> str:
        return self.severity.name

    def to_otlp(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "timeUnixNano": str(self.timestamp_ns),
            "observedTimeUnixNano": str(self.timestamp_ns),
            "severityNumber": int(self.severity),
            "severityText": self.severity_text,
            "body": {"stringValue": self.body},
            "attributes": otlp_attributes(self.attributes),
        }
        if self.trace_id:
            record["traceId"] = self.trace_id
            record["spanId"] = self.span_id
        return record


# ── Processor ────────────────────────────────────────────────────

class SimpleLogRecordProcessor:
    """Exportiert jeden Record einzeln, sobald er emittiert wird."""

    def __init__(self, exporter: Exporter) -> None:
        self._exporter = exporter
        self._pending: set[asyncio.Task[bool]] = set()
        self._deferred: list[LogRecord] = []
        self._is_shutdown = False
        self._emitted_count = 0
        self._dropped_count = 0

    def on_emit(self, record: LogRecord) -> None:
        if self._is_shutdown:
            self._dropped_count += 1
            log.debug("log_record_dropped_after_shutdown")
            return
        self._emitted_count += 1
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deferred.append(record)
            return
        task = loop.create_task(self._export([record]))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _export(self, records: list[LogRecord]) -> bool:
        try:
            return await self._exporter.export(records)
        except Exception as exc:
            log.warning("log_export_error", error=str(exc), records=len(records))
            return False

    async def force_flush(self) -> bool:
        """Wartet auf alle laufenden Exporte und exportiert zurückgehaltene Records."""
        ok = True
        if self._deferred:
            batch, self._deferred = self._deferred, []
            ok = await self._export(batch)
        pending = list(self._pending)
        if pending:
            results = await asyncio.gather(*pending)
            ok = all(results) and ok
        return ok

    async def shutdown(self) -> bool:
        if self._is_shutdown:
            return True
        self._is_shutdown = True
        try:
            return await self.force_flush()
        finally:
            await self._exporter.shutdown()

    def stats(self) -> dict[str, Any]:
        return {
            "emitted": self._emitted_count,
            "dropped": self._dropped_count,
            "pending": len(self._pending) + len(self._deferred),
        }


# ── Logger ───────────────────────────────────────────────────────

class TelemetryLogger:
    """Scoped Handle zum Emittieren von Telemetrie-Logs.

    Usage:
        logger = process.logger("lambda-log-processor")
        logger.info("Log processed", attributes={"log.level": "info"}, span=span)
    """

    def __init__(self, processor: SimpleLogRecordProcessor, scope: InstrumentationScope) -> None:
        self._processor = processor
        self.scope = scope

    def emit(
        self,
        severity: Severity | str,
        body: str,
        *,
        attributes: dict[str, AttributeValue] | None = None,
        span: Span | None = None,
    ) -> LogRecord:
        if not isinstance(severity, Severity):
            severity = severity_for(severity)
        attrs = dict(attributes or {})
        for key, value in attrs.items():
            check_attribute(key, value)
        record = LogRecord(
            body=str(body),
            severity=severity,
            attributes=attrs,
            trace_id=span.trace_id if span is not None else "",
            span_id=span.span_id if span is not None else "",
            scope=self.scope,
        )
        self._processor.on_emit(record)
        return record

    def debug(self, body: str, **kwargs: Any) -> LogRecord:
        return self.emit(Severity.DEBUG, body, **kwargs)

    def info(self, body: str, **kwargs: Any) -> LogRecord:
        return self.emit(Severity.INFO, body, **kwargs)

    def warn(self, body: str, **kwargs: Any) -> LogRecord:
        return self.emit(Severity.WARN, body, **kwargs)

    def error(self, body: str, **kwargs: Any) -> LogRecord:
        return self.emit(Severity.ERROR, body, **kwargs)
