"""TelemetryProcess -- Lifecycle der drei Export-Pipelines.

Zustände::

    UNINITIALIZED → RUNNING → SHUTTING_DOWN → SHUT_DOWN

  - ``initialize()`` baut Resource und ExporterSet genau einmal und startet
    die Hintergrund-Loops (Spans, Metriken).
  - ``tracker()`` / ``meter()`` / ``logger()`` liefern Handles nur im
    Zustand RUNNING.
  - ``shutdown()`` leert Traces → Metriken → Logs, jeder Schritt begrenzt
    durch ``shutdown_timeout_ms``. Wirft nie; gleichzeitige Aufrufe warten
    auf denselben Drain.

Das Objekt wird explizit durchgereicht (kein globaler Provider).

Usage:
    process = TelemetryProcess(config.telemetry)
    await process.initialize()
    tracker = process.tracker("opentelemetry-poc", "1.0.0")
    ...
    await process.shutdown()
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from otelpoc.errors import TelemetryStateError
from otelpoc.telemetry.exporters import ExporterSet
from otelpoc.telemetry.logs import SimpleLogRecordProcessor, TelemetryLogger
from otelpoc.telemetry.metrics import Meter, MetricsRegistry, PeriodicMetricReader
from otelpoc.telemetry.tracer import BatchSpanProcessor, SpanTracker
from otelpoc.telemetry.types import InstrumentationScope, ResourceDescriptor
from otelpoc.utils.logging import get_logger

if TYPE_CHECKING:
    from otelpoc.config import TelemetryConfig

log = get_logger(__name__)

ExporterFactory = Callable[["TelemetryConfig", ResourceDescriptor], ExporterSet]


class TelemetryState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    SHUT_DOWN = "shut_down"


class TelemetryProcess:
    """Besitzt Resource, Exporter und Processoren eines Prozesses."""

    def __init__(
        self,
        config: TelemetryConfig,
        *,
        exporter_factory: ExporterFactory | None = None,
    ) -> None:
        self._config = config
        self._exporter_factory: ExporterFactory = exporter_factory or ExporterSet.from_config
        self._state = TelemetryState.UNINITIALIZED

        self._resource: ResourceDescriptor | None = None
        self._exporters: ExporterSet | None = None
        self._span_processor: BatchSpanProcessor | None = None
        self._registry = MetricsRegistry()
        self._reader: PeriodicMetricReader | None = None
        self._log_processor: SimpleLogRecordProcessor | None = None

        self._trackers: dict[str, SpanTracker] = {}
        self._meters: dict[str, Meter] = {}
        self._loggers: dict[str, TelemetryLogger] = {}

        self._shutdown_task: asyncio.Task[bool] | None = None
        self._shutdown_result = True
        self._lost_steps: list[str] = []

    # ── Properties ───────────────────────────────────────────────

    @property
    def state(self) -> TelemetryState:
        return self._state

    @property
    def config(self) -> TelemetryConfig:
        return self._config

    @property
    def resource(self) -> ResourceDescriptor | None:
        return self._resource

    @property
    def exporters(self) -> ExporterSet | None:
        return self._exporters

    @property
    def registry(self) -> MetricsRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._state == TelemetryState.RUNNING

    # ── Lifecycle ────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Baut Resource + ExporterSet und startet die Pipelines (idempotent)."""
        if self._state == TelemetryState.RUNNING:
            log.debug("telemetry_already_running", service=self._config.service_name)
            return
        if self._state in (TelemetryState.SHUTTING_DOWN, TelemetryState.SHUT_DOWN):
            log.warning("telemetry_initialize_after_shutdown", state=self._state.value)
            return

        cfg = self._config
        self._resource = ResourceDescriptor(
            service_name=cfg.service_name,
            service_version=cfg.service_version,
            environment=cfg.environment,
        )
        self._exporters = self._exporter_factory(cfg, self._resource)

        self._span_processor = BatchSpanProcessor(
            self._exporters.traces,
            max_queue_size=cfg.max_queue_size,
            max_export_batch_size=cfg.max_export_batch_size,
            schedule_delay_ms=cfg.span_schedule_delay_ms,
        )
        self._reader = PeriodicMetricReader(
            self._registry,
            self._exporters.metrics,
            interval_ms=cfg.metric_export_interval_ms,
        )
        self._log_processor = SimpleLogRecordProcessor(self._exporters.logs)

        self._span_processor.start()
        self._reader.start()
        self._state = TelemetryState.RUNNING
        log.info(
            "telemetry_initialized",
            service=cfg.service_name,
            version=cfg.service_version,
            environment=cfg.environment.value,
            endpoint=cfg.endpoint,
            authenticated=bool(cfg.token),
        )

    def _require_running(self, handle: str) -> None:
        if self._state != TelemetryState.RUNNING:
            raise TelemetryStateError(
                f"Cannot create {handle} while telemetry is {self._state.value}",
                details=self._state.value,
            )

    def tracker(self, name: str, version: str = "") -> SpanTracker:
        self._require_running("tracker")
        assert self._span_processor is not None
        if name not in self._trackers:
            self._trackers[name] = SpanTracker(self._span_processor, name=name, version=version)
        return self._trackers[name]

    def meter(self, name: str, version: str = "") -> Meter:
        self._require_running("meter")
        if name not in self._meters:
            self._meters[name] = Meter(self._registry, InstrumentationScope(name, version))
        return self._meters[name]

    def logger(self, name: str, version: str = "") -> TelemetryLogger:
        self._require_running("logger")
        assert self._log_processor is not None
        if name not in self._loggers:
            self._loggers[name] = TelemetryLogger(
                self._log_processor, InstrumentationScope(name, version),
            )
        return self._loggers[name]

    async def force_flush(self) -> bool:
        """Exportiert alles Gepufferte, ohne die Pipelines zu stoppen."""
        if self._state != TelemetryState.RUNNING:
            return False
        assert self._span_processor and self._reader and self._log_processor
        traces = await self._span_processor.force_flush()
        metrics = await self._reader.force_flush()
        logs = await self._log_processor.force_flush()
        return traces and metrics and logs

    async def shutdown(self) -> bool:
        """Leert alle Pipelines in fester Reihenfolge. Wirft nie.

        Returns:
            True wenn jeder Schritt vollständig exportiert hat.
        """
        if self._state in (TelemetryState.UNINITIALIZED, TelemetryState.SHUT_DOWN):
            return self._shutdown_result
        if self._state == TelemetryState.RUNNING:
            self._state = TelemetryState.SHUTTING_DOWN
            self._shutdown_task = asyncio.get_running_loop().create_task(
                self._drain(), name="otelpoc-telemetry-shutdown",
            )
        assert self._shutdown_task is not None
        return await asyncio.shield(self._shutdown_task)

    async def _drain(self) -> bool:
        assert self._span_processor and self._reader and self._log_processor
        timeout = self._config.shutdown_timeout_ms / 1000
        steps = (
            ("traces", self._span_processor.shutdown),
            ("metrics", self._reader.shutdown),
            ("logs", self._log_processor.shutdown),
        )
        clean = True
        for signal, step in steps:
            try:
                ok = await asyncio.wait_for(step(), timeout=timeout)
            except TimeoutError:
                log.error(
                    "telemetry_shutdown_timeout",
                    signal=signal,
                    timeout_ms=self._config.shutdown_timeout_ms,
                )
                ok = False
            except Exception as exc:
                log.error("telemetry_shutdown_failed", signal=signal, error=str(exc))
                ok = False
            if not ok:
                self._lost_steps.append(signal)
            clean = clean and ok

        self._shutdown_result = clean
        self._state = TelemetryState.SHUT_DOWN
        log.info("telemetry_shut_down", clean=clean, lost=list(self._lost_steps))
        return clean

    # ── Stats ────────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "state": self._state.value,
            "service": self._config.service_name,
            "trackers": {name: t.stats() for name, t in self._trackers.items()},
            "metrics": self._registry.stats(),
            "lost": list(self._lost_steps),
        }
        if self._exporters is not None:
            result["exporters"] = self._exporters.stats()
        if self._span_processor is not None:
            result["spans_queued"] = self._span_processor.queued
            result["spans_dropped"] = self._span_processor.dropped
        if self._log_processor is not None:
            result["logs"] = self._log_processor.stats()
        return result
