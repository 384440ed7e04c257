"""MetricsRegistry -- Counter, UpDownCounter, Histogram, AsyncGauge.

OTLP-kompatible Metriken mit kumulativer Temporalität:
  - Counter:        Monoton steigende Zähler (Requests, verarbeitete Logs)
  - UpDownCounter:  Kann steigen/fallen (aktive Connections)
  - Histogram:      Verteilungen (Latenz)
  - AsyncGauge:     Wird nur beim Collect über Callbacks beobachtet

Datenpunkte sind pro Tag-Set (str → str) getrennt. Der
PeriodicMetricReader ruft ``collect()`` im Intervall auf und exportiert.

Usage:
    meter = process.meter("opentelemetry-poc", "1.0.0")
    requests = meter.counter("http_requests_total", "Total HTTP requests")
    requests.add(1, {"method": "GET", "route": "/health", "status_code": "200"})

    gauge = meter.gauge("demo_random_value", "Random demo value")
    gauge.add_callback(holder.observe)   # gleiche Methode → keine Doppel-Registrierung
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from otelpoc.errors import ValidationError
from otelpoc.telemetry.exporters import Exporter
from otelpoc.telemetry.types import (
    DEFAULT_BUCKET_BOUNDARIES,
    HistogramDataPoint,
    InstrumentationScope,
    MetricDataPoint,
    MetricKind,
    MetricSnapshot,
    is_real_number,
)
from otelpoc.utils.logging import get_logger

log = get_logger(__name__)

Tags = Mapping[str, str]
TagKey = tuple[tuple[str, str], ...]


def _tag_key(tags: Tags | None) -> TagKey:
    if not tags:
        return ()
    for key, value in tags.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise ValidationError(
                "Metric tags must map str to str",
                details={"key": repr(key), "value": repr(value)},
            )
    return tuple(sorted(tags.items()))


# ── Observations ─────────────────────────────────────────────────

@dataclass
class Observation:
    """Ein von einem Gauge-Callback gelieferter Messwert."""
    value: float
    tags: dict[str, str] = field(default_factory=dict)


GaugeCallback = Callable[[], Union[Observation, Sequence[Observation], None]]


class ObservationResult:
    """Sammelt Beobachtungen eines Batch-Callbacks für mehrere Gauges."""

    def __init__(self, gauges: Sequence[AsyncGauge]) -> None:
        self._allowed = {id(g) for g in gauges}
        self.samples: list[tuple[AsyncGauge, Observation]] = []

    def observe(self, gauge: AsyncGauge, value: float, tags: Tags | None = None) -> None:
        if id(gauge) not in self._allowed:
            raise ValidationError(
                f"Gauge '{gauge.name}' is not part of this batch callback",
            )
        self.samples.append((gauge, Observation(value=value, tags=dict(tags or {}))))


BatchCallback = Callable[[ObservationResult], None]


# ── Instrumente ──────────────────────────────────────────────────

class _Instrument:
    kind: MetricKind = MetricKind.COUNTER

    def __init__(
        self,
        name: str,
        description: str = "",
        unit: str = "1",
        scope: InstrumentationScope | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.unit = unit
        self.scope = scope or InstrumentationScope("otelpoc")
        self._start_time_ns = time.time_ns()

    def _snapshot(self) -> MetricSnapshot:
        return MetricSnapshot(
            name=self.name,
            kind=self.kind,
            description=self.description,
            unit=self.unit,
            scope=self.scope,
        )

    def snapshot(self) -> MetricSnapshot:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class _SumInstrument(_Instrument):

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._totals: dict[TagKey, float] = {}

    def _add(self, amount: float, tags: Tags | None) -> None:
        key = _tag_key(tags)
        self._totals[key] = self._totals.get(key, 0.0) + amount

    def value(self, tags: Tags | None = None) -> float:
        """Aktueller Stand für ein Tag-Set (0.0 wenn unbekannt)."""
        return self._totals.get(_tag_key(tags), 0.0)

    def snapshot(self) -> MetricSnapshot:
        snap = self._snapshot()
        snap.data_points = [
            MetricDataPoint(value=total, attributes=dict(key), start_time_ns=self._start_time_ns)
            for key, total in self._totals.items()
        ]
        return snap


class Counter(_SumInstrument):
    """Monoton steigender Zähler."""

    kind = MetricKind.COUNTER

    def add(self, amount: float = 1, tags: Tags | None = None) -> None:
        """Addiert einen nicht-negativen Betrag.

        Raises:
            ValidationError: Betrag negativ, nicht endlich oder keine Zahl.
        """
        if not is_real_number(amount) or amount < 0:
            raise ValidationError(
                f"Counter '{self.name}' requires a finite non-negative number",
                details=repr(amount),
            )
        self._add(amount, tags)


class UpDownCounter(_SumInstrument):
    """Zähler, der steigen und fallen kann."""

    kind = MetricKind.UP_DOWN_COUNTER

    def add(self, amount: float, tags: Tags | None = None) -> None:
        if not is_real_number(amount):
            raise ValidationError(
                f"UpDownCounter '{self.name}' requires a finite number",
                details=repr(amount),
            )
        self._add(amount, tags)


class Histogram(_Instrument):
    """Verteilung mit expliziten Bucket-Grenzen."""

    kind = MetricKind.HISTOGRAM

    def __init__(
        self,
        name: str,
        description: str = "",
        unit: str = "ms",
        scope: InstrumentationScope | None = None,
        boundaries: Sequence[float] | None = None,
    ) -> None:
        super().__init__(name, description, unit, scope)
        bounds = list(boundaries if boundaries is not None else DEFAULT_BUCKET_BOUNDARIES)
        if bounds != sorted(set(bounds)):
            raise ValidationError(
                f"Histogram '{name}' boundaries must be strictly increasing",
                details=bounds,
            )
        self.boundaries = bounds
        self._points: dict[TagKey, HistogramDataPoint] = {}

    def record(self, value: float, tags: Tags | None = None) -> None:
        if not is_real_number(value):
            raise ValidationError(
                f"Histogram '{self.name}' requires a finite number",
                details=repr(value),
            )
        key = _tag_key(tags)
        point = self._points.get(key)
        if point is None:
            point = HistogramDataPoint(
                bucket_boundaries=list(self.boundaries),
                attributes=dict(key),
                start_time_ns=self._start_time_ns,
            )
            self._points[key] = point
        point.record(value)

    def get(self, tags: Tags | None = None) -> HistogramDataPoint | None:
        return self._points.get(_tag_key(tags))

    def snapshot(self) -> MetricSnapshot:
        snap = self._snapshot()
        snap.histogram_points = [p.copy() for p in self._points.values()]
        return snap


class AsyncGauge(_Instrument):
    """Beobachteter Wert, gelesen nur beim Collect.

    Ein Callback, der bereits registriert ist (Gleichheit des Callables,
    also auch dieselbe gebundene Methode), wird nicht erneut registriert.
    Pro Collect-Zyklus liefert jedes Tag-Set höchstens einen Wert.
    """

    kind = MetricKind.GAUGE

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._callbacks: list[GaugeCallback] = []
        self._cycle: dict[TagKey, MetricDataPoint] = {}

    @property
    def callbacks(self) -> list[GaugeCallback]:
        return list(self._callbacks)

    def add_callback(self, callback: GaugeCallback) -> bool:
        """Registriert einen Callback. False wenn bereits registriert."""
        if callback in self._callbacks:
            return False
        self._callbacks.append(callback)
        return True

    def _begin_cycle(self) -> None:
        self._cycle = {}

    def _observe(self, observation: Observation) -> None:
        if not is_real_number(observation.value):
            raise ValidationError(
                f"Gauge '{self.name}' observed a non-numeric value",
                details=repr(observation.value),
            )
        key = _tag_key(observation.tags)
        self._cycle[key] = MetricDataPoint(value=observation.value, attributes=dict(key))

    def snapshot(self) -> MetricSnapshot:
        snap = self._snapshot()
        snap.data_points = list(self._cycle.values())
        return snap


def _as_observations(result: Observation | Sequence[Observation] | None) -> list[Observation]:
    if result is None:
        return []
    if isinstance(result, Observation):
        return [result]
    return list(result)


# ── Registry ─────────────────────────────────────────────────────

@dataclass
class _BatchRegistration:
    callback: BatchCallback
    gauges: tuple[AsyncGauge, ...]


class MetricsRegistry:
    """Alle Instrumente eines Prozesses, eindeutig nach Name."""

    def __init__(self) -> None:
        self._instruments: dict[str, _Instrument] = {}
        self._batch_callbacks: list[_BatchRegistration] = []
        self._collect_count = 0
        self._callback_errors = 0

    def _get_or_create(self, cls: type[_Instrument], name: str, **kwargs: Any) -> Any:
        existing = self._instruments.get(name)
        if existing is not None:
            if type(existing) is not cls:
                raise ValidationError(
                    f"Metric '{name}' already registered as {existing.kind.value}",
                    details={"requested": cls.kind.value},
                )
            return existing
        if not name:
            raise ValidationError("Metric name must not be empty")
        instrument = cls(name, **kwargs)
        self._instruments[name] = instrument
        return instrument

    def counter(
        self, name: str, description: str = "", unit: str = "1",
        scope: InstrumentationScope | None = None,
    ) -> Counter:
        return self._get_or_create(Counter, name, description=description, unit=unit, scope=scope)

    def up_down_counter(
        self, name: str, description: str = "", unit: str = "1",
        scope: InstrumentationScope | None = None,
    ) -> UpDownCounter:
        return self._get_or_create(
            UpDownCounter, name, description=description, unit=unit, scope=scope,
        )

    def histogram(
        self, name: str, description: str = "", unit: str = "ms",
        boundaries: Sequence[float] | None = None,
        scope: InstrumentationScope | None = None,
    ) -> Histogram:
        return self._get_or_create(
            Histogram, name, description=description, unit=unit,
            scope=scope, boundaries=boundaries,
        )

    def gauge(
        self, name: str, description: str = "", unit: str = "1",
        callback: GaugeCallback | None = None,
        scope: InstrumentationScope | None = None,
    ) -> AsyncGauge:
        gauge: AsyncGauge = self._get_or_create(
            AsyncGauge, name, description=description, unit=unit, scope=scope,
        )
        if callback is not None:
            gauge.add_callback(callback)
        return gauge

    def add_batch_callback(self, callback: BatchCallback, gauges: Sequence[AsyncGauge]) -> bool:
        """Ein Callback beobachtet mehrere Gauges. False wenn bereits registriert."""
        for registration in self._batch_callbacks:
            if registration.callback == callback:
                return False
        self._batch_callbacks.append(_BatchRegistration(callback, tuple(gauges)))
        return True

    # ── Collection ───────────────────────────────────────────────

    def collect(self) -> list[MetricSnapshot]:
        """Beobachtet alle Gauges einmal und erstellt Snapshots.

        Fehlerhafte Callbacks werden geloggt und übersprungen.
        Instrumente ohne Datenpunkte fehlen im Ergebnis.
        """
        gauges = [i for i in self._instruments.values() if isinstance(i, AsyncGauge)]
        for gauge in gauges:
            gauge._begin_cycle()

        for gauge in gauges:
            for callback in gauge.callbacks:
                try:
                    for observation in _as_observations(callback()):
                        gauge._observe(observation)
                except Exception as exc:
                    self._callback_errors += 1
                    log.warning("gauge_callback_failed", gauge=gauge.name, error=str(exc))

        for registration in list(self._batch_callbacks):
            result = ObservationResult(registration.gauges)
            try:
                registration.callback(result)
                for gauge, observation in result.samples:
                    gauge._observe(observation)
            except Exception as exc:
                self._callback_errors += 1
                log.warning(
                    "batch_callback_failed",
                    gauges=[g.name for g in registration.gauges],
                    error=str(exc),
                )

        self._collect_count += 1
        snapshots: list[MetricSnapshot] = []
        for instrument in self._instruments.values():
            snap = instrument.snapshot()
            if snap.data_points or snap.histogram_points:
                snapshots.append(snap)
        return snapshots

    def stats(self) -> dict[str, Any]:
        by_kind: dict[str, int] = {}
        for instrument in self._instruments.values():
            by_kind[instrument.kind.value] = by_kind.get(instrument.kind.value, 0) + 1
        return {
            "instruments": len(self._instruments),
            "by_kind": by_kind,
            "collections": self._collect_count,
            "callback_errors": self._callback_errors,
        }


class Meter:
    """Registry-Handle mit festem Instrumentation-Scope."""

    def __init__(self, registry: MetricsRegistry, scope: InstrumentationScope) -> None:
        self._registry = registry
        self.scope = scope

    def counter(self, name: str, description: str = "", unit: str = "1") -> Counter:
        return self._registry.counter(name, description, unit, scope=self.scope)

    def up_down_counter(self, name: str, description: str = "", unit: str = "1") -> UpDownCounter:
        return self._registry.up_down_counter(name, description, unit, scope=self.scope)

    def histogram(
        self, name: str, description: str = "", unit: str = "ms",
        boundaries: Sequence[float] | None = None,
    ) -> Histogram:
        return self._registry.histogram(
            name, description, unit, boundaries=boundaries, scope=self.scope,
        )

    def gauge(
        self, name: str, description: str = "", unit: str = "1",
        callback: GaugeCallback | None = None,
    ) -> AsyncGauge:
        return self._registry.gauge(name, description, unit, callback=callback, scope=self.scope)

    def add_batch_callback(self, callback: BatchCallback, gauges: Sequence[AsyncGauge]) -> bool:
        return self._registry.add_batch_callback(callback, gauges)


# ── Periodic Reader ──────────────────────────────────────────────

class PeriodicMetricReader:
    """Collect + Export im festen Intervall, finaler Export beim Shutdown."""

    def __init__(self, registry: MetricsRegistry, exporter: Exporter, *, interval_ms: int = 10000) -> None:
        self._registry = registry
        self._exporter = exporter
        self._interval = interval_ms / 1000
        self._lock = asyncio.Lock()
        self._stop: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self._is_shutdown = False
        self._export_count = 0

    def start(self) -> None:
        if self._task is not None or self._is_shutdown:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="otelpoc-metric-export",
        )

    async def _run(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except TimeoutError:
                await self._collect_and_export()

    async def _collect_and_export(self) -> bool:
        async with self._lock:
            snapshots = self._registry.collect()
            if not snapshots:
                return True
            self._export_count += 1
            try:
                return await self._exporter.export(snapshots)
            except Exception as exc:
                log.warning("metric_export_error", error=str(exc), metrics=len(snapshots))
                return False

    async def force_flush(self) -> bool:
        return await self._collect_and_export()

    async def shutdown(self) -> bool:
        """Stoppt den Loop und exportiert ein letztes Mal."""
        if self._is_shutdown:
            return True
        self._is_shutdown = True
        try:
            if self._task is not None:
                assert self._stop is not None
                self._stop.set()
                await self._task
                self._task = None
            return await self._collect_and_export()
        finally:
            await self._exporter.shutdown()

    @property
    def export_count(self) -> int:
        return self._export_count
