"""Tests für MetricsRegistry, Instrumente und PeriodicMetricReader."""

from __future__ import annotations

import asyncio
import math

import pytest

from otelpoc.errors import ValidationError
from otelpoc.telemetry.exporters import METRICS, InMemoryExporter
from otelpoc.telemetry.metrics import (
    Meter,
    MetricsRegistry,
    Observation,
    ObservationResult,
    PeriodicMetricReader,
)
from otelpoc.telemetry.types import InstrumentationScope, MetricKind


@pytest.fixture
def registry() -> MetricsRegistry:
    return MetricsRegistry()


def _by_name(registry: MetricsRegistry) -> dict[str, object]:
    return {s.name: s for s in registry.collect()}


class TestCounter:
    def test_add_per_tags(self, registry: MetricsRegistry) -> None:
        counter = registry.counter("requests", "Total requests")
        counter.add(1, {"route": "/a"})
        counter.add(2, {"route": "/a"})
        counter.add(tags={"route": "/b"})
        assert counter.value({"route": "/a"}) == 3
        assert counter.value({"route": "/b"}) == 1
        assert counter.value() == 0

    def test_tag_order_irrelevant(self, registry: MetricsRegistry) -> None:
        counter = registry.counter("c")
        counter.add(1, {"a": "1", "b": "2"})
        counter.add(1, {"b": "2", "a": "1"})
        assert counter.value({"a": "1", "b": "2"}) == 2

    @pytest.mark.parametrize("amount", [-1, -0.5, math.nan, math.inf, "3", None, True])
    def test_invalid_amount_rejected(self, registry: MetricsRegistry, amount: object) -> None:
        counter = registry.counter("c")
        counter.add(5)
        with pytest.raises(ValidationError):
            counter.add(amount)  # type: ignore[arg-type]
        assert counter.value() == 5

    def test_non_string_tags_rejected(self, registry: MetricsRegistry) -> None:
        counter = registry.counter("c")
        with pytest.raises(ValidationError):
            counter.add(1, {"status": 200})  # type: ignore[dict-item]
        assert counter.value({"status": "200"}) == 0

    def test_up_down_counter(self, registry: MetricsRegistry) -> None:
        active = registry.up_down_counter("active")
        active.add(1)
        active.add(1)
        active.add(-1)
        assert active.value() == 1
        with pytest.raises(ValidationError):
            active.add(math.nan)


class TestHistogram:
    def test_record(self, registry: MetricsRegistry) -> None:
        hist = registry.histogram("latency", boundaries=[10, 100])
        hist.record(5, {"route": "/"})
        hist.record(50, {"route": "/"})
        point = hist.get({"route": "/"})
        assert point is not None
        assert point.count == 2
        assert point.bucket_counts == [1, 1, 0]
        assert hist.get({"route": "/other"}) is None

    def test_invalid_boundaries(self, registry: MetricsRegistry) -> None:
        with pytest.raises(ValidationError):
            registry.histogram("bad", boundaries=[10, 5])

    def test_invalid_value(self, registry: MetricsRegistry) -> None:
        with pytest.raises(ValidationError):
            registry.histogram("h").record(math.inf)

    def test_snapshot_is_copy(self, registry: MetricsRegistry) -> None:
        hist = registry.histogram("h")
        hist.record(1)
        (snap,) = registry.collect()
        hist.record(2)
        assert snap.histogram_points[0].count == 1


class TestRegistry:
    def test_same_name_same_instrument(self, registry: MetricsRegistry) -> None:
        assert registry.counter("c") is registry.counter("c")
        assert registry.get("c") is registry.counter("c")

    def test_kind_mismatch(self, registry: MetricsRegistry) -> None:
        registry.counter("x")
        with pytest.raises(ValidationError):
            registry.histogram("x")

    def test_empty_name(self, registry: MetricsRegistry) -> None:
        with pytest.raises(ValidationError):
            registry.counter("")

    def test_collect_skips_empty(self, registry: MetricsRegistry) -> None:
        registry.counter("unused")
        registry.counter("used").add(1)
        assert list(_by_name(registry)) == ["used"]

    def test_stats(self, registry: MetricsRegistry) -> None:
        registry.counter("a")
        registry.histogram("b")
        registry.gauge("c")
        registry.collect()
        stats = registry.stats()
        assert stats["instruments"] == 3
        assert stats["by_kind"] == {"counter": 1, "histogram": 1, "gauge": 1}
        assert stats["collections"] == 1

    def test_meter_scope(self, registry: MetricsRegistry) -> None:
        meter = Meter(registry, InstrumentationScope("svc", "1.0"))
        meter.counter("c").add(1)
        (snap,) = registry.collect()
        assert snap.scope == InstrumentationScope("svc", "1.0")
        assert snap.kind == MetricKind.COUNTER


class TestAsyncGauge:
    def test_callback_invoked_per_collect(self, registry: MetricsRegistry) -> None:
        calls: list[int] = []

        def observe() -> Observation:
            calls.append(1)
            return Observation(42, {"source": "test"})

        registry.gauge("g", callback=observe)
        snap = _by_name(registry)["g"]
        assert snap.data_points[0].value == 42  # type: ignore[attr-defined]
        assert snap.data_points[0].attributes == {"source": "test"}  # type: ignore[attr-defined]
        registry.collect()
        assert len(calls) == 2

    def test_duplicate_callback_registered_once(self, registry: MetricsRegistry) -> None:
        calls: list[int] = []

        def observe() -> Observation:
            calls.append(1)
            return Observation(1)

        gauge = registry.gauge("g", callback=observe)
        assert gauge.add_callback(observe) is False
        registry.gauge("g", callback=observe)
        assert len(gauge.callbacks) == 1
        (snap,) = registry.collect()
        assert len(snap.data_points) == 1
        assert calls == [1]

    def test_same_bound_method_deduped(self, registry: MetricsRegistry) -> None:
        class Holder:
            value = 7

            def observe(self) -> Observation:
                return Observation(self.value)

        holder = Holder()
        gauge = registry.gauge("g")
        assert gauge.add_callback(holder.observe) is True
        assert gauge.add_callback(holder.observe) is False

    def test_no_callbacks_no_snapshot(self, registry: MetricsRegistry) -> None:
        registry.gauge("g")
        assert registry.collect() == []

    def test_one_sample_per_tags_per_cycle(self, registry: MetricsRegistry) -> None:
        gauge = registry.gauge("g")
        gauge.add_callback(lambda: Observation(1))
        gauge.add_callback(lambda: [Observation(2), Observation(3, {"k": "v"})])
        (snap,) = registry.collect()
        values = {tuple(dp.attributes.items()): dp.value for dp in snap.data_points}
        assert values == {(): 2, (("k", "v"),): 3}

    def test_stale_samples_not_carried_over(self, registry: MetricsRegistry) -> None:
        state = {"value": 1}
        registry.gauge("g", callback=lambda: Observation(state["value"]) if state["value"] else None)
        assert len(registry.collect()) == 1
        state["value"] = 0
        assert registry.collect() == []

    def test_failing_callback_isolated(self, registry: MetricsRegistry) -> None:
        def broken() -> Observation:
            raise RuntimeError("sensor offline")

        registry.gauge("broken", callback=broken)
        registry.gauge("fine", callback=lambda: Observation(1))
        registry.counter("c").add(1)
        assert set(_by_name(registry)) == {"fine", "c"}
        assert registry.stats()["callback_errors"] == 1

    def test_non_numeric_observation(self, registry: MetricsRegistry) -> None:
        registry.gauge("g", callback=lambda: Observation("x"))  # type: ignore[arg-type]
        assert registry.collect() == []
        assert registry.stats()["callback_errors"] == 1


class TestBatchCallback:
    def test_multiple_gauges_observed_once(self, registry: MetricsRegistry) -> None:
        cpu = registry.gauge("cpu")
        mem = registry.gauge("mem")
        calls: list[int] = []

        def observe(result: ObservationResult) -> None:
            calls.append(1)
            result.observe(cpu, 0.5)
            result.observe(mem, 128, {"unit": "mb"})

        assert registry.add_batch_callback(observe, [cpu, mem]) is True
        assert registry.add_batch_callback(observe, [cpu, mem]) is False
        snaps = _by_name(registry)
        assert calls == [1]
        assert snaps["cpu"].data_points[0].value == 0.5  # type: ignore[attr-defined]
        assert snaps["mem"].data_points[0].attributes == {"unit": "mb"}  # type: ignore[attr-defined]

    def test_foreign_gauge_rejected(self, registry: MetricsRegistry) -> None:
        mine = registry.gauge("mine")
        other = registry.gauge("other")

        def observe(result: ObservationResult) -> None:
            result.observe(other, 1)

        registry.add_batch_callback(observe, [mine])
        assert registry.collect() == []
        assert registry.stats()["callback_errors"] == 1


class TestPeriodicMetricReader:
    @pytest.mark.asyncio
    async def test_force_flush(self, registry: MetricsRegistry) -> None:
        exporter = InMemoryExporter(METRICS)
        reader = PeriodicMetricReader(registry, exporter, interval_ms=60_000)
        registry.counter("c").add(3)
        assert await reader.force_flush() is True
        (snap,) = exporter.records
        assert snap.data_points[0].value == 3
        assert reader.export_count == 1

    @pytest.mark.asyncio
    async def test_nothing_to_export(self, registry: MetricsRegistry) -> None:
        exporter = InMemoryExporter(METRICS)
        reader = PeriodicMetricReader(registry, exporter, interval_ms=60_000)
        assert await reader.force_flush() is True
        assert exporter.batches == []

    @pytest.mark.asyncio
    async def test_periodic_export_is_cumulative(self, registry: MetricsRegistry) -> None:
        exporter = InMemoryExporter(METRICS)
        reader = PeriodicMetricReader(registry, exporter, interval_ms=20)
        counter = registry.counter("c")
        counter.add(1)
        reader.start()
        await asyncio.sleep(0.07)
        counter.add(1)
        await reader.shutdown()
        assert len(exporter.batches) >= 2
        assert exporter.batches[-1][0].data_points[0].value == 2

    @pytest.mark.asyncio
    async def test_shutdown_final_export(self, registry: MetricsRegistry) -> None:
        exporter = InMemoryExporter(METRICS)
        reader = PeriodicMetricReader(registry, exporter, interval_ms=60_000)
        reader.start()
        registry.histogram("h").record(12)
        assert await reader.shutdown() is True
        assert [s.name for s in exporter.records] == ["h"]
        assert exporter.is_shutdown
        assert await reader.shutdown() is True
