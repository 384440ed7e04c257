"""Tests für SpanTracker, SpanScope und BatchSpanProcessor."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import pytest

from otelpoc.errors import SpanEndedError
from otelpoc.telemetry.exporters import Exporter, InMemoryExporter, TRACES
from otelpoc.telemetry.tracer import BatchSpanProcessor, SpanProcessor, SpanTracker
from otelpoc.telemetry.types import Span, SpanKind, StatusCode


class _Collecting(SpanProcessor):
    def __init__(self) -> None:
        self.started: list[Span] = []
        self.ended: list[Span] = []

    def on_start(self, span: Span) -> None:
        self.started.append(span)

    def on_end(self, span: Span) -> None:
        self.ended.append(span)


class _FailingExporter(Exporter):
    signal = TRACES

    async def export(self, records: Sequence[Any]) -> bool:
        raise RuntimeError("collector down")


@pytest.fixture
def processor() -> _Collecting:
    return _Collecting()


@pytest.fixture
def tracker(processor: _Collecting) -> SpanTracker:
    return SpanTracker(processor, name="test-scope", version="0.1")


# ── SpanTracker ──────────────────────────────────────────────────


class TestSpanTracker:
    def test_root_span_starts_new_trace(self, tracker: SpanTracker) -> None:
        a = tracker.start_span("a")
        b = tracker.start_span("b")
        assert a.trace_id != b.trace_id
        assert a.parent_span_id == ""
        assert a.parent is None

    def test_child_inherits_trace(self, tracker: SpanTracker) -> None:
        root = tracker.start_span("root", kind=SpanKind.SERVER)
        child = tracker.start_span("child", parent=root)
        grandchild = tracker.start_span("grandchild", parent=child)
        assert child.trace_id == root.trace_id == grandchild.trace_id
        assert len({root.span_id, child.span_id, grandchild.span_id}) == 3
        assert child.parent_span_id == root.span_id
        assert grandchild.parent_span_id == child.span_id
        assert child.parent is root

    def test_scope_attached(self, tracker: SpanTracker) -> None:
        span = tracker.start_span("x")
        assert span.scope.name == "test-scope"
        assert span.scope.version == "0.1"

    def test_end_submits_once(self, tracker: SpanTracker, processor: _Collecting) -> None:
        span = tracker.start_span("x", attributes={"k": "v"})
        tracker.end(span)
        tracker.end(span)
        assert processor.ended == [span]
        assert tracker.stats() == {"scope": "test-scope", "started": 1, "ended": 1, "open": 0}

    def test_delegating_operations(self, tracker: SpanTracker) -> None:
        span = tracker.start_span("x")
        tracker.set_attribute(span, "user.id", "u1")
        tracker.record_exception(span, ValueError("bad"))
        tracker.set_status(span, StatusCode.ERROR, "bad")
        tracker.end(span)
        assert span.attributes["user.id"] == "u1"
        assert span.attributes["exception.message"] == "bad"
        assert span.status_message == "bad"
        with pytest.raises(SpanEndedError):
            tracker.set_attribute(span, "late", 1)


class TestSpanScope:
    def test_success_sets_ok(self, tracker: SpanTracker, processor: _Collecting) -> None:
        with tracker.span("ok") as span:
            span.set_attribute("n", 1)
        assert span.status_code == StatusCode.OK
        assert span.is_ended
        assert processor.ended == [span]

    def test_explicit_status_kept(self, tracker: SpanTracker) -> None:
        with tracker.span("explicit") as span:
            span.set_error("handled")
        assert span.status_code == StatusCode.ERROR
        assert span.status_message == "handled"

    def test_exception_recorded_and_reraised(self, tracker: SpanTracker, processor: _Collecting) -> None:
        with pytest.raises(KeyError), tracker.span("failing") as span:
            raise KeyError("missing")
        assert span.status_code == StatusCode.ERROR
        assert span.attributes["exception.type"] == "KeyError"
        assert processor.ended == [span]

    def test_empty_exception_message_uses_type(self, tracker: SpanTracker) -> None:
        with pytest.raises(RuntimeError), tracker.span("failing") as span:
            raise RuntimeError()
        assert span.status_message == "RuntimeError"

    def test_ended_inside_block(self, tracker: SpanTracker, processor: _Collecting) -> None:
        with tracker.span("manual") as span:
            span.end()
        assert processor.ended == [span]
        assert span.status_code == StatusCode.UNSET

    @pytest.mark.asyncio
    async def test_async_nested(self, tracker: SpanTracker, processor: _Collecting) -> None:
        async with tracker.span("root") as root:
            async with tracker.span("child", parent=root):
                await asyncio.sleep(0)
        assert [s.name for s in processor.ended] == ["child", "root"]

    @pytest.mark.asyncio
    async def test_async_child_error_parent_ok(self, tracker: SpanTracker) -> None:
        async with tracker.span("root") as root:
            with pytest.raises(ValueError):
                async with tracker.span("child", parent=root) as child:
                    raise ValueError("child failed")
        assert child.status_code == StatusCode.ERROR
        assert root.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_cancellation_ends_span(self, tracker: SpanTracker, processor: _Collecting) -> None:
        async def work() -> None:
            async with tracker.span("slow"):
                await asyncio.sleep(10)

        task = asyncio.create_task(work())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(processor.ended) == 1
        span = processor.ended[0]
        assert span.status_code == StatusCode.ERROR
        assert "exception.type" not in span.attributes


# ── BatchSpanProcessor ───────────────────────────────────────────


class TestBatchSpanProcessor:
    @pytest.mark.asyncio
    async def test_force_flush_exports_queue(self) -> None:
        exporter = InMemoryExporter(TRACES)
        proc = BatchSpanProcessor(exporter, schedule_delay_ms=60_000)
        tracker = SpanTracker(proc)
        for i in range(3):
            tracker.start_span(f"s{i}").end()
        assert proc.queued == 3
        assert await proc.force_flush() is True
        assert [s.name for s in exporter.records] == ["s0", "s1", "s2"]
        assert proc.queued == 0

    @pytest.mark.asyncio
    async def test_batches_respect_max_size(self) -> None:
        exporter = InMemoryExporter(TRACES)
        proc = BatchSpanProcessor(exporter, max_export_batch_size=2, schedule_delay_ms=60_000)
        tracker = SpanTracker(proc)
        for i in range(5):
            tracker.start_span(f"s{i}").end()
        await proc.force_flush()
        assert [len(b) for b in exporter.batches] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_queue_overflow_drops(self) -> None:
        exporter = InMemoryExporter(TRACES)
        proc = BatchSpanProcessor(
            exporter, max_queue_size=2, max_export_batch_size=2, schedule_delay_ms=60_000,
        )
        tracker = SpanTracker(proc)
        for i in range(4):
            tracker.start_span(f"s{i}").end()
        assert proc.queued == 2
        assert proc.dropped == 2

    @pytest.mark.asyncio
    async def test_full_batch_wakes_loop(self) -> None:
        exporter = InMemoryExporter(TRACES)
        proc = BatchSpanProcessor(exporter, max_export_batch_size=2, schedule_delay_ms=60_000)
        proc.start()
        tracker = SpanTracker(proc)
        tracker.start_span("a").end()
        tracker.start_span("b").end()
        for _ in range(20):
            if exporter.records:
                break
            await asyncio.sleep(0.01)
        assert len(exporter.records) == 2
        await proc.shutdown()

    @pytest.mark.asyncio
    async def test_periodic_export(self) -> None:
        exporter = InMemoryExporter(TRACES)
        proc = BatchSpanProcessor(exporter, schedule_delay_ms=20)
        proc.start()
        SpanTracker(proc).start_span("tick").end()
        await asyncio.sleep(0.1)
        assert [s.name for s in exporter.records] == ["tick"]
        await proc.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_drains_and_stops(self) -> None:
        exporter = InMemoryExporter(TRACES)
        proc = BatchSpanProcessor(exporter, schedule_delay_ms=60_000)
        proc.start()
        tracker = SpanTracker(proc)
        tracker.start_span("pending").end()
        assert await proc.shutdown() is True
        assert [s.name for s in exporter.records] == ["pending"]
        assert exporter.is_shutdown

        tracker.start_span("late").end()
        assert proc.dropped == 1
        assert await proc.shutdown() is True

    @pytest.mark.asyncio
    async def test_exporter_exception_absorbed(self) -> None:
        proc = BatchSpanProcessor(_FailingExporter(), schedule_delay_ms=60_000)
        SpanTracker(proc).start_span("x").end()
        assert await proc.force_flush() is False
        assert proc.queued == 0

    @pytest.mark.asyncio
    async def test_concurrent_enqueue(self) -> None:
        exporter = InMemoryExporter(TRACES)
        proc = BatchSpanProcessor(exporter, max_export_batch_size=7, schedule_delay_ms=5)
        proc.start()
        tracker = SpanTracker(proc)

        async def request(i: int) -> None:
            async with tracker.span(f"root{i}") as root:
                await asyncio.sleep(0)
                async with tracker.span(f"child{i}", parent=root):
                    await asyncio.sleep(0)

        await asyncio.gather(*(request(i) for i in range(50)))
        await proc.shutdown()
        names = [s.name for s in exporter.records]
        assert len(names) == 100
        assert len(set(names)) == 100
