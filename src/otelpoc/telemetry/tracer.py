"""SpanTracker -- Span-Erzeugung und Batch-Export.

  - Span-Erzeugung mit expliziter Parent-Verknüpfung (kein impliziter Kontext)
  - Trace-ID wird vom Root-Span geerbt, Span-IDs sind pro Span eindeutig
  - SpanScope: with/async with garantiert genau ein end() auf jedem Pfad
  - BatchSpanProcessor: Queue + periodischer Export im Hintergrund

Usage:
    tracker = process.tracker("opentelemetry-poc", "1.0.0")
    async with tracker.span("handle_request") as root:
        root.set_attribute("user.id", "u123")
        async with tracker.span("call_backend", parent=root) as child:
            child.set_attribute("http.url", url)
"""

from __future__ import annotations

import asyncio
import weakref
from typing import Any

from otelpoc.telemetry.exporters import Exporter
from otelpoc.telemetry.types import (
    AttributeValue,
    InstrumentationScope,
    Span,
    SpanContext,
    SpanKind,
    StatusCode,
)
from otelpoc.utils.logging import get_logger

log = get_logger(__name__)


# ── Span Processor ───────────────────────────────────────────────

class SpanProcessor:
    """Verarbeitet Spans nach Abschluss."""

    def on_start(self, span: Span) -> None:
        pass

    def on_end(self, span: Span) -> None:
        pass

    async def force_flush(self) -> bool:
        return True

    async def shutdown(self) -> bool:
        return True


class BatchSpanProcessor(SpanProcessor):
    """Sammelt beendete Spans und exportiert sie in Batches.

    ``on_end`` wird synchron aus ``Span.end()`` aufgerufen und hängt nur an
    die Queue an. Der Export läuft im Hintergrund-Task (alle
    ``schedule_delay_ms`` oder sobald ein voller Batch bereitliegt).
    Batches werden in einem Schritt aus der Queue genommen, damit parallel
    laufende Requests gefahrlos einreihen können.
    """

    def __init__(
        self,
        exporter: Exporter,
        *,
        max_queue_size: int = 2048,
        max_export_batch_size: int = 512,
        schedule_delay_ms: int = 5000,
    ) -> None:
        self._exporter = exporter
        self._max_queue = max_queue_size
        self._max_batch = max_export_batch_size
        self._delay = schedule_delay_ms / 1000
        self._queue: list[Span] = []
        self._export_lock = asyncio.Lock()
        self._wakeup: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._is_shutdown = False
        self._dropped_count = 0

    def start(self) -> None:
        """Startet den Export-Loop (benötigt laufenden Event-Loop)."""
        if self._task is not None or self._is_shutdown:
            return
        self._wakeup = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="otelpoc-span-export",
        )

    def on_end(self, span: Span) -> None:
        if self._is_shutdown:
            self._dropped_count += 1
            log.debug("span_dropped_after_shutdown", name=span.name)
            return
        if len(self._queue) >= self._max_queue:
            self._dropped_count += 1
            log.warning("span_queue_full", name=span.name, dropped=self._dropped_count)
            return
        self._queue.append(span)
        if len(self._queue) >= self._max_batch and self._wakeup is not None:
            self._wakeup.set()

    async def _run(self) -> None:
        assert self._wakeup is not None
        while not self._stopping:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._delay)
            except TimeoutError:
                pass
            self._wakeup.clear()
            await self._export_pending()

    async def _export_pending(self) -> bool:
        ok = True
        async with self._export_lock:
            while self._queue:
                batch, self._queue = self._queue[: self._max_batch], self._queue[self._max_batch:]
                try:
                    ok = await self._exporter.export(batch) and ok
                except Exception as exc:
                    log.warning("span_export_error", error=str(exc), spans=len(batch))
                    ok = False
        return ok

    async def force_flush(self) -> bool:
        return await self._export_pending()

    async def shutdown(self) -> bool:
        """Stoppt den Loop und exportiert alle noch wartenden Spans."""
        if self._is_shutdown:
            return True
        self._is_shutdown = True
        self._stopping = True
        try:
            if self._task is not None:
                assert self._wakeup is not None
                self._wakeup.set()
                await self._task
                self._task = None
            return await self._export_pending()
        finally:
            # Auch bei Abbruch durch den Shutdown-Timeout
            await self._exporter.shutdown()

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def dropped(self) -> int:
        return self._dropped_count


# ── SpanTracker ──────────────────────────────────────────────────

class SpanTracker:
    """Erzeugt Spans eines Instrumentation-Scopes.

    Parent-Spans werden immer explizit übergeben.
    """

    def __init__(
        self,
        processor: SpanProcessor,
        *,
        name: str = "otelpoc",
        version: str = "",
    ) -> None:
        self._processor = processor
        self._scope = InstrumentationScope(name=name, version=version)
        self._started_count = 0
        self._ended_count = 0

    @property
    def scope(self) -> InstrumentationScope:
        return self._scope

    def start_span(
        self,
        name: str,
        *,
        parent: Span | None = None,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: dict[str, AttributeValue] | None = None,
    ) -> Span:
        """Startet einen neuen Span. Ohne Parent beginnt ein neuer Trace."""
        if parent is not None:
            context = parent.context.child_context()
            parent_span_id = parent.span_id
            parent_ref: weakref.ref[Span] | None = weakref.ref(parent)
        else:
            context = SpanContext()
            parent_span_id = ""
            parent_ref = None

        span = Span(
            name=name,
            context=context,
            parent_span_id=parent_span_id,
            kind=kind,
            attributes=dict(attributes or {}),
            scope=self._scope,
            _parent_ref=parent_ref,
            _on_end=self._on_end,
        )
        self._started_count += 1
        self._processor.on_start(span)
        return span

    def span(
        self,
        name: str,
        *,
        parent: Span | None = None,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: dict[str, AttributeValue] | None = None,
    ) -> SpanScope:
        """Span als Context-Manager (with / async with)."""
        return SpanScope(self, name, parent=parent, kind=kind, attributes=attributes)

    def _on_end(self, span: Span) -> None:
        self._ended_count += 1
        self._processor.on_end(span)

    # ── Operationen auf Spans ────────────────────────────────────

    def set_attribute(self, span: Span, key: str, value: AttributeValue) -> None:
        span.set_attribute(key, value)

    def record_exception(self, span: Span, exc: BaseException) -> None:
        span.record_exception(exc)

    def set_status(self, span: Span, code: StatusCode, message: str = "") -> None:
        span.set_status(code, message)

    def end(self, span: Span) -> None:
        span.end()

    def stats(self) -> dict[str, Any]:
        return {
            "scope": self._scope.name,
            "started": self._started_count,
            "ended": self._ended_count,
            "open": self._started_count - self._ended_count,
        }


# ── SpanScope ────────────────────────────────────────────────────

class SpanScope:
    """Context-Manager für das Span-Lifecycle.

    Erfolg → Status OK (falls noch UNSET). Exception → record_exception +
    ERROR mit der Fehlermeldung. In beiden Fällen wird der Span beendet,
    die Exception läuft weiter.
    """

    def __init__(
        self,
        tracker: SpanTracker,
        name: str,
        *,
        parent: Span | None = None,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: dict[str, AttributeValue] | None = None,
    ) -> None:
        self._tracker = tracker
        self._name = name
        self._parent = parent
        self._kind = kind
        self._attributes = attributes
        self._span: Span | None = None

    @property
    def span(self) -> Span | None:
        return self._span

    def __enter__(self) -> Span:
        self._span = self._tracker.start_span(
            self._name, parent=self._parent, kind=self._kind, attributes=self._attributes,
        )
        return self._span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        span = self._span
        if span is None or span.is_ended:
            return
        try:
            if exc_val is not None:
                if span.status_code != StatusCode.ERROR:
                    if isinstance(exc_val, Exception):
                        span.record_exception(exc_val)
                    span.set_error(str(exc_val) or exc_type.__name__)
            elif span.status_code == StatusCode.UNSET:
                span.set_ok()
        finally:
            span.end()

    async def __aenter__(self) -> Span:
        return self.__enter__()

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)
