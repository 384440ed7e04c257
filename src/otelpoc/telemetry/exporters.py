"""Exporter -- OTLP/JSON über HTTP.

Drei unabhängige Senken (traces, metrics, logs) bilden ein ExporterSet.
Jede Senke serialisiert ihre Records als OTLP-JSON und schickt sie per
POST an ``{endpoint}/v1/{signal}``, optional mit ``Authorization: Bearer``.

Export-Fehler (Netzwerk, Collector nicht erreichbar, Non-2xx) werden
geloggt und als fehlgeschlagener Export gezählt, aber nie an den
Aufrufer weitergereicht.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from otelpoc.telemetry.types import InstrumentationScope, ResourceDescriptor
from otelpoc.utils.logging import get_logger

if TYPE_CHECKING:
    from otelpoc.config import TelemetryConfig

log = get_logger(__name__)

TRACES = "traces"
METRICS = "metrics"
LOGS = "logs"

# Signal → (resource-key, scope-key, record-key) im OTLP-JSON
_SIGNAL_LAYOUT: dict[str, tuple[str, str, str]] = {
    TRACES: ("resourceSpans", "scopeSpans", "spans"),
    METRICS: ("resourceMetrics", "scopeMetrics", "metrics"),
    LOGS: ("resourceLogs", "scopeLogs", "logRecords"),
}


class ExportRecord(Protocol):
    """Span, MetricSnapshot oder LogRecord."""

    scope: InstrumentationScope

    def to_otlp(self) -> dict[str, Any]: ...


def encode_batch(
    signal: str,
    resource: ResourceDescriptor,
    records: Sequence[ExportRecord],
) -> dict[str, Any]:
    """Baut den OTLP-Export-Request, gruppiert nach Instrumentation-Scope."""
    resource_key, scope_key, record_key = _SIGNAL_LAYOUT[signal]
    by_scope: dict[InstrumentationScope, list[dict[str, Any]]] = {}
    for record in records:
        by_scope.setdefault(record.scope, []).append(record.to_otlp())

    return {
        resource_key: [
            {
                "resource": resource.to_otlp(),
                scope_key: [
                    {"scope": scope.to_otlp(), record_key: encoded}
                    for scope, encoded in by_scope.items()
                ],
            }
        ],
    }


# ── Exporter ─────────────────────────────────────────────────────

class Exporter:
    """Basis-Interface für eine Export-Senke."""

    signal: str = ""

    def __init__(self) -> None:
        self._exported_count = 0
        self._failed_count = 0
        self._is_shutdown = False

    async def export(self, records: Sequence[ExportRecord]) -> bool:
        return True

    async def shutdown(self) -> None:
        self._is_shutdown = True

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def stats(self) -> dict[str, Any]:
        return {
            "signal": self.signal,
            "exported": self._exported_count,
            "failed": self._failed_count,
        }


class OTLPHttpExporter(Exporter):
    """Schickt OTLP-JSON per HTTP POST an den Collector."""

    def __init__(
        self,
        signal: str,
        *,
        endpoint: str,
        resource: ResourceDescriptor,
        token: str = "",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__()
        if signal not in _SIGNAL_LAYOUT:
            raise ValueError(f"Unknown signal: {signal}")
        self.signal = signal
        self.url = f"{endpoint.rstrip('/')}/v1/{signal}"
        self._resource = resource
        self._timeout = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    @property
    def headers(self) -> dict[str, str]:
        return dict(self._headers)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def export(self, records: Sequence[ExportRecord]) -> bool:
        if not records:
            return True
        if self._is_shutdown:
            log.debug("otlp_export_after_shutdown", signal=self.signal, dropped=len(records))
            self._failed_count += len(records)
            return False

        payload = encode_batch(self.signal, self._resource, records)
        try:
            response = await self._get_client().post(self.url, json=payload, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            log.warning(
                "otlp_export_rejected",
                signal=self.signal,
                status=exc.response.status_code,
                records=len(records),
            )
            self._failed_count += len(records)
            return False
        except httpx.HTTPError as exc:
            log.warning(
                "otlp_export_failed",
                signal=self.signal,
                url=self.url,
                error=str(exc) or type(exc).__name__,
                records=len(records),
            )
            self._failed_count += len(records)
            return False

        self._exported_count += len(records)
        return True

    async def shutdown(self) -> None:
        await super().shutdown()
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class InMemoryExporter(Exporter):
    """Sammelt Records im Speicher (für Tests und lokales Debugging)."""

    def __init__(self, signal: str) -> None:
        super().__init__()
        self.signal = signal
        self.batches: list[list[Any]] = []

    async def export(self, records: Sequence[ExportRecord]) -> bool:
        if self._is_shutdown:
            self._failed_count += len(records)
            return False
        self.batches.append(list(records))
        self._exported_count += len(records)
        return True

    @property
    def records(self) -> list[Any]:
        return [r for batch in self.batches for r in batch]

    def clear(self) -> None:
        self.batches.clear()


# ── ExporterSet ──────────────────────────────────────────────────

@dataclass
class ExporterSet:
    """Die drei Senken eines Prozesses."""

    traces: Exporter
    metrics: Exporter
    logs: Exporter

    @classmethod
    def from_config(
        cls,
        config: TelemetryConfig,
        resource: ResourceDescriptor,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ExporterSet:
        def build(signal: str) -> OTLPHttpExporter:
            return OTLPHttpExporter(
                signal,
                endpoint=config.endpoint,
                resource=resource,
                token=config.token,
                timeout_seconds=config.export_timeout_ms / 1000,
                transport=transport,
            )

        return cls(traces=build(TRACES), metrics=build(METRICS), logs=build(LOGS))

    @classmethod
    def in_memory(cls) -> ExporterSet:
        return cls(
            traces=InMemoryExporter(TRACES),
            metrics=InMemoryExporter(METRICS),
            logs=InMemoryExporter(LOGS),
        )

    def __iter__(self) -> Iterator[Exporter]:
        return iter((self.traces, self.metrics, self.logs))

    def stats(self) -> dict[str, Any]:
        return {exporter.signal: exporter.stats() for exporter in self}
