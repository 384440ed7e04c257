"""Cross-Process-Korrelation über das Request-Payload.

Der Aufrufer kopiert Trace-ID und Span-ID seines aktiven Spans in
``payload["metadata"]`` (``traceId`` / ``spanId``). Der Empfänger startet
einen eigenen, unabhängigen Trace und hängt die IDs nur als Attribute
``upstream.trace_id`` / ``upstream.span_id`` an. Es werden keine
``traceparent``-Header gesetzt und keine Trace-IDs übernommen.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from otelpoc.telemetry.types import Span

_TRACE_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_SPAN_ID_RE = re.compile(r"^[0-9a-f]{16}$")


@dataclass(frozen=True)
class CorrelationEnvelope:
    """Trace-/Span-ID des Aufrufers (nur Hinweis, nicht autoritativ)."""
    trace_id: str
    span_id: str

    def to_metadata(self) -> dict[str, str]:
        return {"traceId": self.trace_id, "spanId": self.span_id}


class CrossProcessCorrelator:
    """Schreibt und liest CorrelationEnvelopes in/aus Payloads."""

    metadata_key = "metadata"

    def envelope(self, span: Span) -> CorrelationEnvelope:
        return CorrelationEnvelope(trace_id=span.trace_id, span_id=span.span_id)

    def inject(self, payload: dict[str, Any], span: Span) -> dict[str, Any]:
        """Neues Payload mit ``metadata.traceId``/``spanId`` des Spans.

        Vorhandene Metadaten des Aufrufers bleiben erhalten; bei
        gleichnamigen Schlüsseln gewinnen die Werte des Spans.
        """
        existing = payload.get(self.metadata_key)
        metadata = dict(existing) if isinstance(existing, dict) else {}
        metadata.update(self.envelope(span).to_metadata())
        return {**payload, self.metadata_key: metadata}

    def extract(self, payload: Any) -> CorrelationEnvelope | None:
        """Liest das Envelope. None bei fehlenden oder ungültigen Metadaten."""
        if not isinstance(payload, dict):
            return None
        metadata = payload.get(self.metadata_key)
        if not isinstance(metadata, dict):
            return None
        trace_id = metadata.get("traceId")
        span_id = metadata.get("spanId")
        if not isinstance(trace_id, str) or not isinstance(span_id, str):
            return None
        trace_id, span_id = trace_id.lower(), span_id.lower()
        if not _TRACE_ID_RE.match(trace_id) or not _SPAN_ID_RE.match(span_id):
            return None
        return CorrelationEnvelope(trace_id=trace_id, span_id=span_id)

    def annotate(self, span: Span, envelope: CorrelationEnvelope | None) -> None:
        """Hängt die Upstream-IDs an den eigenen Span des Empfängers."""
        if envelope is None:
            return
        span.set_attributes({
            "upstream.trace_id": envelope.trace_id,
            "upstream.span_id": envelope.span_id,
        })
