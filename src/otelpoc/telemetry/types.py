"""Telemetry Types.

OTLP-kompatible Datenmodelle für Traces und Metrics.

Kern-Konzepte:
  - TraceId / SpanId:    128/64-bit Hex-IDs
  - ResourceDescriptor:  Statische Identität des Prozesses (Service, Version, Umgebung)
  - SpanContext:         TraceId + SpanId eines Spans
  - Span:                Einzelne Operation mit Timing, Status, Events
  - Metric-Datenpunkte:  Counter/UpDownCounter, Histogram, Gauge

Spans sind nach ``end()`` terminal: jede weitere Mutation wird mit
SpanEndedError abgelehnt.
"""

from __future__ import annotations

import math
import os
import time
import traceback
import uuid
import weakref
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Union

from otelpoc.errors import SpanEndedError, ValidationError

AttributeValue = Union[str, bool, int, float]


# ── ID Generation ────────────────────────────────────────────────

def generate_trace_id() -> str:
    """Generiert eine 32-Hex-Char Trace-ID (128 bit)."""
    return uuid.uuid4().hex

def generate_span_id() -> str:
    """Generiert eine 16-Hex-Char Span-ID (64 bit)."""
    return os.urandom(8).hex()


# ── Enums ────────────────────────────────────────────────────────

class SpanKind(IntEnum):
    """Art des Spans (OpenTelemetry Spec)."""
    INTERNAL = 0   # Default: Interne Operation
    SERVER = 1     # Eingehender Request
    CLIENT = 2     # Ausgehender Request
    PRODUCER = 3
    CONSUMER = 4


class StatusCode(IntEnum):
    """Status eines Spans (OpenTelemetry Spec)."""
    UNSET = 0
    OK = 1
    ERROR = 2


class MetricKind(str, Enum):
    """Art einer Metrik."""
    COUNTER = "counter"           # Monoton steigend
    UP_DOWN_COUNTER = "up_down"   # Kann steigen/fallen
    HISTOGRAM = "histogram"       # Verteilung
    GAUGE = "gauge"               # Beobachteter Wert (Callback)


class Environment(str, Enum):
    """Deployment-Umgebung."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


# ── Resource & Scope ─────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceDescriptor:
    """Statische Identität, die an jede exportierte Telemetrie angehängt wird.

    Wird einmal beim Start erzeugt und nie verändert.
    """
    service_name: str
    service_version: str = "1.0.0"
    environment: Environment = Environment.DEVELOPMENT

    @property
    def attributes(self) -> dict[str, str]:
        return {
            "service.name": self.service_name,
            "service.version": self.service_version,
            "deployment.environment": self.environment.value,
        }

    def to_otlp(self) -> dict[str, Any]:
        return {"attributes": otlp_attributes(self.attributes)}


@dataclass(frozen=True)
class InstrumentationScope:
    """Name/Version des Trackers oder Meters, der die Daten erzeugt hat."""
    name: str
    version: str = ""

    def to_otlp(self) -> dict[str, Any]:
        return {"name": self.name, "version": self.version}


# ── SpanContext ──────────────────────────────────────────────────

@dataclass(frozen=True)
class SpanContext:
    """Identität eines Spans innerhalb eines Traces."""
    trace_id: str = field(default_factory=generate_trace_id)
    span_id: str = field(default_factory=generate_span_id)

    def child_context(self) -> SpanContext:
        """Erstellt Kind-Kontext (gleiche Trace-ID, neue Span-ID)."""
        return SpanContext(trace_id=self.trace_id)


# ── Span Event ───────────────────────────────────────────────────

@dataclass
class SpanEvent:
    """Ein zeitgestempeltes Event innerhalb eines Spans."""
    name: str
    timestamp_ns: int = 0
    attributes: dict[str, AttributeValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.timestamp_ns:
            self.timestamp_ns = time.time_ns()

    def to_otlp(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "timeUnixNano": str(self.timestamp_ns),
            "attributes": otlp_attributes(self.attributes),
        }


# ── Span ─────────────────────────────────────────────────────────

def check_attribute(key: str, value: Any) -> None:
    """Prüft ein Span-Attribut (nicht-leerer String-Key, skalarer Wert)."""
    if not isinstance(key, str) or not key:
        raise ValidationError("Attribute key must be a non-empty string", details=repr(key))
    if not isinstance(value, (str, bool, int, float)):
        raise ValidationError(
            f"Attribute '{key}' must be a scalar",
            details=type(value).__name__,
        )


@dataclass(eq=False)
class Span:
    """Eine einzelne Operation im Trace.

    Lebenszyklus: start → set_attribute()/add_event() → set_status() → end()

    ``parent`` ist eine schwache Referenz auf den Eltern-Span desselben
    Prozesses; exportiert wird nur ``parent_span_id``.
    """
    name: str
    context: SpanContext = field(default_factory=SpanContext)
    parent_span_id: str = ""
    kind: SpanKind = SpanKind.INTERNAL
    start_time_ns: int = 0
    end_time_ns: int = 0
    status_code: StatusCode = StatusCode.UNSET
    status_message: str = ""
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    events: list[SpanEvent] = field(default_factory=list)
    scope: InstrumentationScope = field(default_factory=lambda: InstrumentationScope("otelpoc"))
    _parent_ref: weakref.ref[Span] | None = field(default=None, repr=False)
    _on_end: Callable[[Span], None] | None = field(default=None, repr=False)
    _ended: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        if not self.start_time_ns:
            self.start_time_ns = time.time_ns()
        for key, value in self.attributes.items():
            check_attribute(key, value)

    @property
    def trace_id(self) -> str:
        return self.context.trace_id

    @property
    def span_id(self) -> str:
        return self.context.span_id

    @property
    def parent(self) -> Span | None:
        return self._parent_ref() if self._parent_ref is not None else None

    @property
    def duration_ns(self) -> int:
        if self.end_time_ns:
            return self.end_time_ns - self.start_time_ns
        return time.time_ns() - self.start_time_ns

    @property
    def duration_ms(self) -> float:
        return self.duration_ns / 1_000_000

    @property
    def is_ended(self) -> bool:
        return self._ended

    def _ensure_open(self, operation: str) -> None:
        if self._ended:
            raise SpanEndedError(
                f"Cannot {operation} on ended span '{self.name}'",
                details=self.span_id,
            )

    def set_attribute(self, key: str, value: AttributeValue) -> None:
        self._ensure_open("set attribute")
        check_attribute(key, value)
        self.attributes[key] = value

    def set_attributes(self, attrs: dict[str, AttributeValue]) -> None:
        self._ensure_open("set attributes")
        for key, value in attrs.items():
            check_attribute(key, value)
        self.attributes.update(attrs)

    def add_event(self, name: str, attributes: dict[str, AttributeValue] | None = None) -> SpanEvent:
        self._ensure_open("add event")
        for key, value in (attributes or {}).items():
            check_attribute(key, value)
        event = SpanEvent(name=name, attributes=dict(attributes or {}))
        self.events.append(event)
        return event

    def record_exception(self, exc: BaseException) -> None:
        """Speichert Typ, Nachricht und Stacktrace als Attribute und Event."""
        self._ensure_open("record exception")
        attrs: dict[str, AttributeValue] = {
            "exception.type": type(exc).__name__,
            "exception.message": str(exc),
            "exception.stacktrace": "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        }
        self.events.append(SpanEvent(name="exception", attributes=attrs))
        self.attributes.update(attrs)

    def set_status(self, code: StatusCode, message: str = "") -> None:
        self._ensure_open("set status")
        self.status_code = code
        # Beschreibung nur bei ERROR (OpenTelemetry Spec)
        self.status_message = message if code == StatusCode.ERROR else ""

    def set_ok(self) -> None:
        self.set_status(StatusCode.OK)

    def set_error(self, message: str = "") -> None:
        self.set_status(StatusCode.ERROR, message)

    def end(self) -> None:
        """Beendet den Span und übergibt ihn genau einmal an den Processor."""
        if self._ended:
            return
        self.end_time_ns = time.time_ns()
        self._ended = True
        if self._on_end is not None:
            self._on_end(self)

    def to_otlp(self) -> dict[str, Any]:
        """OTLP-kompatibles Format (für Export)."""
        return {
            "traceId": self.trace_id,
            "spanId": self.span_id,
            "parentSpanId": self.parent_span_id,
            "name": self.name,
            "kind": self.kind.value + 1,  # OTLP ist 1-basiert
            "startTimeUnixNano": str(self.start_time_ns),
            "endTimeUnixNano": str(self.end_time_ns),
            "attributes": otlp_attributes(self.attributes),
            "events": [e.to_otlp() for e in self.events],
            "status": {
                "code": self.status_code.value,
                "message": self.status_message,
            },
        }


# ── Metric Types ─────────────────────────────────────────────────

DEFAULT_BUCKET_BOUNDARIES: tuple[float, ...] = (
    5, 10, 25, 50, 75, 100, 250, 500, 750, 1000, 2500, 5000, 10000,
)


def is_real_number(value: Any) -> bool:
    """True für endliche int/float-Werte (bool zählt nicht)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


@dataclass
class MetricDataPoint:
    """Ein einzelner Metrik-Datenpunkt (Summe oder Gauge)."""
    value: float = 0.0
    attributes: dict[str, str] = field(default_factory=dict)
    start_time_ns: int = 0
    timestamp_ns: int = 0

    def __post_init__(self) -> None:
        if not self.timestamp_ns:
            self.timestamp_ns = time.time_ns()

    def to_otlp(self) -> dict[str, Any]:
        point: dict[str, Any] = {
            "asDouble": float(self.value),
            "timeUnixNano": str(self.timestamp_ns),
            "attributes": otlp_attributes(self.attributes),
        }
        if self.start_time_ns:
            point["startTimeUnixNano"] = str(self.start_time_ns)
        return point


@dataclass
class HistogramDataPoint:
    """Datenpunkt für Histogram-Metriken."""
    count: int = 0
    total: float = 0.0
    min_value: float = float("inf")
    max_value: float = float("-inf")
    bucket_counts: list[int] = field(default_factory=list)
    bucket_boundaries: list[float] = field(default_factory=lambda: list(DEFAULT_BUCKET_BOUNDARIES))
    attributes: dict[str, str] = field(default_factory=dict)
    start_time_ns: int = 0
    timestamp_ns: int = 0

    def __post_init__(self) -> None:
        if not self.start_time_ns:
            self.start_time_ns = time.time_ns()
        if not self.bucket_counts:
            self.bucket_counts = [0] * (len(self.bucket_boundaries) + 1)

    def record(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min_value = min(self.min_value, value)
        self.max_value = max(self.max_value, value)
        self.timestamp_ns = time.time_ns()
        for i, boundary in enumerate(self.bucket_boundaries):
            if value <= boundary:
                self.bucket_counts[i] += 1
                return
        self.bucket_counts[-1] += 1

    @property
    def average(self) -> float:
        return self.total / self.count if self.count else 0.0

    def copy(self) -> HistogramDataPoint:
        return HistogramDataPoint(
            count=self.count,
            total=self.total,
            min_value=self.min_value,
            max_value=self.max_value,
            bucket_counts=list(self.bucket_counts),
            bucket_boundaries=list(self.bucket_boundaries),
            attributes=dict(self.attributes),
            start_time_ns=self.start_time_ns,
            timestamp_ns=self.timestamp_ns or time.time_ns(),
        )

    def to_otlp(self) -> dict[str, Any]:
        return {
            "count": str(self.count),
            "sum": self.total,
            "min": self.min_value if self.count else 0,
            "max": self.max_value if self.count else 0,
            "bucketCounts": [str(c) for c in self.bucket_counts],
            "explicitBounds": list(self.bucket_boundaries),
            "startTimeUnixNano": str(self.start_time_ns),
            "timeUnixNano": str(self.timestamp_ns or time.time_ns()),
            "attributes": otlp_attributes(self.attributes),
        }


@dataclass
class MetricSnapshot:
    """Zustand eines Instruments zum Zeitpunkt einer Collection."""
    name: str
    kind: MetricKind
    description: str = ""
    unit: str = ""
    scope: InstrumentationScope = field(default_factory=lambda: InstrumentationScope("otelpoc"))
    data_points: list[MetricDataPoint] = field(default_factory=list)
    histogram_points: list[HistogramDataPoint] = field(default_factory=list)

    def to_otlp(self) -> dict[str, Any]:
        m: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
        }
        if self.kind in (MetricKind.COUNTER, MetricKind.UP_DOWN_COUNTER):
            m["sum"] = {
                "dataPoints": [dp.to_otlp() for dp in self.data_points],
                "isMonotonic": self.kind == MetricKind.COUNTER,
                "aggregationTemporality": 2,  # CUMULATIVE
            }
        elif self.kind == MetricKind.GAUGE:
            m["gauge"] = {"dataPoints": [dp.to_otlp() for dp in self.data_points]}
        else:
            m["histogram"] = {
                "dataPoints": [hp.to_otlp() for hp in self.histogram_points],
                "aggregationTemporality": 2,
            }
        return m


# ── OTLP Helper ──────────────────────────────────────────────────

def _otlp_value(v: Any) -> dict[str, Any]:
    """Konvertiert Python-Wert zu OTLP AnyValue."""
    if isinstance(v, bool):
        return {"boolValue": v}
    if isinstance(v, int):
        return {"intValue": str(v)}
    if isinstance(v, float):
        return {"doubleValue": v}
    return {"stringValue": str(v)}


def otlp_attributes(attrs: dict[str, Any]) -> list[dict[str, Any]]:
    return [{"key": k, "value": _otlp_value(v)} for k, v in attrs.items()]
