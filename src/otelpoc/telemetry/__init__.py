"""otelpoc Telemetrie -- Traces, Metriken und Logs über OTLP/JSON.

  - TelemetryProcess: Lifecycle der drei Export-Pipelines
  - SpanTracker:      Spans mit expliziten Parents
  - MetricsRegistry:  Counter, UpDownCounter, Histogram, AsyncGauge
  - CrossProcessCorrelator: Trace-IDs im Payload weiterreichen

Usage:
    from otelpoc.telemetry import TelemetryProcess

    process = TelemetryProcess(config.telemetry)
    await process.initialize()
    tracker = process.tracker("opentelemetry-poc", "1.0.0")
    async with tracker.span("handle_request") as span:
        span.set_attribute("user.id", "u123")
    await process.shutdown()
"""

from otelpoc.telemetry.types import (
    Environment,
    InstrumentationScope,
    MetricKind,
    MetricSnapshot,
    ResourceDescriptor,
    Span,
    SpanContext,
    SpanKind,
    StatusCode,
)
from otelpoc.telemetry.exporters import (
    Exporter,
    ExporterSet,
    InMemoryExporter,
    OTLPHttpExporter,
)
from otelpoc.telemetry.tracer import BatchSpanProcessor, SpanScope, SpanTracker
from otelpoc.telemetry.metrics import (
    AsyncGauge,
    Counter,
    Histogram,
    Meter,
    MetricsRegistry,
    Observation,
    ObservationResult,
    PeriodicMetricReader,
    UpDownCounter,
)
from otelpoc.telemetry.logs import LogRecord, Severity, TelemetryLogger
from otelpoc.telemetry.correlation import CorrelationEnvelope, CrossProcessCorrelator
from otelpoc.telemetry.instrumentation import HttpMetrics, RequestPipeline
from otelpoc.telemetry.process import TelemetryProcess, TelemetryState

__all__ = [
    "AsyncGauge",
    "BatchSpanProcessor",
    "CorrelationEnvelope",
    "Counter",
    "CrossProcessCorrelator",
    "Environment",
    "Exporter",
    "ExporterSet",
    "Histogram",
    "HttpMetrics",
    "InMemoryExporter",
    "InstrumentationScope",
    "LogRecord",
    "Meter",
    "MetricKind",
    "MetricSnapshot",
    "MetricsRegistry",
    "OTLPHttpExporter",
    "Observation",
    "ObservationResult",
    "PeriodicMetricReader",
    "RequestPipeline",
    "ResourceDescriptor",
    "Severity",
    "Span",
    "SpanContext",
    "SpanKind",
    "SpanScope",
    "SpanTracker",
    "StatusCode",
    "TelemetryLogger",
    "TelemetryProcess",
    "TelemetryState",
    "UpDownCounter",
]
