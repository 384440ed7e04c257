"""
otelpoc · Shared Test-Fixtures.

Telemetrie läuft in allen Tests gegen In-Memory-Exporter, ausgehende
HTTP-Calls gegen ``httpx.MockTransport``. Umgebungsvariablen, die die
Konfiguration beeinflussen, werden pro Test entfernt.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from otelpoc.config import ProcessorConfig, ServiceConfig, TelemetryConfig
from otelpoc.telemetry.exporters import ExporterSet, InMemoryExporter
from otelpoc.telemetry.process import TelemetryProcess
from otelpoc.telemetry.types import ResourceDescriptor, Span

_CONFIG_ENV = (
    "OBSERVE_ENDPOINT",
    "OBSERVE_TOKEN",
    "SERVICE_NAME",
    "SERVICE_VERSION",
    "DEPLOYMENT_ENVIRONMENT",
    "METRIC_EXPORT_INTERVAL_MS",
    "EXPORT_TIMEOUT_MS",
    "SHUTDOWN_TIMEOUT_MS",
    "HOST",
    "PORT",
    "LOG_LEVEL",
    "LOG_JSON",
    "LOG_DIR",
    "LAMBDA_LOG_URL",
    "USERS_API_URL",
    "DOWNSTREAM_TIMEOUT_MS",
    "AWS_REGION",
    "AWS_LAMBDA_FUNCTION_NAME",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _CONFIG_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def telemetry_config() -> TelemetryConfig:
    """Lange Intervalle: exportiert wird erst bei flush/shutdown."""
    return TelemetryConfig(
        endpoint="http://collector.test/v1/otlp",
        metric_export_interval_ms=60_000,
        span_schedule_delay_ms=60_000,
        shutdown_timeout_ms=2000,
    )


@pytest.fixture
def exporters() -> ExporterSet:
    return ExporterSet.in_memory()


@pytest.fixture
def factory_calls() -> list[ResourceDescriptor]:
    return []


@pytest.fixture
def telemetry(
    telemetry_config: TelemetryConfig,
    exporters: ExporterSet,
    factory_calls: list[ResourceDescriptor],
) -> TelemetryProcess:
    """TelemetryProcess (noch nicht initialisiert) mit In-Memory-Exportern."""

    def factory(config: TelemetryConfig, resource: ResourceDescriptor) -> ExporterSet:
        factory_calls.append(resource)
        return exporters

    return TelemetryProcess(telemetry_config, exporter_factory=factory)


@pytest.fixture
def service_config(telemetry_config: TelemetryConfig) -> ServiceConfig:
    return ServiceConfig(
        lambda_url="http://lambda.test",
        users_api_url="http://users.test/users",
        processing_delay_ms=10,
        downstream_timeout_ms=500,
        telemetry=telemetry_config,
    )


@pytest.fixture
def processor_config(telemetry_config: TelemetryConfig) -> ProcessorConfig:
    return ProcessorConfig(
        processing_delay_ms=5,
        telemetry=telemetry_config.model_copy(update={"service_name": "lambda-log-processor"}),
    )


# ── Auswertung ───────────────────────────────────────────────────


@pytest.fixture
def exported_spans(exporters: ExporterSet) -> Callable[[], list[Span]]:
    """Alle bisher exportierten Spans."""
    assert isinstance(exporters.traces, InMemoryExporter)
    traces = exporters.traces
    return lambda: list(traces.records)


@pytest.fixture
def spans_named(exported_spans: Callable[[], list[Span]]) -> Callable[[str], list[Span]]:
    return lambda name: [s for s in exported_spans() if s.name == name]


@pytest.fixture
def exported_metrics(exporters: ExporterSet) -> Callable[[], dict[str, Any]]:
    """Letzter exportierter Snapshot pro Metrik-Name."""
    assert isinstance(exporters.metrics, InMemoryExporter)
    metrics = exporters.metrics
    return lambda: {m.name: m for m in metrics.records}
