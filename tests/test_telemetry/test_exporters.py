"""Tests für OTLP-HTTP-Export und ExporterSet."""

from __future__ import annotations

import json

import httpx
import pytest

from otelpoc.config import TelemetryConfig
from otelpoc.telemetry.exporters import (
    LOGS,
    METRICS,
    TRACES,
    ExporterSet,
    InMemoryExporter,
    OTLPHttpExporter,
    encode_batch,
)
from otelpoc.telemetry.logs import LogRecord, Severity
from otelpoc.telemetry.types import InstrumentationScope, ResourceDescriptor, Span


@pytest.fixture
def resource() -> ResourceDescriptor:
    return ResourceDescriptor("svc", "1.2.3")


def _span(name: str, scope: str = "a") -> Span:
    span = Span(name=name, scope=InstrumentationScope(scope))
    span.end()
    return span


class TestEncodeBatch:
    def test_groups_by_scope(self, resource: ResourceDescriptor) -> None:
        body = encode_batch(TRACES, resource, [_span("1", "a"), _span("2", "b"), _span("3", "a")])
        (resource_spans,) = body["resourceSpans"]
        scopes = {s["scope"]["name"]: [sp["name"] for sp in s["spans"]] for s in resource_spans["scopeSpans"]}
        assert scopes == {"a": ["1", "3"], "b": ["2"]}
        assert resource_spans["resource"] == resource.to_otlp()

    def test_logs_layout(self, resource: ResourceDescriptor) -> None:
        body = encode_batch(LOGS, resource, [LogRecord("hello", Severity.WARN)])
        record = body["resourceLogs"][0]["scopeLogs"][0]["logRecords"][0]
        assert record["severityNumber"] == 13
        assert record["body"] == {"stringValue": "hello"}
        assert "traceId" not in record

    def test_payload_is_json(self, resource: ResourceDescriptor) -> None:
        json.dumps(encode_batch(TRACES, resource, [_span("x")]))


class TestOTLPHttpExporter:
    @pytest.mark.asyncio
    async def test_posts_to_signal_path_with_bearer(self, resource: ResourceDescriptor) -> None:
        seen: list[httpx.Request] = []

        def handle(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        exporter = OTLPHttpExporter(
            TRACES,
            endpoint="http://collector.test/v1/otlp/",
            resource=resource,
            token="secret",
            transport=httpx.MockTransport(handle),
        )
        assert await exporter.export([_span("x")]) is True
        await exporter.shutdown()

        (request,) = seen
        assert str(request.url) == "http://collector.test/v1/otlp/v1/traces"
        assert request.headers["Authorization"] == "Bearer secret"
        assert json.loads(request.content)["resourceSpans"][0]["scopeSpans"][0]["spans"][0]["name"] == "x"
        assert exporter.stats() == {"signal": "traces", "exported": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_no_token_no_authorization(self, resource: ResourceDescriptor) -> None:
        seen: list[httpx.Request] = []

        def handle(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        exporter = OTLPHttpExporter(
            METRICS, endpoint="http://c.test", resource=resource,
            transport=httpx.MockTransport(handle),
        )
        assert "Authorization" not in exporter.headers
        await exporter.export([_span("x")])
        assert "authorization" not in seen[0].headers
        assert exporter.url == "http://c.test/v1/metrics"

    @pytest.mark.asyncio
    async def test_non_2xx_returns_false(self, resource: ResourceDescriptor) -> None:
        exporter = OTLPHttpExporter(
            TRACES, endpoint="http://c.test", resource=resource,
            transport=httpx.MockTransport(lambda r: httpx.Response(503)),
        )
        assert await exporter.export([_span("x"), _span("y")]) is False
        assert exporter.stats()["failed"] == 2

    @pytest.mark.asyncio
    async def test_transport_error_returns_false(self, resource: ResourceDescriptor) -> None:
        def handle(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        exporter = OTLPHttpExporter(
            LOGS, endpoint="http://c.test", resource=resource,
            transport=httpx.MockTransport(handle),
        )
        assert await exporter.export([LogRecord("x")]) is False

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self, resource: ResourceDescriptor) -> None:
        def handle(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        exporter = OTLPHttpExporter(
            TRACES, endpoint="http://c.test", resource=resource,
            transport=httpx.MockTransport(handle),
        )
        assert await exporter.export([]) is True

    @pytest.mark.asyncio
    async def test_export_after_shutdown(self, resource: ResourceDescriptor) -> None:
        exporter = OTLPHttpExporter(
            TRACES, endpoint="http://c.test", resource=resource,
            transport=httpx.MockTransport(lambda r: httpx.Response(200)),
        )
        await exporter.shutdown()
        assert exporter.is_shutdown
        assert await exporter.export([_span("x")]) is False

    def test_unknown_signal(self, resource: ResourceDescriptor) -> None:
        with pytest.raises(ValueError):
            OTLPHttpExporter("profiles", endpoint="http://c.test", resource=resource)


class TestExporterSet:
    def test_from_config(self, resource: ResourceDescriptor) -> None:
        config = TelemetryConfig(endpoint="http://c.test/otlp", token="t", export_timeout_ms=2500)
        exporters = ExporterSet.from_config(config, resource)
        urls = [e.url for e in exporters]  # type: ignore[attr-defined]
        assert urls == [
            "http://c.test/otlp/v1/traces",
            "http://c.test/otlp/v1/metrics",
            "http://c.test/otlp/v1/logs",
        ]
        assert all(e.headers["Authorization"] == "Bearer t" for e in exporters)  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_in_memory(self) -> None:
        exporters = ExporterSet.in_memory()
        assert [e.signal for e in exporters] == [TRACES, METRICS, LOGS]
        assert isinstance(exporters.traces, InMemoryExporter)
        await exporters.traces.export([_span("x")])
        assert exporters.stats()["traces"]["exported"] == 1
        exporters.traces.clear()
        assert exporters.traces.records == []
