"""
otelpoc · Configuration system.

Loads configuration from:
  1. Defaults (defined here)
  2. optional YAML file (overrides defaults)
  3. Environment variables (overrides everything)

Zwei Komponenten mit eigenen Defaults:
  - ``service``: HTTP-Front-Service (Port 3000)
  - ``log_processor``: Log-Processor-Funktion + Mock-Runtime (Port 9000)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, overload

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from otelpoc.errors import ConfigError
from otelpoc.telemetry.types import Environment
from otelpoc.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_ENDPOINT = "https://collect.observeinc.com/v1/otlp"

Component = Literal["service", "log_processor"]

# ============================================================================
# Konfigurationsmodelle
# ============================================================================


class TelemetryConfig(BaseModel):
    """Export-Ziel, Resource-Identität und Pipeline-Parameter."""

    endpoint: str = DEFAULT_ENDPOINT
    token: str = ""
    """Bearer-Token des Collectors. Leer = kein Authorization-Header."""

    service_name: str = "opentelemetry-poc"
    service_version: str = "1.0.0"
    environment: Environment = Environment.DEVELOPMENT

    metric_export_interval_ms: int = Field(default=10000, ge=100, le=600_000)
    export_timeout_ms: int = Field(default=10000, ge=100, le=120_000)
    shutdown_timeout_ms: int = Field(default=5000, ge=100, le=120_000)

    # Batch-Span-Processor
    span_schedule_delay_ms: int = Field(default=5000, ge=10, le=600_000)
    max_queue_size: int = Field(default=2048, ge=1)
    max_export_batch_size: int = Field(default=512, ge=1)

    @model_validator(mode="after")
    def _check_batch_size(self) -> TelemetryConfig:
        if self.max_export_batch_size > self.max_queue_size:
            raise ValueError("max_export_batch_size must not exceed max_queue_size")
        if not self.endpoint.startswith(("http://", "https://")):
            raise ValueError(f"endpoint must be an http(s) URL: {self.endpoint!r}")
        return self


class LoggingConfig(BaseModel):
    """Logging-Konfiguration."""

    level: str = "INFO"
    json_logs: bool = False
    console: bool = True
    log_dir: str = ""
    """Verzeichnis für JSONL-Logdateien. Leer = keine Datei-Logs."""


class ServiceConfig(BaseModel):
    """Front-Service (HTTP-API)."""

    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)
    lambda_url: str = "http://localhost:9000"
    users_api_url: str = "https://jsonplaceholder.typicode.com/users"
    downstream_timeout_ms: int = Field(default=5000, ge=100, le=120_000)
    processing_delay_ms: int = Field(default=150, ge=0, le=10_000)

    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class ProcessorConfig(BaseModel):
    """Log-Processor (Funktion + Mock-Runtime)."""

    host: str = "0.0.0.0"
    port: int = Field(default=9000, ge=1, le=65535)
    aws_region: str = "us-east-1"
    function_name: str = "lambda-log-processor"
    processing_delay_ms: int = Field(default=50, ge=0, le=10_000)

    telemetry: TelemetryConfig = Field(
        default_factory=lambda: TelemetryConfig(
            service_name="lambda-log-processor",
            metric_export_interval_ms=5000,
        )
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ============================================================================
# Umgebungsvariablen
# ============================================================================

_COMMON_ENV: dict[str, tuple[str, ...]] = {
    "OBSERVE_ENDPOINT": ("telemetry", "endpoint"),
    "OBSERVE_TOKEN": ("telemetry", "token"),
    "SERVICE_NAME": ("telemetry", "service_name"),
    "SERVICE_VERSION": ("telemetry", "service_version"),
    "DEPLOYMENT_ENVIRONMENT": ("telemetry", "environment"),
    "METRIC_EXPORT_INTERVAL_MS": ("telemetry", "metric_export_interval_ms"),
    "EXPORT_TIMEOUT_MS": ("telemetry", "export_timeout_ms"),
    "SHUTDOWN_TIMEOUT_MS": ("telemetry", "shutdown_timeout_ms"),
    "HOST": ("host",),
    "PORT": ("port",),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_JSON": ("logging", "json_logs"),
    "LOG_DIR": ("logging", "log_dir"),
}

_COMPONENT_ENV: dict[str, dict[str, tuple[str, ...]]] = {
    "service": {
        "LAMBDA_LOG_URL": ("lambda_url",),
        "USERS_API_URL": ("users_api_url",),
        "DOWNSTREAM_TIMEOUT_MS": ("downstream_timeout_ms",),
    },
    "log_processor": {
        "AWS_REGION": ("aws_region",),
        "AWS_LAMBDA_FUNCTION_NAME": ("function_name",),
    },
}


def _set_path(data: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    node = data
    for part in path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[path[-1]] = value


def _apply_env_overrides(data: dict[str, Any], component: Component) -> dict[str, Any]:
    """Wendet die Umgebungsvariablen der Komponente an.

    Auf AWS Lambda (``AWS_LAMBDA_FUNCTION_NAME`` gesetzt) ist die Umgebung
    des Log-Processors ``production``, solange nichts anderes gesetzt ist.
    """
    mapping = {**_COMMON_ENV, **_COMPONENT_ENV[component]}
    if component == "log_processor" and os.environ.get("AWS_LAMBDA_FUNCTION_NAME"):
        _set_path(data, ("telemetry", "environment"), Environment.PRODUCTION.value)
    for env_key, path in mapping.items():
        value = os.environ.get(env_key)
        if value is None or value == "":
            continue
        _set_path(data, path, value)
    return data


# ============================================================================
# Laden
# ============================================================================


@overload
def load_config(
    config_path: Path | None = ..., component: Literal["service"] = ...,
) -> ServiceConfig: ...


@overload
def load_config(
    config_path: Path | None, component: Literal["log_processor"],
) -> ProcessorConfig: ...


def load_config(
    config_path: Path | None = None,
    component: Component = "service",
) -> ServiceConfig | ProcessorConfig:
    """Lädt die Konfiguration einer Komponente.

    Reihenfolge (spätere überschreiben frühere):
      1. Defaults (in den Pydantic-Modellen)
      2. YAML-Datei (wenn angegeben)
      3. Umgebungsvariablen

    Raises:
        ConfigError: Datei fehlt oder Werte sind ungültig.
    """
    data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            with open(config_path, encoding="utf-8") as f:
                file_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            log.warning("config_yaml_ignored", path=str(config_path), error=str(exc))
            file_data = {}
        if isinstance(file_data, dict):
            data = file_data

    data = _apply_env_overrides(data, component)

    model: type[ServiceConfig] | type[ProcessorConfig] = (
        ProcessorConfig if component == "log_processor" else ServiceConfig
    )
    if component == "log_processor":
        # Komponenten-Defaults für Teilabschnitte aus Datei/Env erhalten
        telemetry = data.get("telemetry")
        if isinstance(telemetry, dict):
            telemetry.setdefault("service_name", "lambda-log-processor")
            telemetry.setdefault("metric_export_interval_ms", 5000)
    try:
        return model(**data)
    except PydanticValidationError as exc:
        raise ConfigError(
            f"Invalid {component} configuration",
            details=[
                {"field": ".".join(str(p) for p in err["loc"]), "error": err["msg"]}
                for err in exc.errors()
            ],
        ) from exc
