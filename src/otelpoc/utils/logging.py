"""
otelpoc · Structured Logging Setup.

Interne Diagnose der Prozesse (Lifecycle, Export-Fehler, Downstream-Probleme).
Telemetrie-Logs, die an den Collector gehen, laufen über
``otelpoc.telemetry.logs`` und landen nie hier.

Ausgabe:
- Konsole: farbig (Entwicklung) oder JSON (``json_logs``)
- Datei ``otelpoc.jsonl``: immer JSON-Lines, rotierend

Jede Zeile trägt ``service``, damit sich Front-Service und Log-Processor
in einem gemeinsamen Log auseinanderhalten lassen.

Verwendung in jedem Modul:
    from otelpoc.utils.logging import get_logger
    log = get_logger(__name__)
    log.info("event_name", key="value")
"""

from __future__ import annotations

import inspect
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

LOG_FILE_NAME = "otelpoc.jsonl"

# Transport- und Server-Logger, die sonst jeden Request/Export protokollieren
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "uvicorn.access")


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Gibt einen structlog-Logger für das Modul zurück."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def _service_stamp(service: str) -> structlog.types.Processor:
    def stamp(
        logger: Any, method_name: str, event_dict: MutableMapping[str, Any],
    ) -> MutableMapping[str, Any]:
        event_dict.setdefault("service", service)
        return event_dict

    return stamp


def _console_renderer(json_logs: bool) -> structlog.types.Processor:
    if json_logs:
        return structlog.processors.JSONRenderer(ensure_ascii=False)
    # <=25.4: pad_event, >=25.5: pad_event_to
    params = inspect.signature(structlog.dev.ConsoleRenderer).parameters
    pad_kwarg = "pad_event_to" if "pad_event_to" in params else "pad_event"
    return structlog.dev.ConsoleRenderer(colors=True, **{pad_kwarg: 40})


def _formatter(renderer: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Path | None = None,
    json_logs: bool = False,
    console: bool = True,
    service: str = "",
) -> None:
    """Initialisiert das Logging-System. Einmal pro Prozess beim Start.

    Args:
        level: Log-Level als String (DEBUG, INFO, WARNING, ERROR).
        log_dir: Verzeichnis für ``otelpoc.jsonl``. None = keine Datei-Logs.
        json_logs: JSON statt farbiger Ausgabe auf der Konsole.
        console: Log-Ausgabe auf stderr.
        service: Wird als ``service`` an jede Zeile gehängt. Leer = weglassen.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    console_formatter = _formatter(_console_renderer(json_logs))
    file_formatter = _formatter(structlog.processors.JSONRenderer(ensure_ascii=False))

    handlers: list[logging.Handler] = []
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    # Datei immer auf DEBUG, 5 MB x 3 Backups
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if service:
        processors.append(_service_stamp(service))

    structlog.configure(
        processors=[
            *processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def bind_context(**kwargs: Any) -> None:
    """Bindet Kontext (z.B. Methode und Pfad eines Requests) an alle folgenden Log-Nachrichten."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Entfernt alle gebundenen Kontext-Variablen."""
    structlog.contextvars.clear_contextvars()
