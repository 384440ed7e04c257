"""
otelpoc -- Entry Point.

Usage: otelpoc service
       otelpoc log-processor --port 9000
       otelpoc service --config /path/to/config.yaml
       otelpoc --version
       python -m otelpoc service
"""

from __future__ import annotations

import argparse
from pathlib import Path

from dotenv import load_dotenv

from otelpoc import __version__

COMPONENTS = {"service": "service", "log-processor": "log_processor"}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Kommandozeilen-Argumente parsen."""
    parser = argparse.ArgumentParser(
        prog="otelpoc",
        description="OpenTelemetry POC -- front service and log processor",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"otelpoc v{__version__}",
    )
    parser.add_argument(
        "component",
        choices=sorted(COMPONENTS),
        help="Welcher Prozess gestartet wird",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Pfad zu einer config.yaml (optional)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log-Level überschreiben",
    )
    parser.add_argument("--host", default=None, help="Bind-Adresse überschreiben")
    parser.add_argument("--port", type=int, default=None, help="Port überschreiben")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Startet den gewählten Prozess unter uvicorn.

    uvicorn übernimmt SIGTERM/SIGINT: keine neuen Verbindungen, dann
    Lifespan-Ende, das den TelemetryProcess leert.
    """
    args = parse_args(argv)

    # 0. .env-Datei laden (überschreibt keine gesetzten Variablen)
    load_dotenv(Path(".env"), override=False)

    # 1. Konfiguration laden
    from otelpoc.config import load_config
    from otelpoc.errors import ConfigError

    component = COMPONENTS[args.component]
    try:
        config = load_config(args.config, component)  # type: ignore[call-overload]
    except ConfigError as exc:
        raise SystemExit(f"Konfigurationsfehler: {exc.message} {exc.details or ''}".rstrip()) from exc

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    # 2. Logging initialisieren
    from otelpoc.utils.logging import get_logger, setup_logging

    setup_logging(
        level=args.log_level or config.logging.level,
        log_dir=Path(config.logging.log_dir) if config.logging.log_dir else None,
        json_logs=config.logging.json_logs,
        console=config.logging.console,
        service=config.telemetry.service_name,
    )
    log = get_logger("otelpoc")
    log.info(
        "otelpoc_starting",
        component=component,
        version=__version__,
        host=config.host,
        port=config.port,
        service=config.telemetry.service_name,
    )

    # 3. App bauen und Server starten
    import uvicorn

    if component == "log_processor":
        from otelpoc.log_processor.server import create_app as create_processor_app

        app = create_processor_app(config)  # type: ignore[arg-type]
    else:
        from otelpoc.service.app import create_app

        app = create_app(config)  # type: ignore[arg-type]

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_config=None,
        timeout_graceful_shutdown=(config.telemetry.shutdown_timeout_ms * 3) // 1000 + 1,
    )
    log.info("otelpoc_stopped", component=component)


if __name__ == "__main__":
    main()
