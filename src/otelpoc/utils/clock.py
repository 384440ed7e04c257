"""Zeitstempel im Format der HTTP-Antworten."""

from __future__ import annotations

from datetime import UTC, datetime


def iso_now() -> str:
    """Aktuelle UTC-Zeit als ISO-8601 mit Millisekunden und ``Z``-Suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
