"""otelpoc · Fehler-Hierarchie.

Alle eigenen Exceptions erben von OtelPocError, die einen error_code
und ein optionales details-Dict trägt.

ServiceError-Unterklassen tragen zusätzlich den HTTP-Status, mit dem
die Front-Services sie beantworten:

    ValidationError      → 400
    DownstreamCallError  → 502
    UnhandledError       → 500

Usage::

    from otelpoc.errors import DownstreamCallError

    raise DownstreamCallError("Failed to send logs to Lambda", details="timeout")
"""

from __future__ import annotations

from typing import Any


class OtelPocError(Exception):
    """Basis für alle otelpoc-Fehler."""

    def __init__(
        self,
        message: str,
        error_code: str = "OTELPOC_ERROR",
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details


class ConfigError(OtelPocError):
    """Ungültige Konfiguration (Datei, Umgebungsvariablen)."""

    def __init__(self, message: str, error_code: str = "CONFIG_ERROR", details: Any = None) -> None:
        super().__init__(message, error_code=error_code, details=details)


class TelemetryError(OtelPocError):
    """Fehler im Telemetrie-Kern."""

    def __init__(self, message: str, error_code: str = "TELEMETRY_ERROR", details: Any = None) -> None:
        super().__init__(message, error_code=error_code, details=details)


class TelemetryStateError(TelemetryError):
    """Operation im aktuellen Lifecycle-State nicht erlaubt."""

    def __init__(self, message: str, error_code: str = "TELEMETRY_STATE", details: Any = None) -> None:
        super().__init__(message, error_code=error_code, details=details)


# ============================================================================
# Request-Fehler (werden zu HTTP-Antworten)
# ============================================================================


class ServiceError(OtelPocError):
    """Fehler, der als HTTP-Antwort beim Aufrufer ankommt."""

    status_code: int = 500

    def __init__(self, message: str, error_code: str = "SERVICE_ERROR", details: Any = None) -> None:
        super().__init__(message, error_code=error_code, details=details)

    def to_response(self) -> dict[str, Any]:
        """JSON-Body der Fehlerantwort."""
        body: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(ServiceError):
    """Fehlerhafte Eingabe (z.B. nicht-numerischer Counter-Wert)."""

    status_code = 400

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR", details: Any = None) -> None:
        super().__init__(message, error_code=error_code, details=details)


class SpanEndedError(ValidationError):
    """Mutation eines bereits beendeten Spans."""

    def __init__(self, message: str, error_code: str = "SPAN_ENDED", details: Any = None) -> None:
        super().__init__(message, error_code=error_code, details=details)


class DownstreamCallError(ServiceError):
    """Aufruf der nachgelagerten Funktion fehlgeschlagen oder Timeout."""

    status_code = 502

    def __init__(self, message: str, error_code: str = "DOWNSTREAM_ERROR", details: Any = None) -> None:
        super().__init__(message, error_code=error_code, details=details)


class UnhandledError(ServiceError):
    """Jeder andere Fehler. Details werden nicht nach außen gegeben."""

    status_code = 500

    def __init__(self, message: str, error_code: str = "UNHANDLED_ERROR", details: Any = None) -> None:
        super().__init__(message, error_code=error_code, details=details)

    def to_response(self) -> dict[str, Any]:
        return {"error": self.message}
