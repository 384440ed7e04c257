"""otelpoc · Telemetrie-Korrelation zwischen HTTP-Service und Log-Processor."""

__version__ = "1.0.0"
