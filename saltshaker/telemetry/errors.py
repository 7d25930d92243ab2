"""Error types for the telemetry core."""


class TelemetryError(Exception):
    """Base error for telemetry operations."""


class DecodeError(TelemetryError):
    """Raised when the raw game stream cannot be decoded."""


class TransportError(TelemetryError):
    """Raised or reported when the telemetry connection fails."""
