"""
Capability bridges: the host operations a sandboxed plugin can reach.

Each bridge operation takes the calling plugin's id, validates it against
the plugin's grant and either returns a value or raises a BridgeError with
a stable ``code``.
"""

from saltshaker.bridges.errors import (
    BridgeError,
    MalformedJsonError,
    PathEscapeError,
    PermissionDeniedError,
    ResourceUnavailableError,
    SizeLimitExceededError,
    UnknownPluginError,
    UnknownResourceError,
    WrongResourceTypeError,
)
from saltshaker.bridges.files import DEFAULT_MAX_BYTES, PERMISSION_FILE_READ, FileBridge
from saltshaker.bridges.telemetry import TelemetryBridge

__all__ = [
    "DEFAULT_MAX_BYTES",
    "PERMISSION_FILE_READ",
    "BridgeError",
    "FileBridge",
    "MalformedJsonError",
    "PathEscapeError",
    "PermissionDeniedError",
    "ResourceUnavailableError",
    "SizeLimitExceededError",
    "TelemetryBridge",
    "UnknownPluginError",
    "UnknownResourceError",
    "WrongResourceTypeError",
]
