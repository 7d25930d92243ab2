"""
Errors surfaced to plugins by the capability bridges.

Every error carries a stable ``code`` a plugin can branch on. Messages name
the plugin and the resource id involved but never a resolved filesystem
path.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base error for host operations invoked by a plugin."""

    code = "Internal"

    def __init__(self, message: str, plugin_id: str | None = None) -> None:
        super().__init__(message)
        self.plugin_id = plugin_id

    def to_dict(self) -> dict[str, str | None]:
        return {"code": self.code, "message": str(self), "plugin_id": self.plugin_id}


class UnknownPluginError(BridgeError):
    code = "UnknownPlugin"


class PermissionDeniedError(BridgeError):
    code = "PermissionDenied"


class UnknownResourceError(BridgeError):
    code = "UnknownResource"


class WrongResourceTypeError(BridgeError):
    code = "WrongResourceType"


class PathEscapeError(BridgeError):
    code = "PathEscape"


class SizeLimitExceededError(BridgeError):
    code = "SizeLimitExceeded"


class MalformedJsonError(BridgeError):
    code = "MalformedJson"


class ResourceUnavailableError(BridgeError):
    """The resource resolved to a file that is missing or unreadable."""

    code = "ResourceUnavailable"
