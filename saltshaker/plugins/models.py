"""Pydantic models for installed plugins and their capability grants.

Two documents are stored per installed plugin: ``metadata.json`` (what was
installed, and which file to run) and ``context.json`` (which permissions
and resources the plugin was granted). Both are written once at install
time and only replaced by a reinstall.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from saltshaker.plugins.api import PluginApi


_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_id(plugin_id: str) -> str:
    """Folder-safe form of a plugin id: anything outside [A-Za-z0-9_-] becomes '_'."""
    return _UNSAFE_ID_CHARS.sub("_", plugin_id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Stored documents
# ---------------------------------------------------------------------------

class PluginMetadata(BaseModel):
    """Immutable description of an installed plugin."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    content_hash: str = Field(..., description="sha256 hex digest of the installed archive")
    installed_at: datetime = Field(default_factory=_utcnow)
    entry: str = Field(..., min_length=1, description="Entry file relative to dist/")

    @field_validator("entry")
    @classmethod
    def _relative_entry(cls, v: str) -> str:
        if v.startswith(("/", "\\")) or ".." in v.replace("\\", "/").split("/"):
            raise ValueError(f"entry must be a relative path inside dist/, got {v!r}")
        return v


class PluginResource(BaseModel):
    """A file a plugin may read, declared at install time."""

    id: str = Field(..., min_length=1)
    type: str = Field(default="text", description="Content type, e.g. 'json' or 'text'")
    path: str = Field(..., min_length=1, description="Path template with {home} / {appData}")


class PluginContext(BaseModel):
    """Capability grant for one plugin."""

    plugin_id: str = Field(..., min_length=1)
    permissions: set[str] = Field(default_factory=set)
    resources: dict[str, PluginResource] = Field(default_factory=dict)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def get_resource(self, resource_id: str) -> PluginResource | None:
        return self.resources.get(resource_id)


# ---------------------------------------------------------------------------
# Install request / result
# ---------------------------------------------------------------------------

class InstallRequest(BaseModel):
    """Everything needed to install one plugin archive."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    content_hash: str | None = Field(default=None, description="Expected sha256 hex, verified when given")
    archive_bytes: bytes
    permissions: set[str] = Field(default_factory=set)
    resources: dict[str, PluginResource] = Field(default_factory=dict)

    @field_validator("resources", mode="before")
    @classmethod
    def _resources_from_list(cls, v: Any) -> Any:
        # Accept a manifest-style list of resources as well as a mapping
        if isinstance(v, list):
            return {r["id"] if isinstance(r, dict) else r.id: r for r in v}
        return v


class InstallResult(BaseModel):
    ok: bool
    storage_path: str
    metadata: PluginMetadata | None = None


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------

@dataclass
class PluginInstance:
    """A running plugin: its guest namespace and the handle it was given.

    Attributes:
        plugin_id: Id the instance is registered under.
        metadata: Installed metadata, or None for raw-source activations.
        namespace: Globals of the executed guest module.
        api: The restricted handle passed to the guest.
        activated_at: When the instance was registered.
    """

    plugin_id: str
    metadata: PluginMetadata | None
    namespace: dict[str, Any]
    api: "PluginApi"
    activated_at: datetime = field(default_factory=_utcnow)

    def callback(self, name: str) -> Any:
        """Guest lifecycle callback by name, or None if not callable."""
        fn = self.namespace.get(name)
        return fn if callable(fn) else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "plugin_id": self.plugin_id,
            "metadata": self.metadata.model_dump(mode="json") if self.metadata else None,
            "activated_at": self.activated_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<PluginInstance {self.plugin_id} activated_at={self.activated_at.isoformat()}>"
