"""
Permission-gated file reads for plugins.

A plugin never names a path. It names a resource id from its install-time
grant, and the bridge resolves that resource's path template, confines the
result to the user's home directory and reads at most a fixed number of
bytes. Checks run in a fixed order and the first failing one decides the
error:

    1. the plugin has a stored context          -> UnknownPlugin
    2. the context grants ``file.read``         -> PermissionDenied
    3. the resource id is declared              -> UnknownResource
    4. (JSON only) the resource type is json    -> WrongResourceType
    5. the canonical path lies inside home      -> PathEscape
    6. the file is at most ``max_bytes`` long   -> SizeLimitExceeded
    7. (JSON only) the content parses           -> MalformedJson
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from platformdirs import user_data_dir

from saltshaker.bridges.errors import (
    MalformedJsonError,
    PathEscapeError,
    PermissionDeniedError,
    ResourceUnavailableError,
    SizeLimitExceededError,
    UnknownPluginError,
    UnknownResourceError,
    WrongResourceTypeError,
)
from saltshaker.plugins.models import PluginContext, PluginResource

logger = logging.getLogger(__name__)


PERMISSION_FILE_READ = "file.read"
DEFAULT_MAX_BYTES = 64 * 1024

ContextLookup = Callable[[str], "PluginContext | None | Awaitable[PluginContext | None]"]


class FileBridge:
    """Reads whitelisted resources on behalf of plugins.

    Args:
        get_context: Returns the stored context for a plugin id, or None.
            May be a plain function or a coroutine function.
        home_dir: Confinement root; defaults to the user's home directory.
        app_data_dir: Value of ``{appData}``; defaults to the platform's
            roaming application-data directory.
        max_bytes: Largest file a plugin may read.
    """

    def __init__(
        self,
        get_context: ContextLookup,
        home_dir: str | Path | None = None,
        app_data_dir: str | Path | None = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self._get_context = get_context
        self._home = Path(home_dir) if home_dir is not None else Path.home()
        if app_data_dir is None:
            app_data_dir = user_data_dir(appname=None, appauthor=False, roaming=True)
        self._app_data = Path(app_data_dir)
        self._max_bytes = max_bytes

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    async def read_text(self, plugin_id: str, resource_id: str) -> str:
        """Read a declared resource as UTF-8 text."""
        resource = await self._authorize(plugin_id, resource_id)
        path = self._resolve(plugin_id, resource)
        data = await asyncio.to_thread(self._read_limited, plugin_id, resource_id, path)
        return data.decode("utf-8", errors="replace")

    async def read_json(self, plugin_id: str, resource_id: str) -> Any:
        """Read a declared ``json`` resource and parse it."""
        resource = await self._authorize(plugin_id, resource_id, require_type="json")
        path = self._resolve(plugin_id, resource)
        data = await asyncio.to_thread(self._read_limited, plugin_id, resource_id, path)
        try:
            return json.loads(data.decode("utf-8"))
        except json.JSONDecodeError as e:
            reason = f"{e.msg} at line {e.lineno}"
        except UnicodeDecodeError:
            reason = "not UTF-8"
        raise MalformedJsonError(
            f"Resource '{resource_id}' of plugin '{plugin_id}' is not valid JSON: {reason}",
            plugin_id=plugin_id,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def _authorize(
        self,
        plugin_id: str,
        resource_id: str,
        require_type: str | None = None,
    ) -> PluginResource:
        context = await self._lookup(plugin_id)
        if context is None:
            raise UnknownPluginError(f"Unknown plugin: {plugin_id}", plugin_id=plugin_id)

        if not context.has_permission(PERMISSION_FILE_READ):
            raise PermissionDeniedError(
                f"Plugin '{plugin_id}' lacks permission {PERMISSION_FILE_READ}",
                plugin_id=plugin_id,
            )

        resource = context.get_resource(resource_id)
        if resource is None:
            raise UnknownResourceError(
                f"Unknown resource '{resource_id}' for plugin '{plugin_id}'",
                plugin_id=plugin_id,
            )

        if require_type is not None and resource.type != require_type:
            raise WrongResourceTypeError(
                f"Resource '{resource_id}' of plugin '{plugin_id}' is not {require_type}",
                plugin_id=plugin_id,
            )

        return resource

    async def _lookup(self, plugin_id: str) -> PluginContext | None:
        if not plugin_id:
            return None
        result = self._get_context(plugin_id)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _resolve(self, plugin_id: str, resource: PluginResource) -> Path:
        """Expand placeholders and canonicalise, then enforce home confinement."""
        expanded = (
            resource.path
            .replace("{home}", str(self._home))
            .replace("{appData}", str(self._app_data))
        )
        candidate = Path(expanded)
        if not candidate.is_absolute():
            candidate = self._home / candidate

        resolved = Path(os.path.realpath(candidate))
        home = Path(os.path.realpath(self._home))
        if not resolved.is_relative_to(home):
            logger.warning(
                "Blocked read of resource '%s' by plugin %s: path outside home", resource.id, plugin_id
            )
            raise PathEscapeError(
                f"Resource '{resource.id}' of plugin '{plugin_id}' resolves outside the allowed directory",
                plugin_id=plugin_id,
            )
        return resolved

    def _read_limited(self, plugin_id: str, resource_id: str, path: Path) -> bytes:
        try:
            with path.open("rb") as fh:
                data = fh.read(self._max_bytes + 1)
        except OSError as e:
            raise ResourceUnavailableError(
                f"Resource '{resource_id}' of plugin '{plugin_id}' is unavailable: {e.strerror or 'read failed'}",
                plugin_id=plugin_id,
            ) from None

        if len(data) > self._max_bytes:
            raise SizeLimitExceededError(
                f"Resource '{resource_id}' of plugin '{plugin_id}' exceeds {self._max_bytes} bytes",
                plugin_id=plugin_id,
            )
        return data

    def __repr__(self) -> str:
        return f"<FileBridge max_bytes={self._max_bytes}>"
