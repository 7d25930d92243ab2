"""Install / run / uninstall facade over the plugin store and the engine."""

from __future__ import annotations

import asyncio
import logging

from saltshaker.events.bus import EventBus, HostEvent
from saltshaker.plugins.engine import SandboxEngine
from saltshaker.plugins.models import (
    InstallRequest,
    InstallResult,
    PluginContext,
    PluginMetadata,
)
from saltshaker.plugins.registry import PluginRegistry

logger = logging.getLogger(__name__)


class PluginManager:
    """Entry point for everything a UI or CLI does with plugins.

    Blocking store operations run in a worker thread. Lifecycle
    notifications (``plugins:installed``, ``plugins:uninstalled``) are
    published on the bus.
    """

    def __init__(self, registry: PluginRegistry, engine: SandboxEngine, bus: EventBus) -> None:
        self._registry = registry
        self._engine = engine
        self._bus = bus

    @property
    def registry(self) -> PluginRegistry:
        return self._registry

    @property
    def engine(self) -> SandboxEngine:
        return self._engine

    async def install_plugin(self, request: InstallRequest) -> InstallResult:
        """Install (or reinstall) a plugin archive.

        Raises:
            PluginInstallError: If the archive is rejected.
        """
        metadata = await asyncio.to_thread(self._registry.install, request)
        self._bus.publish(HostEvent.PLUGIN_INSTALLED, metadata.model_dump(mode="json"))
        return InstallResult(
            ok=True,
            storage_path=str(self._registry.plugin_dir(request.id)),
            metadata=metadata,
        )

    async def uninstall_plugin(self, plugin_id: str) -> dict[str, bool]:
        """Deactivate a plugin and remove its installation."""
        await self._engine.deactivate(plugin_id)
        removed = await asyncio.to_thread(self._registry.uninstall, plugin_id)
        if removed:
            self._bus.publish(HostEvent.PLUGIN_UNINSTALLED, {"id": plugin_id})
        return {"ok": removed}

    async def run_installed_plugin(self, plugin_id: str) -> bool:
        """Activate an installed plugin from its entry point.

        Raises:
            PluginNotInstalledError: If no valid installation exists.
        """
        metadata, source = await asyncio.to_thread(self._registry.load_entry, plugin_id)
        return await self._engine.activate(plugin_id, source, metadata)

    async def load_and_run_plugin(
        self,
        plugin_id: str,
        code: str,
        metadata: PluginMetadata | None = None,
    ) -> bool:
        """Activate plugin source that is not (necessarily) installed."""
        logger.info("Activating plugin %s from source", plugin_id)
        return await self._engine.activate(plugin_id, code, metadata)

    def list_installed_plugins(self) -> list[PluginMetadata]:
        return self._registry.list_installed()

    async def get_installed_plugin_context(self, plugin_id: str) -> PluginContext | None:
        return await asyncio.to_thread(self._registry.get_context, plugin_id)

    def __repr__(self) -> str:
        return f"<PluginManager registry={self._registry!r} engine={self._engine!r}>"
