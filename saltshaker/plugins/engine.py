"""
Sandbox execution engine: owns the table of active plugin instances.

Activation builds a restricted API handle for the plugin, runs its code in
the sandbox and, when the code defines ``on_init``, registers the instance
and calls ``on_init(api)``. Deactivation calls ``on_dispose``, detaches every
bus listener the plugin registered and drops its telemetry subscriptions.

Plugin failures never propagate out of the engine. A plugin whose code
fails to load, or whose ``on_init`` fails, is logged and left inactive.

Example:
    engine = SandboxEngine(bus, file_bridge, telemetry_bridge)
    await engine.activate("overlay", source)
    ...
    await engine.dispose_all()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from saltshaker.events.bus import EventBus
from saltshaker.plugins.api import PluginApi
from saltshaker.plugins.errors import SandboxLoadError, SandboxRuntimeError
from saltshaker.plugins.models import PluginInstance, PluginMetadata
from saltshaker.plugins.sandbox import PluginSandbox

if TYPE_CHECKING:
    from saltshaker.bridges.files import FileBridge
    from saltshaker.bridges.telemetry import TelemetryBridge

logger = logging.getLogger(__name__)


class SandboxEngine:
    """Activates and deactivates sandboxed plugins.

    Attributes:
        _instances: Active instances keyed by plugin id.
        _locks: Per-id locks serializing activate/deactivate.
        _dispose_on_replace: Whether re-activation disposes the old instance.
    """

    def __init__(
        self,
        bus: EventBus,
        files: FileBridge,
        telemetry: TelemetryBridge,
        sandbox: PluginSandbox | None = None,
        dispose_on_replace: bool = True,
    ) -> None:
        self._bus = bus
        self._files = files
        self._telemetry = telemetry
        self._sandbox = sandbox or PluginSandbox()
        self._dispose_on_replace = dispose_on_replace
        self._instances: dict[str, PluginInstance] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._activation_count = 0
        self._failure_count = 0

    @property
    def sandbox(self) -> PluginSandbox:
        return self._sandbox

    def _lock_for(self, plugin_id: str) -> asyncio.Lock:
        lock = self._locks.get(plugin_id)
        if lock is None:
            lock = self._locks[plugin_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def activate(
        self,
        plugin_id: str,
        code: str,
        metadata: PluginMetadata | None = None,
    ) -> bool:
        """Run plugin code and register it as the active instance.

        Args:
            plugin_id: Id the instance is registered under.
            code: Plugin source.
            metadata: Installed metadata, exposed to the guest as ``plugin``.

        Returns:
            True if the plugin is active afterwards.
        """
        if not plugin_id:
            logger.error("Refusing to activate a plugin without an id")
            return False

        async with self._lock_for(plugin_id):
            self._activation_count += 1

            previous = self._instances.pop(plugin_id, None)
            if previous is not None:
                if self._dispose_on_replace:
                    logger.info(f"Replacing active plugin {plugin_id}; disposing previous instance")
                    await self._teardown(previous)
                else:
                    logger.warning(f"Replacing active plugin {plugin_id} without disposing previous instance")

            api = PluginApi(plugin_id, self._bus, self._files, self._telemetry)
            plugin_info = metadata.model_dump(mode="json") if metadata else {"id": plugin_id, "name": plugin_id}

            try:
                namespace = self._sandbox.load(plugin_id, code, api, plugin_info)
            except SandboxLoadError as e:
                self._failure_count += 1
                logger.error(f"Failed to load plugin {plugin_id}: {e}")
                await self._release(plugin_id, api)
                return False

            instance = PluginInstance(
                plugin_id=plugin_id,
                metadata=metadata,
                namespace=namespace,
                api=api,
            )

            on_init = instance.callback("on_init")
            if on_init is None:
                logger.warning(f"Plugin {plugin_id} defines no on_init(); leaving it inactive")
                await self._release(plugin_id, api)
                return False

            self._instances[plugin_id] = instance
            try:
                await self._sandbox.call(plugin_id, on_init, api)
            except SandboxRuntimeError as e:
                self._failure_count += 1
                logger.error(f"Plugin {plugin_id} failed to initialize: {e}")
                if self._instances.get(plugin_id) is instance:
                    del self._instances[plugin_id]
                await self._release(plugin_id, api)
                return False

            logger.info(f"Activated plugin {plugin_id}")
            return True

    async def deactivate(self, plugin_id: str) -> bool:
        """Dispose and remove an active instance.

        Returns:
            True if an instance was active.
        """
        async with self._lock_for(plugin_id):
            instance = self._instances.pop(plugin_id, None)
            if instance is None:
                return False
            await self._teardown(instance)
            logger.info(f"Deactivated plugin {plugin_id}")
            return True

    async def dispose_all(self) -> None:
        """Deactivate every active plugin."""
        for plugin_id in list(self._instances):
            await self.deactivate(plugin_id)

    async def _teardown(self, instance: PluginInstance) -> None:
        on_dispose = instance.callback("on_dispose")
        if on_dispose is not None:
            try:
                await self._sandbox.call(instance.plugin_id, on_dispose)
            except SandboxRuntimeError as e:
                logger.error(f"Plugin {instance.plugin_id} failed to dispose: {e}")
        await self._release(instance.plugin_id, instance.api)

    async def _release(self, plugin_id: str, api: PluginApi) -> None:
        api.close()
        await self._telemetry.unsubscribe(plugin_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_active(self, plugin_id: str) -> bool:
        return plugin_id in self._instances

    def get_instance(self, plugin_id: str) -> PluginInstance | None:
        return self._instances.get(plugin_id)

    def active_plugin_ids(self) -> list[str]:
        return sorted(self._instances)

    def get_stats(self) -> dict[str, Any]:
        return {
            "active": len(self._instances),
            "activations": self._activation_count,
            "failures": self._failure_count,
            "sandbox": self._sandbox.get_execution_stats(),
        }

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, plugin_id: str) -> bool:
        return plugin_id in self._instances

    def __repr__(self) -> str:
        return f"<SandboxEngine active={self.active_plugin_ids()}>"
