"""Composition root: wires the telemetry core, bridges and plugin engine."""

from __future__ import annotations

import logging
from pathlib import Path

from saltshaker.bridges.files import FileBridge
from saltshaker.bridges.telemetry import TelemetryBridge
from saltshaker.config.settings import Settings, settings as default_settings
from saltshaker.events.bus import EventBus
from saltshaker.plugins.engine import SandboxEngine
from saltshaker.plugins.errors import PluginNotInstalledError
from saltshaker.plugins.manager import PluginManager
from saltshaker.plugins.models import PluginContext
from saltshaker.plugins.registry import PluginRegistry
from saltshaker.plugins.sandbox import PluginSandbox, SandboxPolicy
from saltshaker.telemetry.connection import RelayConnection, TelemetryConnection
from saltshaker.telemetry.manager import TelemetryConnectionManager
from saltshaker.telemetry.pipeline import DecoderPipeline
from saltshaker.telemetry.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


class PluginHost:
    """One process-wide set of host services.

    Attributes:
        bus: Event bus shared by telemetry, plugins and UI.
        subscriptions: Telemetry subscriptions per plugin.
        connection_manager: Owner of the telemetry connection.
        plugins: Install / run / uninstall facade.
    """

    def __init__(
        self,
        plugins_dir: str | Path,
        connection: TelemetryConnection | None = None,
        relay_host: str = "127.0.0.1",
        relay_port: int = 51442,
        reconnect_delay: float = 1.0,
        file_read_max_bytes: int = 64 * 1024,
        home_dir: str | Path | None = None,
        policy: SandboxPolicy | None = None,
        dispose_on_replace: bool = True,
    ) -> None:
        self.bus = EventBus()
        self.subscriptions = SubscriptionRegistry()
        self.connection = connection if connection is not None else RelayConnection()
        self.pipeline = DecoderPipeline(self.bus, self.subscriptions)
        self.connection_manager = TelemetryConnectionManager(
            self.connection,
            self.pipeline,
            self.subscriptions,
            self.bus,
            host=relay_host,
            port=relay_port,
            reconnect_delay=reconnect_delay,
        )

        self.registry = PluginRegistry(plugins_dir)
        self.telemetry_bridge = TelemetryBridge(self.connection_manager, self.subscriptions)
        self.file_bridge = FileBridge(
            self._lookup_context,
            home_dir=home_dir,
            max_bytes=file_read_max_bytes,
        )
        self.engine = SandboxEngine(
            self.bus,
            self.file_bridge,
            self.telemetry_bridge,
            sandbox=PluginSandbox(policy),
            dispose_on_replace=dispose_on_replace,
        )
        self.plugins = PluginManager(self.registry, self.engine, self.bus)

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        connection: TelemetryConnection | None = None,
    ) -> "PluginHost":
        """Build a host from the ``SALTSHAKER_*`` settings."""
        config = config or default_settings
        if connection is None:
            connection = RelayConnection(connect_timeout=config.CONNECT_TIMEOUT_SECONDS)
        return cls(
            plugins_dir=config.PLUGINS_DIR,
            connection=connection,
            relay_host=config.RELAY_HOST,
            relay_port=config.RELAY_PORT,
            reconnect_delay=config.RECONNECT_DELAY_SECONDS,
            file_read_max_bytes=config.FILE_READ_MAX_BYTES,
            policy=SandboxPolicy(max_execution_time=config.PLUGIN_EXECUTION_TIMEOUT),
            dispose_on_replace=config.DISPOSE_ON_REPLACE,
        )

    async def _lookup_context(self, plugin_id: str) -> PluginContext | None:
        return await self.plugins.get_installed_plugin_context(plugin_id)

    async def start(self, plugin_ids: list[str] | None = None) -> dict[str, bool]:
        """Activate installed plugins (all of them when no ids are given).

        Returns:
            Activation outcome per plugin id.
        """
        if plugin_ids is None:
            plugin_ids = [m.id for m in self.plugins.list_installed_plugins()]

        results: dict[str, bool] = {}
        for plugin_id in plugin_ids:
            try:
                results[plugin_id] = await self.plugins.run_installed_plugin(plugin_id)
            except PluginNotInstalledError as e:
                logger.error("Cannot start plugin %s: %s", plugin_id, e)
                results[plugin_id] = False
        logger.info("Host started with %d active plugin(s)", sum(results.values()))
        return results

    async def shutdown(self) -> None:
        """Dispose every plugin, then drop the telemetry connection."""
        await self.engine.dispose_all()
        await self.connection_manager.close()
        await self.bus.drain()
        logger.info("Host shut down")

    def __repr__(self) -> str:
        return f"<PluginHost engine={self.engine!r} telemetry={self.connection_manager!r}>"
