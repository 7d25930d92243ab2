"""Host operations that let plugins follow the live telemetry feed."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from saltshaker.bridges.errors import UnknownPluginError
from saltshaker.telemetry.manager import TelemetryConnectionManager
from saltshaker.telemetry.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


class TelemetryBridge:
    """Subscribe / unsubscribe plugins to telemetry events.

    Telemetry is an ambient capability: no permission is required. The
    connection is desired exactly while some plugin holds a non-empty
    subscription; the bridge reapplies that rule after every change.
    """

    def __init__(
        self,
        manager: TelemetryConnectionManager,
        subscriptions: SubscriptionRegistry,
    ) -> None:
        self._manager = manager
        self._subscriptions = subscriptions

    @property
    def subscriptions(self) -> SubscriptionRegistry:
        return self._subscriptions

    async def subscribe(self, plugin_id: str, events: Iterable[str]) -> str:
        """Record interest in telemetry events and start the connection.

        Args:
            plugin_id: The calling plugin.
            events: Event names such as ``"GameStart"``.

        Returns:
            ``"ok"``.

        Raises:
            UnknownPluginError: If the plugin id is empty.
        """
        _require_plugin_id(plugin_id)
        names = [str(e) for e in events]
        self._subscriptions.subscribe(plugin_id, names)
        self._manager.ensure_wired()

        if self._subscriptions.has_subscribers():
            await self._manager.request_connect()

        logger.info("Plugin %s subscribed to telemetry %s", plugin_id, sorted(set(names)))
        return "ok"

    async def unsubscribe(self, plugin_id: str, events: Iterable[str] | None = None) -> str:
        """Drop some or all of a plugin's telemetry events.

        When nobody is subscribed any more the connection is no longer
        desired and is closed; the pending reconnect timer is cancelled
        before this coroutine first yields.
        """
        _require_plugin_id(plugin_id)
        self._subscriptions.unsubscribe(plugin_id, None if events is None else [str(e) for e in events])

        if not self._subscriptions.has_subscribers() and self._manager.desired:
            await self._manager.request_disconnect()

        return "ok"

    def wants(self, plugin_id: str, event_name: str) -> bool:
        """Whether a telemetry event should reach this plugin's handlers."""
        return self._subscriptions.is_subscribed(plugin_id, event_name)

    def __repr__(self) -> str:
        return f"<TelemetryBridge subscriptions={self._subscriptions!r} manager={self._manager!r}>"


def _require_plugin_id(plugin_id: str) -> None:
    if not plugin_id:
        raise UnknownPluginError("Plugin id is required")
