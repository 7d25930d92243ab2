"""Per-plugin telemetry subscriptions."""

from __future__ import annotations

import logging
from collections.abc import Iterable

logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """Tracks which telemetry event names each plugin asked for.

    A plugin id whose set becomes empty is logically unsubscribed and is
    removed from the mapping instead of being kept with an empty set.
    """

    def __init__(self) -> None:
        self._events_by_plugin: dict[str, set[str]] = {}

    def subscribe(self, plugin_id: str, events: Iterable[str]) -> None:
        names = set(events)
        if not names:
            return
        self._events_by_plugin.setdefault(plugin_id, set()).update(names)
        logger.debug("Plugin %s subscribed to %s", plugin_id, sorted(names))

    def unsubscribe(self, plugin_id: str, events: Iterable[str] | None = None) -> None:
        """Remove some or all event names for a plugin.

        Args:
            plugin_id: The plugin whose subscription changes.
            events: Names to drop; ``None`` drops everything.
        """
        current = self._events_by_plugin.get(plugin_id)
        if current is None:
            return

        if events is None:
            current.clear()
        else:
            current.difference_update(events)

        if not current:
            del self._events_by_plugin[plugin_id]
            logger.debug("Plugin %s has no telemetry subscriptions left", plugin_id)

    def is_anyone_interested(self, event_name: str) -> bool:
        return any(event_name in names for names in self._events_by_plugin.values())

    def is_subscribed(self, plugin_id: str, event_name: str) -> bool:
        return event_name in self._events_by_plugin.get(plugin_id, ())

    def has_subscribers(self) -> bool:
        """True iff at least one plugin holds a non-empty subscription."""
        return any(self._events_by_plugin.values())

    def events_for(self, plugin_id: str) -> frozenset[str]:
        return frozenset(self._events_by_plugin.get(plugin_id, ()))

    def plugin_ids(self) -> list[str]:
        return sorted(self._events_by_plugin)

    def __len__(self) -> int:
        return len(self._events_by_plugin)

    def __repr__(self) -> str:
        return f"<SubscriptionRegistry plugins={len(self._events_by_plugin)}>"
