"""
The restricted handle a plugin receives as ``api``.

Everything a plugin can do to the host goes through this object:

    api.log(*args)
    api.send_event(name, payload)
    unsubscribe = api.on(name, handler)
    await api.host.file.read_text(resource_id)
    await api.host.file.read_json(resource_id)
    await api.host.dolphin.subscribe(events=["GameStart", "GameEnd"])
    await api.host.dolphin.unsubscribe(events=None)

Every host call is bound to the plugin id the handle was created for, so a
plugin cannot act under another plugin's identity. Errors crossing back
into the plugin are always BridgeError instances.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Any, TypeVar

from saltshaker.bridges.errors import BridgeError, PermissionDeniedError
from saltshaker.events.bus import EventBus, Handler, TelemetryEvent, is_reserved_topic

if TYPE_CHECKING:
    from saltshaker.bridges.files import FileBridge
    from saltshaker.bridges.telemetry import TelemetryBridge

logger = logging.getLogger(__name__)

plugin_logger = logging.getLogger("saltshaker.plugin")

T = TypeVar("T")


async def _bridged(plugin_id: str, operation: str, awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except BridgeError:
        raise
    except Exception as e:
        logger.error(f"Host operation {operation} failed for plugin {plugin_id}: {e}")
        raise BridgeError(f"Host operation {operation} failed", plugin_id=plugin_id) from None


class FileApi:
    """``api.host.file``"""

    __slots__ = ("_plugin_id", "_bridge")

    def __init__(self, plugin_id: str, bridge: "FileBridge") -> None:
        self._plugin_id = plugin_id
        self._bridge = bridge

    async def read_text(self, resource_id: str) -> str:
        return await _bridged(
            self._plugin_id, "file.read_text", self._bridge.read_text(self._plugin_id, resource_id)
        )

    async def read_json(self, resource_id: str) -> Any:
        return await _bridged(
            self._plugin_id, "file.read_json", self._bridge.read_json(self._plugin_id, resource_id)
        )


class DolphinApi:
    """``api.host.dolphin``"""

    __slots__ = ("_plugin_id", "_bridge")

    def __init__(self, plugin_id: str, bridge: "TelemetryBridge") -> None:
        self._plugin_id = plugin_id
        self._bridge = bridge

    async def subscribe(self, events: Iterable[str] = ()) -> str:
        names = [events] if isinstance(events, str) else list(events)
        return await _bridged(
            self._plugin_id, "dolphin.subscribe", self._bridge.subscribe(self._plugin_id, names)
        )

    async def unsubscribe(self, events: Iterable[str] | None = None) -> str:
        if isinstance(events, str):
            events = [events]
        return await _bridged(
            self._plugin_id, "dolphin.unsubscribe", self._bridge.unsubscribe(self._plugin_id, events)
        )


class HostApi:
    """``api.host``: capability namespaces."""

    __slots__ = ("file", "dolphin")

    def __init__(self, file: FileApi, dolphin: DolphinApi) -> None:
        self.file = file
        self.dolphin = dolphin


class PluginApi:
    """Per-plugin handle passed into the sandbox.

    Attributes:
        host: Capability namespaces (``file``, ``dolphin``).
    """

    def __init__(
        self,
        plugin_id: str,
        bus: EventBus,
        files: "FileBridge",
        telemetry: "TelemetryBridge",
    ) -> None:
        self._plugin_id = plugin_id
        self._bus = bus
        self._telemetry = telemetry
        self._unsubscribers: list[Callable[[], None]] = []
        self.host = HostApi(FileApi(plugin_id, files), DolphinApi(plugin_id, telemetry))

    @property
    def plugin_id(self) -> str:
        return self._plugin_id

    def log(self, *args: Any) -> None:
        plugin_logger.info("[plugin:%s] %s", self._plugin_id, " ".join(str(a) for a in args))

    def send_event(self, name: str, payload: Any = None) -> int:
        """Publish a plugin event on the host bus.

        Telemetry (``dolphin:``) and lifecycle (``plugins:``) topics belong to
        the host; plugins cannot publish on them.
        """
        if type(name) is not str or not name:
            raise BridgeError("Event name must be a non-empty string", plugin_id=self._plugin_id)
        if is_reserved_topic(name):
            raise PermissionDeniedError(f"Event name '{name}' is reserved for the host", plugin_id=self._plugin_id)
        return self._bus.publish(name, payload)

    def on(self, name: str, handler: Handler) -> Callable[[], None]:
        """Listen for a bus topic.

        Telemetry topics (``dolphin:<Event>``) reach the handler only while
        this plugin is subscribed to that event through
        ``host.dolphin.subscribe``.

        Returns:
            A callable removing the listener.
        """
        if type(name) is not str or not name:
            raise BridgeError("Event name must be a non-empty string", plugin_id=self._plugin_id)
        if not callable(handler):
            raise BridgeError("Event handler must be callable", plugin_id=self._plugin_id)

        event = TelemetryEvent.from_topic(name)
        if event is None:
            unsubscribe = self._bus.subscribe(name, handler)
        else:
            plugin_id = self._plugin_id
            telemetry = self._telemetry

            def deliver(payload: Any) -> Any:
                if telemetry.wants(plugin_id, event.value):
                    return handler(payload)
                return None

            unsubscribe = self._bus.subscribe(name, deliver)

        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    def close(self) -> None:
        """Remove every bus listener registered through this handle."""
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()

    def __repr__(self) -> str:
        return f"<PluginApi plugin={self._plugin_id} listeners={len(self._unsubscribers)}>"
