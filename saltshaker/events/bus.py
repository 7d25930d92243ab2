"""
Process-wide publish/subscribe channel for Saltshaker.

Semantic telemetry events from the decoder pipeline, plugin lifecycle
notifications, and plugin-originated custom events all flow through one
EventBus. Handlers are kept in an ordered list per topic, so for a given
topic they are always invoked in subscription order. There is no ordering
guarantee across different topics.

Handlers may be plain callables or coroutine functions. Plain handlers run
inline; coroutine handlers are scheduled as tasks on the running event loop.
A failing handler is logged and never interrupts delivery to the others.

Example:
    from saltshaker.events import EventBus, TelemetryEvent

    bus = EventBus()
    unsubscribe = bus.subscribe(TelemetryEvent.GAME_START.topic, print)
    bus.publish(TelemetryEvent.GAME_START.topic, {"stage_id": 31})
    unsubscribe()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


TELEMETRY_PREFIX = "dolphin:"
HOST_PREFIX = "plugins:"

# Only the host publishes on these
RESERVED_PREFIXES: tuple[str, ...] = (TELEMETRY_PREFIX, HOST_PREFIX)


class TelemetryEvent(str, Enum):
    """Semantic events produced by the telemetry connection and pipeline."""

    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    ERROR = "Error"
    GAME_START = "GameStart"
    GAME_END = "GameEnd"

    @property
    def topic(self) -> str:
        """Bus topic the event is published under."""
        return f"{TELEMETRY_PREFIX}{self.value}"

    @classmethod
    def from_topic(cls, topic: str) -> "TelemetryEvent | None":
        """Map a bus topic back to its telemetry event, if it is one."""
        if not topic.startswith(TELEMETRY_PREFIX):
            return None
        try:
            return cls(topic[len(TELEMETRY_PREFIX):])
        except ValueError:
            return None


class HostEvent(str, Enum):
    """Host lifecycle notifications meant for the UI layer."""

    PLUGIN_INSTALLED = "plugins:installed"
    PLUGIN_UNINSTALLED = "plugins:uninstalled"


# Topics a UI layer is allowed to listen on
UI_CHANNELS: tuple[str, ...] = (
    *(event.topic for event in TelemetryEvent),
    *(event.value for event in HostEvent),
)


Handler = Callable[[Any], Any]


def is_reserved_topic(topic: str) -> bool:
    return topic.startswith(RESERVED_PREFIXES)


def is_host_interrupt(exc: BaseException) -> bool:
    """True when ``exc`` interrupts the host rather than reporting a failure.

    Ctrl-C, interpreter exit, and cancellation of the task that is currently
    running all have to propagate. Anything else raised by a handler or a
    plugin callback is a failure of that callee.
    """
    if isinstance(exc, (KeyboardInterrupt, SystemExit)):
        return True
    if isinstance(exc, asyncio.CancelledError):
        try:
            task = asyncio.current_task()
        except RuntimeError:
            return False
        return task is not None and task.cancelling() > 0
    return False


def describe_error(exc: BaseException) -> str:
    """``Type: message`` for logs, even when the message itself fails to render."""
    try:
        return f"{type(exc).__name__}: {exc}"
    except Exception:
        return "<unprintable error>"


@dataclass(frozen=True, eq=False)
class Subscription:
    """Handle for one registered handler."""

    topic: str
    handler: Handler


class EventBus:
    """Topic-keyed publish/subscribe with ordered handler lists.

    Attributes:
        _handlers: Ordered subscriptions per topic.
        _tasks: Pending tasks spawned for coroutine handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Subscription]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, topic: str | Enum, handler: Handler) -> Callable[[], None]:
        """Register a handler for a topic.

        Args:
            topic: Topic name, or a TelemetryEvent / HostEvent member.
            handler: Callable invoked with the event payload.

        Returns:
            A callable that removes this registration. Calling it more than
            once is harmless.
        """
        name = _topic_name(topic)
        subscription = Subscription(topic=name, handler=handler)
        self._handlers.setdefault(name, []).append(subscription)

        def unsubscribe() -> None:
            self._remove(subscription)

        return unsubscribe

    def _remove(self, subscription: Subscription) -> None:
        handlers = self._handlers.get(subscription.topic)
        if not handlers:
            return
        if subscription in handlers:
            handlers.remove(subscription)
        if not handlers:
            del self._handlers[subscription.topic]

    def publish(self, topic: str | Enum, payload: Any = None) -> int:
        """Deliver a payload to every handler of a topic.

        Args:
            topic: Topic name or event enum member.
            payload: Event payload passed to each handler.

        Returns:
            Number of handlers the event was delivered to.
        """
        name = _topic_name(topic)
        # Copy so handlers may unsubscribe while being called
        handlers = list(self._handlers.get(name, ()))
        for subscription in handlers:
            self._invoke(subscription, payload)
        return len(handlers)

    def _invoke(self, subscription: Subscription, payload: Any) -> None:
        try:
            result = subscription.handler(payload)
        except BaseException as e:
            if is_host_interrupt(e):
                raise
            logger.error(f"Event handler for '{subscription.topic}' failed: {describe_error(e)}")
            return

        if inspect.isawaitable(result):
            self._schedule(subscription.topic, result)

    def _schedule(self, topic: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Dropped async handler for '{topic}': no running event loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(_guarded(topic, awaitable))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def handler_count(self, topic: str | Enum) -> int:
        """Number of handlers currently registered for a topic."""
        return len(self._handlers.get(_topic_name(topic), ()))

    def topics(self) -> list[str]:
        """Topics with at least one handler."""
        return list(self._handlers)

    async def drain(self) -> None:
        """Wait for every pending coroutine handler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __repr__(self) -> str:
        total = sum(len(h) for h in self._handlers.values())
        return f"<EventBus topics={len(self._handlers)} handlers={total}>"


async def _guarded(topic: str, awaitable: Any) -> None:
    try:
        await awaitable
    except BaseException as e:
        if is_host_interrupt(e):
            raise
        logger.error(f"Async event handler for '{topic}' failed: {describe_error(e)}")


def _topic_name(topic: str | Enum) -> str:
    if isinstance(topic, TelemetryEvent):
        return topic.topic
    if isinstance(topic, Enum):
        return str(topic.value)
    return topic
