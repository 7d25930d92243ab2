"""
Connection state machine for the shared telemetry connection.

States:
    DISCONNECTED -> CONNECTING -> CONNECTED, and any state back to
    DISCONNECTED on error or explicit stop. The machine lives as long as
    the host process.

The manager owns the single connection and pursues it only while it is
*desired*, meaning at least one plugin holds a telemetry subscription. While
desired, a ``Disconnected`` status or a transport error schedules one
reconnect after a fixed delay. Schedules coalesce into a single pending
timer and connect attempts are serialized, so there is never more than one
attempt in flight on the shared connection.

Every transition and error is published on the event bus, but only when a
plugin subscribed to that event name.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from saltshaker.events.bus import EventBus, TelemetryEvent
from saltshaker.telemetry.connection import (
    DEFAULT_PORT,
    ConnectionStatus,
    MessageType,
    TelemetryConnection,
)
from saltshaker.telemetry.pipeline import DecoderPipeline
from saltshaker.telemetry.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


DEFAULT_RECONNECT_DELAY = 1.0


class TelemetryConnectionManager:
    """Owns the telemetry connection and its reconnect policy.

    Attributes:
        connect_attempts: Number of connect calls issued on the connection.
        reconnects_scheduled: Number of times a reconnect timer was armed.
    """

    def __init__(
        self,
        connection: TelemetryConnection,
        pipeline: DecoderPipeline,
        subscriptions: SubscriptionRegistry,
        bus: EventBus,
        host: str = "127.0.0.1",
        port: int = DEFAULT_PORT,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
    ) -> None:
        self._connection = connection
        self._pipeline = pipeline
        self._subscriptions = subscriptions
        self._bus = bus
        self._host = host
        self._port = port
        self._reconnect_delay = reconnect_delay

        self._desired = False
        self._wired = False
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

        self.connect_attempts = 0
        self.reconnects_scheduled = 0

    @property
    def state(self) -> ConnectionStatus:
        return self._connection.status

    @property
    def desired(self) -> bool:
        return self._desired

    @property
    def wired(self) -> bool:
        return self._wired

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def reconnect_delay(self) -> float:
        return self._reconnect_delay

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def ensure_wired(self) -> None:
        """Attach connection listeners, once per manager lifetime."""
        if self._wired:
            return
        self._wired = True
        self._connection.on_status_change(self._on_status_change)
        self._connection.on_message(self._on_message)
        self._connection.on_error(self._on_error)
        logger.debug("Telemetry connection listeners attached")

    async def request_connect(self) -> None:
        """Mark the connection desired and connect if currently disconnected.

        Waits for the connect attempt it started (or joined) to finish.
        """
        self._desired = True
        self.ensure_wired()
        task = self._start_connect()
        if task is not None:
            await asyncio.shield(task)

    async def request_disconnect(self) -> None:
        """Stop pursuing the connection and close it, best-effort."""
        self._desired = False
        self._clear_reconnect()
        try:
            await self._connection.disconnect()
        except Exception as e:
            logger.warning("Failed to disconnect from the telemetry source cleanly: %s", e)

    async def close(self) -> None:
        """Disconnect and wait for background work to settle."""
        await self.request_disconnect()
        pending = [t for t in (self._connect_task, *self._background) if t is not None]
        for task in pending:
            if not task.done():
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Connect / reconnect helpers
    # ------------------------------------------------------------------

    def _start_connect(self) -> asyncio.Task[None] | None:
        if self._connect_task is not None and not self._connect_task.done():
            return self._connect_task
        if self.state != ConnectionStatus.DISCONNECTED:
            return None
        self._connect_task = asyncio.get_running_loop().create_task(self._connect())
        return self._connect_task

    async def _connect(self) -> None:
        self.connect_attempts += 1
        logger.info("Connecting to telemetry source at %s:%s", self._host, self._port)
        try:
            await self._connection.connect(self._host, self._port)
        except Exception as e:
            self._on_error(e)

    def _schedule_reconnect(self) -> None:
        self._clear_reconnect()
        if not self._desired:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self._reconnect_delay, self._on_reconnect_timer)
        self.reconnects_scheduled += 1
        logger.debug("Reconnect scheduled in %.2fs", self._reconnect_delay)

    def _clear_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if not self._desired:
            return
        if self._connect_task is not None and not self._connect_task.done():
            # An attempt is still finishing; try again after it settles
            self._schedule_reconnect()
            return
        self._start_connect()

    # ------------------------------------------------------------------
    # Connection listeners
    # ------------------------------------------------------------------

    def _on_status_change(self, status: ConnectionStatus) -> None:
        logger.debug("Telemetry connection status: %s", status.value)

        if status == ConnectionStatus.CONNECTING:
            self._emit_if_requested(TelemetryEvent.CONNECTING, None)

        elif status == ConnectionStatus.CONNECTED:
            self._clear_reconnect()
            self._pipeline.reset()
            self._emit_if_requested(
                TelemetryEvent.CONNECTED, {"host": self._host, "port": self._port}
            )
            if not self._desired:
                # Nobody wants the connection any more
                self._spawn(self.request_disconnect())

        elif status == ConnectionStatus.DISCONNECTED:
            self._emit_if_requested(TelemetryEvent.DISCONNECTED, None)
            self._schedule_reconnect()

    def _on_message(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == MessageType.GAME_EVENT:
            payload = message.get("payload")
            if payload:
                self._pipeline.feed(payload)
        elif kind == MessageType.CONNECT_REPLY:
            logger.debug("Dolphin connect reply: version=%s", message.get("version"))
        else:
            logger.debug("Ignoring Dolphin message of type %r", kind)

    def _on_error(self, error: Exception) -> None:
        logger.warning("Telemetry connection error: %s", error)
        self._emit_if_requested(TelemetryEvent.ERROR, {"message": str(error)})
        self._schedule_reconnect()

    def _emit_if_requested(self, event: TelemetryEvent, payload: Any) -> None:
        if self._subscriptions.is_anyone_interested(event.value):
            self._bus.publish(event.topic, payload)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def __repr__(self) -> str:
        return (
            f"<TelemetryConnectionManager state={self.state.value} "
            f"desired={self._desired} reconnect_pending={self.reconnect_pending}>"
        )
