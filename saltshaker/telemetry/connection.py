"""
Connection to the telemetry source.

The connection manager talks to any object satisfying TelemetryConnection.

The shipped RelayConnection is a relay client, not a Dolphin client. Slippi
Dolphin's own spectator endpoint (UDP 51441) is ENet, and this module does
not speak ENet. RelayConnection instead expects a relay process that holds
the ENet session with Dolphin and forwards its messages unchanged as
newline-delimited JSON over TCP. After connecting, the client sends a
``connect_request`` and then receives ``connect_reply``, ``game_event``,
``start_game`` and ``end_game`` messages. ``game_event`` messages carry the
raw replay bytes base64-encoded in ``payload``.

To read Dolphin directly, pass a TelemetryConnection that speaks ENet to
PluginHost in place of RelayConnection.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from saltshaker.telemetry.errors import TransportError

logger = logging.getLogger(__name__)


# Not 51441: that is Dolphin's own ENet port
DEFAULT_PORT = 51442

# Game events can be large; the default 64 KiB line limit is too small
_READ_LIMIT = 4 * 1024 * 1024


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class MessageType(str, Enum):
    CONNECT_REPLY = "connect_reply"
    GAME_EVENT = "game_event"
    START_GAME = "start_game"
    END_GAME = "end_game"


StatusListener = Callable[[ConnectionStatus], None]
MessageListener = Callable[[dict[str, Any]], None]
ErrorListener = Callable[[Exception], None]


@runtime_checkable
class TelemetryConnection(Protocol):
    """What the connection manager needs from a telemetry transport."""

    @property
    def status(self) -> ConnectionStatus:
        ...

    async def connect(self, host: str, port: int) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    def on_status_change(self, listener: StatusListener) -> None:
        ...

    def on_message(self, listener: MessageListener) -> None:
        ...

    def on_error(self, listener: ErrorListener) -> None:
        ...


class RelayConnection:
    """JSON-lines TCP client for a relay that forwards Dolphin's messages."""

    def __init__(self, connect_timeout: float = 5.0) -> None:
        self._connect_timeout = connect_timeout
        self._status = ConnectionStatus.DISCONNECTED
        self._status_listeners: list[StatusListener] = []
        self._message_listeners: list[MessageListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self.address: tuple[str, int] | None = None

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def on_status_change(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def on_message(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    async def connect(self, host: str, port: int = DEFAULT_PORT) -> None:
        if self._status != ConnectionStatus.DISCONNECTED:
            return

        self.address = (host, port)
        self._set_status(ConnectionStatus.CONNECTING)

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=_READ_LIMIT),
                timeout=self._connect_timeout,
            )
            await self._send({"type": "connect_request", "cursor": 0})
        except (OSError, asyncio.TimeoutError) as e:
            self._report_error(
                TransportError(f"Could not connect to telemetry relay at {host}:{port}: {str(e) or 'timed out'}")
            )
            await self._close_transport()
            self._set_status(ConnectionStatus.DISCONNECTED)
            return

        self._set_status(ConnectionStatus.CONNECTED)
        self._read_task = asyncio.get_running_loop().create_task(self._read_loop())

    async def disconnect(self) -> None:
        task, self._read_task = self._read_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_transport()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def _send(self, message: dict[str, Any]) -> None:
        if self._writer is None:
            raise TransportError("Not connected")
        self._writer.write(json.dumps(message).encode("utf-8") + b"\n")
        await self._writer.drain()

    async def _read_loop(self) -> None:
        reader = self._reader
        if reader is None:
            return
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError as e:
                    self._report_error(TransportError(f"Malformed message from telemetry relay: {e}"))
                    continue
                if isinstance(message, dict):
                    self._dispatch_message(message)
        except (OSError, asyncio.LimitOverrunError, ValueError) as e:
            self._report_error(TransportError(f"Telemetry relay connection lost: {e}"))
        finally:
            if self._read_task is asyncio.current_task():
                self._read_task = None
            await self._close_transport()
            self._set_status(ConnectionStatus.DISCONNECTED)

    async def _close_transport(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except OSError as e:
            logger.debug("Error closing relay socket: %s", e)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error("Status listener failed: %s", e)

    def _dispatch_message(self, message: dict[str, Any]) -> None:
        for listener in list(self._message_listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error("Message listener failed: %s", e)

    def _report_error(self, error: Exception) -> None:
        logger.debug("Relay transport error: %s", error)
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error("Error listener failed: %s", e)

    def __repr__(self) -> str:
        return f"<RelayConnection status={self._status.value} address={self.address}>"
