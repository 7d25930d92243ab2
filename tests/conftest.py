"""Shared fakes and builders for the Saltshaker test suite."""

from __future__ import annotations

import asyncio
import base64
import io
import struct
import tarfile
from typing import Any

import pytest

from saltshaker.telemetry.connection import ConnectionStatus
from saltshaker.telemetry.errors import TransportError
from saltshaker.telemetry.slp import Command


# ===========================================================================
# Fake telemetry connection
# ===========================================================================


class FakeConnection:
    """In-memory TelemetryConnection that records every call."""

    def __init__(self) -> None:
        self.status = ConnectionStatus.DISCONNECTED
        self.status_listeners: list[Any] = []
        self.message_listeners: list[Any] = []
        self.error_listeners: list[Any] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.fail_connects = False
        self.raise_on_connect: Exception | None = None
        self.raise_on_disconnect: Exception | None = None

    def on_status_change(self, listener: Any) -> None:
        self.status_listeners.append(listener)

    def on_message(self, listener: Any) -> None:
        self.message_listeners.append(listener)

    def on_error(self, listener: Any) -> None:
        self.error_listeners.append(listener)

    async def connect(self, host: str, port: int) -> None:
        self.connect_calls += 1
        if self.raise_on_connect is not None:
            raise self.raise_on_connect
        self.set_status(ConnectionStatus.CONNECTING)
        await asyncio.sleep(0)
        if self.fail_connects:
            self.report_error(TransportError("connection refused"))
            self.set_status(ConnectionStatus.DISCONNECTED)
        else:
            self.set_status(ConnectionStatus.CONNECTED)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.raise_on_disconnect is not None:
            raise self.raise_on_disconnect
        self.set_status(ConnectionStatus.DISCONNECTED)

    # -- test helpers --------------------------------------------------------

    def set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        for listener in list(self.status_listeners):
            listener(status)

    def deliver(self, message: dict[str, Any]) -> None:
        for listener in list(self.message_listeners):
            listener(message)

    def report_error(self, error: Exception) -> None:
        for listener in list(self.error_listeners):
            listener(error)


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


# ===========================================================================
# Slippi stream builders
# ===========================================================================

GAME_START_SIZE = 0x30
GAME_END_SIZE = 2
FRAME_BOOKEND_SIZE = 8


def message_sizes(sizes: dict[int, int] | None = None) -> bytes:
    """A MESSAGE_SIZES command declaring the given payload sizes."""
    if sizes is None:
        sizes = {
            Command.GAME_START: GAME_START_SIZE,
            Command.GAME_END: GAME_END_SIZE,
            Command.FRAME_BOOKEND: FRAME_BOOKEND_SIZE,
        }
    body = b"".join(bytes([code]) + struct.pack(">H", size) for code, size in sizes.items())
    return bytes([Command.MESSAGE_SIZES, len(body) + 1]) + body


def game_start(stage_id: int = 31, timer_seconds: int = 480, size: int = GAME_START_SIZE) -> bytes:
    payload = bytearray(size + 1)
    payload[0] = Command.GAME_START
    payload[1:4] = bytes([3, 14, 0])
    payload[0xD] = 1
    struct.pack_into(">H", payload, 0x13, stage_id)
    struct.pack_into(">I", payload, 0x15, timer_seconds)
    return bytes(payload)


def game_end(method: int = 2, lras: int = -1) -> bytes:
    return bytes([Command.GAME_END, method]) + struct.pack(">b", lras)


def frame_bookend(frame: int) -> bytes:
    return bytes([Command.FRAME_BOOKEND]) + struct.pack(">i", frame) + bytes(FRAME_BOOKEND_SIZE - 4)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


# ===========================================================================
# Plugin archive builder
# ===========================================================================


def make_archive(files: dict[str, str], prefix: str = "package") -> bytes:
    """A .tgz holding ``files`` under a single top-level folder."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{prefix}/{name}" if prefix else name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()
