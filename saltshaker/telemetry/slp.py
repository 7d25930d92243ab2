"""
Slippi raw stream decoding.

Dolphin relays the replay byte stream while a game is running. The stream
is a sequence of commands: one code byte followed by a fixed-size payload.
The first command of every game, MESSAGE_SIZES (0x35), declares the payload
size of every other command code, so the stream can be framed without
understanding individual payloads.

SlpStream does the framing and SlpParser keeps the small amount of game
state the host cares about (the settings announced by GAME_START, the last
frame seen, how the game ended). Payloads handed out always include the
command byte at offset 0, which is the offset convention of the replay
format.
"""

from __future__ import annotations

import copy
import logging
import struct
import unicodedata
from enum import IntEnum
from typing import Any, Iterator

from saltshaker.telemetry.errors import DecodeError

logger = logging.getLogger(__name__)


class Command(IntEnum):
    SPLIT_MESSAGE = 0x10
    MESSAGE_SIZES = 0x35
    GAME_START = 0x36
    PRE_FRAME_UPDATE = 0x37
    POST_FRAME_UPDATE = 0x38
    GAME_END = 0x39
    FRAME_START = 0x3A
    ITEM_UPDATE = 0x3B
    FRAME_BOOKEND = 0x3C
    GECKO_LIST = 0x3D


# Player slot type meaning "nobody in this port"
EMPTY_PLAYER_TYPE = 3


class SlpStream:
    """Frames a raw Slippi byte stream into (command, payload) pairs.

    Bytes may arrive in arbitrary chunks; incomplete commands are buffered
    until the rest arrives.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._payload_sizes: dict[int, int] | None = None
        self._split_buffer = bytearray()

    @property
    def payload_sizes(self) -> dict[int, int] | None:
        return dict(self._payload_sizes) if self._payload_sizes is not None else None

    def reset(self) -> None:
        self._buffer.clear()
        self._split_buffer.clear()
        self._payload_sizes = None

    def write(self, data: bytes) -> list[tuple[int, bytes]]:
        """Feed bytes and return every command completed by them.

        Raises:
            DecodeError: On a command whose size is unknown. The buffered
                bytes are discarded so the next game can resynchronise.
        """
        return list(self.frames(data))

    def frames(self, data: bytes) -> Iterator[tuple[int, bytes]]:
        """Feed bytes and yield each command as soon as it is framed.

        Commands framed before a DecodeError have already been yielded
        when the error is raised.
        """
        self._buffer.extend(data)

        while self._buffer:
            code = self._buffer[0]

            if code == Command.MESSAGE_SIZES:
                if len(self._buffer) < 2:
                    break
                total = self._buffer[1] + 1
                if len(self._buffer) < total:
                    break
                payload = bytes(self._buffer[:total])
                del self._buffer[:total]
                self._payload_sizes = _parse_message_sizes(payload)
                yield code, payload
                continue

            if self._payload_sizes is None or code not in self._payload_sizes:
                self._buffer.clear()
                raise DecodeError(f"Unknown command 0x{code:02x} in stream")

            total = self._payload_sizes[code] + 1
            if len(self._buffer) < total:
                break
            payload = bytes(self._buffer[:total])
            del self._buffer[:total]

            if code == Command.SPLIT_MESSAGE:
                joined = self._join_split(payload)
                if joined is not None:
                    yield joined
                continue

            if code == Command.GAME_END:
                self._payload_sizes = None

            yield code, payload

    def _join_split(self, payload: bytes) -> tuple[int, bytes] | None:
        # 512 data bytes, u16 used size, u8 inner command, bool last chunk
        if len(payload) < 0x205:
            raise DecodeError("Truncated split message")
        size = struct.unpack_from(">H", payload, 0x201)[0]
        inner = payload[0x203]
        last = bool(payload[0x204])
        self._split_buffer.extend(payload[1:1 + size])
        if not last:
            return None
        joined = bytes(self._split_buffer)
        self._split_buffer.clear()
        return inner, joined


def _parse_message_sizes(payload: bytes) -> dict[int, int]:
    sizes: dict[int, int] = {}
    end = payload[1] + 1
    i = 2
    while i + 3 <= end:
        sizes[payload[i]] = struct.unpack_from(">H", payload, i + 1)[0]
        i += 3
    return sizes


class SlpParser:
    """Stateful view of the game the stream is describing."""

    def __init__(self) -> None:
        self._settings: dict[str, Any] | None = None
        self._latest_frame: int | None = None
        self._game_end: dict[str, Any] | None = None

    def reset(self) -> None:
        self._settings = None
        self._latest_frame = None
        self._game_end = None

    def handle_command(self, command: int, payload: bytes) -> None:
        if command == Command.GAME_START:
            self._settings = parse_game_start(payload)
            self._latest_frame = None
            self._game_end = None
        elif command == Command.FRAME_BOOKEND:
            self._latest_frame = _read(payload, ">i", 0x1)
        elif command == Command.GAME_END:
            self._game_end = {
                "game_end_method": _read(payload, ">B", 0x1),
                "lras_initiator": _read(payload, ">b", 0x2),
            }

    def get_settings(self) -> dict[str, Any] | None:
        """Snapshot of the current game settings, or None before GAME_START."""
        return copy.deepcopy(self._settings)

    @property
    def latest_frame(self) -> int | None:
        return self._latest_frame

    @property
    def game_end(self) -> dict[str, Any] | None:
        return dict(self._game_end) if self._game_end is not None else None


def parse_game_start(payload: bytes) -> dict[str, Any]:
    """Decode the settings carried by a GAME_START payload.

    Fields lying beyond the end of the payload (older replay versions)
    come back as None.
    """
    version = [_read(payload, ">B", offset) for offset in (0x1, 0x2, 0x3)]
    players = [_parse_player(payload, index) for index in range(4)]

    return {
        "slp_version": ".".join(str(v) for v in version) if None not in version else None,
        "is_teams": _read_bool(payload, 0xD),
        "stage_id": _read(payload, ">H", 0x13),
        "starting_timer_seconds": _read(payload, ">I", 0x15),
        "is_pal": _read_bool(payload, 0x1A1),
        "is_frozen_ps": _read_bool(payload, 0x1A2),
        "scene": _read(payload, ">B", 0x1A3),
        "game_mode": _read(payload, ">B", 0x1A4),
        "players": [p for p in players if p["type"] not in (None, EMPTY_PLAYER_TYPE)],
        "match_info": {
            "match_id": _read_string(payload, 0x2BE, 0x51),
            "game_number": _read(payload, ">I", 0x30F),
            "tiebreaker_number": _read(payload, ">I", 0x313),
        },
    }


def _parse_player(payload: bytes, index: int) -> dict[str, Any]:
    offset = index * 0x24
    return {
        "player_index": index,
        "port": index + 1,
        "character_id": _read(payload, ">B", 0x65 + offset),
        "type": _read(payload, ">B", 0x66 + offset),
        "start_stocks": _read(payload, ">B", 0x67 + offset),
        "character_color": _read(payload, ">B", 0x68 + offset),
        "team_id": _read(payload, ">B", 0x6E + offset),
        "display_name": _read_string(payload, 0x1A5 + index * 0x1F, 0x1F),
        "connect_code": _read_string(payload, 0x221 + index * 0xA, 0xA),
    }


def _read(payload: bytes, fmt: str, offset: int) -> Any:
    if offset + struct.calcsize(fmt) > len(payload):
        return None
    return struct.unpack_from(fmt, payload, offset)[0]


def _read_bool(payload: bytes, offset: int) -> bool | None:
    value = _read(payload, ">B", offset)
    return None if value is None else bool(value)


def _read_string(payload: bytes, offset: int, length: int) -> str | None:
    if offset + length > len(payload):
        return None
    raw = payload[offset:offset + length].split(b"\x00", 1)[0]
    # Names and connect codes are Shift-JIS with full-width characters
    text = raw.decode("shift_jis", errors="replace")
    return unicodedata.normalize("NFKC", text)
