"""Tests for saltshaker.telemetry.slp."""

from __future__ import annotations

import struct

import pytest

from conftest import frame_bookend, game_end, game_start, message_sizes
from saltshaker.telemetry.errors import DecodeError
from saltshaker.telemetry.slp import Command, SlpParser, SlpStream, parse_game_start


# ===========================================================================
# SlpStream
# ===========================================================================

class TestSlpStream:
    """Tests for framing the raw command stream."""

    def test_message_sizes_then_game_start(self):
        stream = SlpStream()
        commands = stream.write(message_sizes() + game_start())

        assert [c for c, _ in commands] == [Command.MESSAGE_SIZES, Command.GAME_START]
        assert stream.payload_sizes[Command.GAME_START] == 0x30
        assert commands[1][1][0] == Command.GAME_START

    def test_chunked_input_is_buffered(self):
        stream = SlpStream()
        data = message_sizes() + game_start()

        first = stream.write(data[:5])
        second = stream.write(data[5:40])
        third = stream.write(data[40:])

        codes = [c for c, _ in first + second + third]
        assert codes == [Command.MESSAGE_SIZES, Command.GAME_START]

    def test_unknown_command_before_sizes(self):
        stream = SlpStream()
        with pytest.raises(DecodeError, match="0x36"):
            stream.write(game_start())

    def test_unknown_command_discards_buffer(self):
        stream = SlpStream()
        stream.write(message_sizes())
        with pytest.raises(DecodeError):
            stream.write(bytes([0x99, 0, 0]))
        # Stream recovers once a fresh game begins
        commands = stream.write(message_sizes() + game_end())
        assert [c for c, _ in commands] == [Command.MESSAGE_SIZES, Command.GAME_END]

    def test_frames_yields_commands_ahead_of_a_bad_one(self):
        stream = SlpStream()
        seen = []
        with pytest.raises(DecodeError, match="0x77"):
            for code, _ in stream.frames(message_sizes() + game_start() + bytes([0x77, 0, 0])):
                seen.append(code)

        assert seen == [Command.MESSAGE_SIZES, Command.GAME_START]

    def test_game_end_forgets_sizes(self):
        stream = SlpStream()
        stream.write(message_sizes() + game_start() + game_end())
        assert stream.payload_sizes is None

    def test_split_message_is_joined(self):
        sizes = {
            Command.SPLIT_MESSAGE: 0x204,
            Command.GAME_START: 0x30,
        }
        inner = game_start()

        def chunk(data: bytes, last: bool) -> bytes:
            body = bytearray(0x205)
            body[0] = Command.SPLIT_MESSAGE
            body[1:1 + len(data)] = data
            struct.pack_into(">H", body, 0x201, len(data))
            body[0x203] = Command.GAME_START
            body[0x204] = 1 if last else 0
            return bytes(body)

        stream = SlpStream()
        commands = stream.write(
            message_sizes(sizes) + chunk(inner[:20], False) + chunk(inner[20:], True)
        )

        assert [c for c, _ in commands] == [Command.MESSAGE_SIZES, Command.GAME_START]
        assert commands[1][1] == inner

    def test_reset(self):
        stream = SlpStream()
        stream.write(message_sizes() + game_start()[:10])
        stream.reset()
        assert stream.payload_sizes is None
        with pytest.raises(DecodeError):
            stream.write(game_end())


# ===========================================================================
# SlpParser
# ===========================================================================

class TestSlpParser:
    """Tests for the game-state view built from commands."""

    def test_settings_before_game_start(self):
        assert SlpParser().get_settings() is None

    def test_game_start_settings(self):
        parser = SlpParser()
        parser.handle_command(Command.GAME_START, game_start(stage_id=8, timer_seconds=420))

        settings = parser.get_settings()
        assert settings["stage_id"] == 8
        assert settings["starting_timer_seconds"] == 420
        assert settings["slp_version"] == "3.14.0"
        assert settings["is_teams"] is True

    def test_short_payload_fields_are_none(self):
        settings = parse_game_start(game_start())
        assert settings["is_pal"] is None
        assert settings["players"] == []
        assert settings["match_info"]["match_id"] is None

    def test_settings_snapshot_is_a_copy(self):
        parser = SlpParser()
        parser.handle_command(Command.GAME_START, game_start())
        parser.get_settings()["stage_id"] = 999
        assert parser.get_settings()["stage_id"] == 31

    def test_frame_and_game_end(self):
        parser = SlpParser()
        parser.handle_command(Command.GAME_START, game_start())
        parser.handle_command(Command.FRAME_BOOKEND, frame_bookend(120))
        parser.handle_command(Command.GAME_END, game_end(method=7, lras=2))

        assert parser.latest_frame == 120
        assert parser.game_end == {"game_end_method": 7, "lras_initiator": 2}

    def test_new_game_clears_previous_end(self):
        parser = SlpParser()
        parser.handle_command(Command.GAME_END, game_end())
        parser.handle_command(Command.GAME_START, game_start())
        assert parser.game_end is None
        assert parser.latest_frame is None

    def test_player_parsing(self):
        payload = bytearray(0x2BE)
        payload[0] = Command.GAME_START
        payload[0x65] = 2      # character
        payload[0x66] = 0      # human
        payload[0x67] = 4      # stocks
        payload[0x66 + 0x24] = 3  # port 2 empty
        name = "Fox".encode("shift_jis")
        payload[0x1A5:0x1A5 + len(name)] = name

        players = parse_game_start(bytes(payload))["players"]

        ports = [p["port"] for p in players]
        assert 2 not in ports
        first = players[0]
        assert first["port"] == 1
        assert first["character_id"] == 2
        assert first["start_stocks"] == 4
        assert first["display_name"] == "Fox"
