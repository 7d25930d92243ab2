"""Turns framed Dolphin game events into semantic bus events."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

from saltshaker.events.bus import EventBus, TelemetryEvent
from saltshaker.telemetry.errors import DecodeError
from saltshaker.telemetry.slp import Command, SlpParser, SlpStream
from saltshaker.telemetry.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


class DecoderPipeline:
    """Decode base64 game-event payloads and publish match events.

    Only two commands produce events: GAME_START publishes ``GameStart``
    with the parser's settings snapshot, GAME_END publishes ``GameEnd``
    without payload. Every other command only updates parser state.
    A payload that fails to decode becomes an ``Error`` event and
    processing continues with the next payload.
    """

    def __init__(
        self,
        bus: EventBus,
        subscriptions: SubscriptionRegistry,
        stream: SlpStream | None = None,
        parser: SlpParser | None = None,
    ) -> None:
        self._bus = bus
        self._subscriptions = subscriptions
        self._stream = stream or SlpStream()
        self._parser = parser or SlpParser()
        self.payloads_processed = 0
        self.decode_errors = 0

    @property
    def parser(self) -> SlpParser:
        return self._parser

    def reset(self) -> None:
        """Drop decoder state; called when a new connection is established."""
        self._stream.reset()
        self._parser.reset()

    def feed(self, payload_b64: str | bytes) -> None:
        self.payloads_processed += 1
        try:
            data = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            self._fail(e)
            return

        # Commands framed ahead of a bad one in the same payload still count
        try:
            for command, payload in self._stream.frames(data):
                try:
                    self.handle_command(command, payload)
                except Exception as e:
                    self._fail(e)
        except DecodeError as e:
            self._fail(e)

    def handle_command(self, command: int, payload: bytes) -> None:
        self._parser.handle_command(command, payload)

        if command == Command.GAME_START:
            self.emit_if_requested(TelemetryEvent.GAME_START, self._parser.get_settings())
        elif command == Command.GAME_END:
            self.emit_if_requested(TelemetryEvent.GAME_END, None)

    def emit_if_requested(self, event: TelemetryEvent, payload: Any) -> bool:
        """Publish only when some plugin subscribed to the event."""
        if not self._subscriptions.is_anyone_interested(event.value):
            return False
        self._bus.publish(event.topic, payload)
        return True

    def _fail(self, error: Exception) -> None:
        self.decode_errors += 1
        logger.warning("Failed to decode game event: %s", error)
        self.emit_if_requested(TelemetryEvent.ERROR, {"message": str(error)})
