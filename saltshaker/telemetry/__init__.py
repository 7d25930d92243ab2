"""
Telemetry core: the shared telemetry connection and its event stream.

Components:
    - SubscriptionRegistry: which plugin wants which telemetry event
    - RelayConnection: JSON-lines TCP client for a Dolphin relay
    - SlpStream / SlpParser: framing and parsing of the raw replay stream
    - DecoderPipeline: turns game payloads into GameStart / GameEnd events
    - TelemetryConnectionManager: connect, reconnect and disconnect policy
"""

from saltshaker.telemetry.connection import (
    DEFAULT_PORT,
    ConnectionStatus,
    RelayConnection,
    MessageType,
    TelemetryConnection,
)
from saltshaker.telemetry.errors import DecodeError, TelemetryError, TransportError
from saltshaker.telemetry.manager import TelemetryConnectionManager
from saltshaker.telemetry.pipeline import DecoderPipeline
from saltshaker.telemetry.slp import Command, SlpParser, SlpStream, parse_game_start
from saltshaker.telemetry.subscriptions import SubscriptionRegistry

__all__ = [
    "DEFAULT_PORT",
    "Command",
    "ConnectionStatus",
    "DecodeError",
    "DecoderPipeline",
    "RelayConnection",
    "MessageType",
    "SlpParser",
    "SlpStream",
    "SubscriptionRegistry",
    "TelemetryConnection",
    "TelemetryConnectionManager",
    "TelemetryError",
    "TransportError",
    "parse_game_start",
]
