"""Event bus and event names shared by the telemetry core and plugins."""

from saltshaker.events.bus import (
    HOST_PREFIX,
    RESERVED_PREFIXES,
    TELEMETRY_PREFIX,
    UI_CHANNELS,
    EventBus,
    HostEvent,
    Subscription,
    TelemetryEvent,
    describe_error,
    is_host_interrupt,
    is_reserved_topic,
)

__all__ = [
    "HOST_PREFIX",
    "RESERVED_PREFIXES",
    "TELEMETRY_PREFIX",
    "UI_CHANNELS",
    "EventBus",
    "HostEvent",
    "Subscription",
    "TelemetryEvent",
    "describe_error",
    "is_host_interrupt",
    "is_reserved_topic",
]
