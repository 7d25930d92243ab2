"""Saltshaker: a sandboxed plugin host for Slippi telemetry."""

__version__ = "0.1.0"
