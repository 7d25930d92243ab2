"""Saltshaker configuration via environment / .env file."""

from .settings import Settings, default_plugins_dir, settings

__all__ = [
    "Settings",
    "default_plugins_dir",
    "settings",
]
