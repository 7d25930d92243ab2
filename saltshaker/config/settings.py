"""Saltshaker configuration via environment / .env file."""

from __future__ import annotations

import logging
from pathlib import Path

from platformdirs import user_data_dir
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_plugins_dir() -> Path:
    return Path(user_data_dir("saltshaker", appauthor=False)) / "plugins"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SALTSHAKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Plugin storage ---
    PLUGINS_DIR: Path = default_plugins_dir()

    # --- Telemetry relay ---
    RELAY_HOST: str = "127.0.0.1"
    RELAY_PORT: int = 51442
    RECONNECT_DELAY_SECONDS: float = 1.0
    CONNECT_TIMEOUT_SECONDS: float = 5.0

    # --- File bridge ---
    FILE_READ_MAX_BYTES: int = 64 * 1024

    # --- Sandbox ---
    PLUGIN_EXECUTION_TIMEOUT: float = 30.0
    DISPOSE_ON_REPLACE: bool = True

    # --- Observability ---
    LOG_LEVEL: str = "INFO"

    @field_validator(
        "RECONNECT_DELAY_SECONDS",
        "CONNECT_TIMEOUT_SECONDS",
        "PLUGIN_EXECUTION_TIMEOUT",
    )
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be > 0, got {v}")
        return v

    @field_validator("FILE_READ_MAX_BYTES", "RELAY_PORT")
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"must be > 0, got {v}")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalise_level(cls, v: str) -> str:
        level = str(v).upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {v!r}")
        return level


settings = Settings()
