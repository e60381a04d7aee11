"""Configuration management for the fleet runtime."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_paths(value, *, default: tuple[Path, ...], name: str) -> tuple[Path, ...]:
    if value is None or value == "":
        return default
    if isinstance(value, (list, tuple)):
        return tuple(Path(str(item)) for item in value)
    if isinstance(value, str):
        parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
        return tuple(Path(part) for part in parts) or default
    raise TypeError(f"{name} must be a list of paths or a path-separated string")


class FleetSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    agent_path: str | None = Field(default=None, validation_alias="RALPH_FLEET_AGENT_PATH")
    agent_args: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="RALPH_FLEET_AGENT_ARGS"
    )
    max_concurrent_sessions: int = Field(default=5, validation_alias="RALPH_FLEET_MAX_SESSIONS")
    poll_interval_ms: int = Field(default=1000, validation_alias="RALPH_FLEET_POLL_INTERVAL_MS")
    stop_grace_ms: int = Field(default=5000, validation_alias="RALPH_FLEET_STOP_GRACE_MS")
    max_buffer_chars: int = Field(default=1_000_000, validation_alias="RALPH_FLEET_MAX_BUFFER_CHARS")
    nice_value: int | None = Field(default=None, validation_alias="RALPH_FLEET_NICE")
    state_path: Path = Field(
        default=Path("~/.ralph-fleet/state"), validation_alias="RALPH_FLEET_STATE_PATH"
    )
    preset_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("presets"),), validation_alias="RALPH_FLEET_PRESET_PATHS"
    )
    default_preset: str | None = Field(default=None, validation_alias="RALPH_FLEET_PRESET")
    workdirs: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(), validation_alias="RALPH_FLEET_WORKDIRS"
    )
    min_duration_minutes: float | None = Field(
        default=None, validation_alias="RALPH_FLEET_MIN_DURATION_MINUTES"
    )
    verifier_path: str | None = Field(default=None, validation_alias="RALPH_FLEET_VERIFIER_PATH")
    log_level: str = Field(default="INFO", validation_alias="RALPH_FLEET_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "RALPH_FLEET_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("agent_args", mode="before")
    @classmethod
    def _parse_agent_args(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, str):
            return tuple(value.split())
        return tuple(str(item) for item in value)

    @field_validator("preset_paths", mode="before")
    @classmethod
    def _parse_preset_paths(cls, value):
        return _split_paths(value, default=(Path("presets"),), name="RALPH_FLEET_PRESET_PATHS")

    @field_validator("workdirs", mode="before")
    @classmethod
    def _parse_workdirs(cls, value):
        return _split_paths(value, default=(), name="RALPH_FLEET_WORKDIRS")

    @field_validator("max_concurrent_sessions", "poll_interval_ms")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("RALPH_FLEET_MAX_SESSIONS and RALPH_FLEET_POLL_INTERVAL_MS must be >= 1")
        return value

    @field_validator("nice_value")
    @classmethod
    def _clamp_nice(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return max(-20, min(19, value))


@lru_cache(maxsize=1)
def get_settings() -> FleetSettings:
    """Return cached settings instance."""

    settings = FleetSettings()
    settings.state_path = settings.state_path.expanduser().resolve()
    settings.preset_paths = tuple(path.expanduser().resolve() for path in settings.preset_paths)
    settings.workdirs = tuple(path.expanduser().resolve() for path in settings.workdirs)
    return settings


__all__ = ["FleetSettings", "get_settings"]
