"""Respawn preset models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..respawn.config import RespawnConfig


class RespawnPreset(BaseModel):
    """A named respawn configuration for quick setup."""

    id: str = Field(..., description="Unique identifier for the preset.")
    name: str = Field(..., description="Display name.")
    description: str | None = Field(default=None, description="When to use this preset.")
    config: RespawnConfig = Field(
        default_factory=RespawnConfig,
        description="Respawn policy applied when the preset is selected.",
    )
    duration_minutes: float | None = Field(
        default=None,
        gt=0,
        description="Suggested minimum loop duration for runs using this preset.",
    )
    built_in: bool = Field(default=False, description="Whether the preset ships with ralph-fleet.")

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Preset id must not be empty")
        return normalized

    @field_validator("config", mode="before")
    @classmethod
    def _default_config(cls, value: Any):
        return {} if value is None else value


BUILTIN_PRESETS: tuple[RespawnPreset, ...] = (
    RespawnPreset(
        id="solo-work",
        name="Solo work",
        description="Single agent on one task; quick recovery after it finishes.",
        config=RespawnConfig(idle_timeout_ms=3_000, completion_confirm_ms=5_000, no_output_timeout_ms=20_000),
        built_in=True,
    ),
    RespawnPreset(
        id="team-lead",
        name="Team lead",
        description="Agent delegating to teammates; waits longer before declaring idle.",
        config=RespawnConfig(
            idle_timeout_ms=10_000,
            completion_confirm_ms=15_000,
            no_output_timeout_ms=60_000,
            ai_idle_check_enabled=True,
        ),
        built_in=True,
    ),
    RespawnPreset(
        id="overnight-autonomous",
        name="Overnight autonomous",
        description="Long unattended runs with adaptive timing, AI checks and low-context clear skipping.",
        config=RespawnConfig(
            idle_timeout_ms=10_000,
            completion_confirm_ms=10_000,
            no_output_timeout_ms=45_000,
            kickstart_prompt="Continue with the next most important item in the backlog.",
            ai_idle_check_enabled=True,
            ai_plan_check_enabled=True,
            adaptive_timing_enabled=True,
            skip_clear_when_low_context=True,
        ),
        duration_minutes=480,
        built_in=True,
    ),
)


__all__ = ["BUILTIN_PRESETS", "RespawnPreset"]
