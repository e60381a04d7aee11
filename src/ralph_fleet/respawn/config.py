"""Respawn policy model."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_VERIFIER_MODEL = "claude-opus-4-5-20251101"


class RespawnConfig(BaseModel):
    """Per-session policy controlling idle detection and recovery."""

    model_config = ConfigDict(extra="forbid")

    idle_timeout_ms: int = Field(default=5_000, gt=0)
    completion_confirm_ms: int = Field(default=10_000, gt=0)
    no_output_timeout_ms: int = Field(default=30_000, gt=0)

    update_prompt: str = "update all the docs and CLAUDE.md"
    inter_step_delay_ms: int = Field(default=1_000, ge=0)
    send_clear: bool = True
    send_init: bool = True
    clear_command: str = "/clear"
    init_command: str = "/init"
    kickstart_prompt: str | None = None

    auto_accept_prompts: bool = True
    auto_accept_delay_ms: int = Field(default=8_000, gt=0)
    accept_keystroke: str = "\r"

    ai_idle_check_enabled: bool = False
    ai_idle_check_model: str = DEFAULT_VERIFIER_MODEL
    ai_idle_check_max_context: int = Field(default=16_000, gt=0)
    ai_idle_check_timeout_ms: int = Field(default=90_000, gt=0)
    ai_idle_check_cooldown_ms: int = Field(default=180_000, ge=0)

    ai_plan_check_enabled: bool = False
    ai_plan_check_model: str = DEFAULT_VERIFIER_MODEL
    ai_plan_check_max_context: int = Field(default=8_000, gt=0)
    ai_plan_check_timeout_ms: int = Field(default=60_000, gt=0)
    ai_plan_check_cooldown_ms: int = Field(default=30_000, ge=0)

    adaptive_timing_enabled: bool = False
    adaptive_min_confirm_ms: int = Field(default=5_000, gt=0)
    adaptive_max_confirm_ms: int = Field(default=60_000, gt=0)

    skip_clear_when_low_context: bool = False
    skip_clear_threshold_percent: float = Field(default=30.0, ge=0, le=100)
    context_window_tokens: int = Field(default=200_000, gt=0)

    track_cycle_metrics: bool = True

    circuit_breaker_threshold: int = Field(default=3, ge=1)
    circuit_breaker_warn_threshold: int = Field(default=2, ge=1)
    stuck_bound_multiplier: float = Field(default=3.0, gt=0)

    @field_validator("update_prompt")
    @classmethod
    def _require_update_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("update_prompt must not be empty")
        return value

    @field_validator("kickstart_prompt")
    @classmethod
    def _blank_kickstart_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_bounds(self) -> "RespawnConfig":
        if self.adaptive_min_confirm_ms > self.adaptive_max_confirm_ms:
            raise ValueError("adaptive_min_confirm_ms must not exceed adaptive_max_confirm_ms")
        if self.circuit_breaker_warn_threshold > self.circuit_breaker_threshold:
            raise ValueError("circuit_breaker_warn_threshold must not exceed circuit_breaker_threshold")
        return self

    @property
    def stuck_bound_ms(self) -> float:
        return self.stuck_bound_multiplier * self.idle_timeout_ms


__all__ = ["DEFAULT_VERIFIER_MODEL", "RespawnConfig"]
