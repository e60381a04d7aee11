"""Cycle metrics and health records."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class CycleOutcome(str, Enum):
    SUCCESS = "success"
    STUCK_RECOVERY = "stuck_recovery"
    BLOCKED = "blocked"
    ERROR = "error"
    CANCELLED = "cancelled"


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    HALF_OPEN = "HALF_OPEN"
    OPEN = "OPEN"


class HealthStatus(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class CycleMetrics:
    """Immutable record of one respawn cycle. Times are epoch milliseconds."""

    session_id: str
    cycle_number: int
    started_at: float
    completed_at: float
    duration_ms: float
    idle_reason: str
    idle_detection_ms: float
    steps_completed: tuple[str, ...]
    clear_skipped: bool
    outcome: CycleOutcome
    completion_confirm_ms_used: float
    error_message: str | None = None
    token_count_at_start: int | None = None
    token_count_at_end: int | None = None

    @property
    def cycle_id(self) -> str:
        return f"{self.session_id}:{self.cycle_number}"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["cycle_id"] = self.cycle_id
        payload["steps_completed"] = list(self.steps_completed)
        payload["outcome"] = self.outcome.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CycleMetrics":
        return cls(
            session_id=payload["session_id"],
            cycle_number=int(payload["cycle_number"]),
            started_at=float(payload.get("started_at", 0.0)),
            completed_at=float(payload.get("completed_at", 0.0)),
            duration_ms=float(payload.get("duration_ms", 0.0)),
            idle_reason=payload.get("idle_reason", ""),
            idle_detection_ms=float(payload.get("idle_detection_ms", 0.0)),
            steps_completed=tuple(payload.get("steps_completed") or ()),
            clear_skipped=bool(payload.get("clear_skipped", False)),
            outcome=CycleOutcome(payload.get("outcome", CycleOutcome.SUCCESS.value)),
            completion_confirm_ms_used=float(payload.get("completion_confirm_ms_used", 0.0)),
            error_message=payload.get("error_message"),
            token_count_at_start=payload.get("token_count_at_start"),
            token_count_at_end=payload.get("token_count_at_end"),
        )


@dataclass(slots=True)
class AggregateMetrics:
    total_cycles: int = 0
    successful_cycles: int = 0
    stuck_recovery_cycles: int = 0
    blocked_cycles: int = 0
    error_cycles: int = 0
    cancelled_cycles: int = 0
    avg_cycle_duration_ms: float = 0.0
    p90_cycle_duration_ms: float = 0.0
    avg_idle_detection_ms: float = 0.0
    success_rate: float = 100.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class HealthScore:
    score: int
    status: HealthStatus
    components: dict[str, float]
    summary: str
    recommendations: list[str] = field(default_factory=list)
    calculated_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


__all__ = [
    "AggregateMetrics",
    "BreakerState",
    "CycleMetrics",
    "CycleOutcome",
    "HealthScore",
    "HealthStatus",
]
