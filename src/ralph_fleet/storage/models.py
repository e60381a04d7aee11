"""Snapshot records written to the persistent store."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(slots=True)
class SessionSnapshot:
    id: str
    pid: int | None
    status: str
    working_dir: str
    current_task_id: str | None
    created_at: float
    last_activity_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SessionSnapshot":
        return cls(
            id=payload["id"],
            pid=payload.get("pid"),
            status=payload.get("status", "stopped"),
            working_dir=payload.get("working_dir", ""),
            current_task_id=payload.get("current_task_id"),
            created_at=float(payload.get("created_at", 0.0)),
            last_activity_at=float(payload.get("last_activity_at", 0.0)),
        )


@dataclass(slots=True)
class LoopSnapshot:
    status: str
    started_at: float | None
    min_duration_ms: int | None
    tasks_completed: int
    tasks_generated: int
    last_check_at: float | None
    blocked_sessions: list[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = ["LoopSnapshot", "SessionSnapshot"]
