"""Task models for the prompt backlog."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..errors import InvalidTaskStateError


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskSpec(BaseModel):
    """Producer-supplied description of a unit of work."""

    prompt: str = Field(..., description="Prompt sent to the agent when the task starts.")
    working_dir: str = Field(default_factory=os.getcwd, description="Directory the task targets.")
    priority: int = Field(default=0, description="Higher values are scheduled first.")
    dependencies: list[str] = Field(
        default_factory=list,
        description="Ids of tasks that must complete before this one can start.",
    )
    completion_phrase: str | None = Field(
        default=None,
        description="Phrase that marks the task complete when the agent prints it.",
    )
    timeout_ms: int | None = Field(default=None, gt=0, description="Optional run time limit.")

    @field_validator("prompt")
    @classmethod
    def _require_prompt(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Task prompt must not be empty")
        return value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, (list, tuple, set)):
            return list(value)
        raise TypeError("Dependencies must be a sequence of task ids")

    @field_validator("completion_phrase")
    @classmethod
    def _blank_phrase_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


@dataclass(slots=True)
class Task:
    """A backlog entry and its execution state."""

    prompt: str
    working_dir: str
    priority: int = 0
    dependencies: list[str] = field(default_factory=list)
    completion_phrase: str | None = None
    timeout_ms: int | None = None
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: float = 0.0
    sequence: int = 0
    status: TaskStatus = TaskStatus.PENDING
    assigned_worker_id: str | None = None
    started_at: float | None = None
    completed_at: float | None = None
    output: str = ""
    error: str | None = None

    @classmethod
    def from_spec(cls, spec: TaskSpec, *, created_at: float, sequence: int) -> "Task":
        return cls(
            prompt=spec.prompt,
            working_dir=spec.working_dir,
            priority=spec.priority,
            dependencies=list(spec.dependencies),
            completion_phrase=spec.completion_phrase,
            timeout_ms=spec.timeout_ms,
            created_at=created_at,
            sequence=sequence,
        )

    @classmethod
    def from_state(cls, state: dict[str, Any]) -> "Task":
        return cls(
            id=state["id"],
            prompt=state["prompt"],
            working_dir=state.get("working_dir", ""),
            priority=int(state.get("priority", 0)),
            dependencies=list(state.get("dependencies") or []),
            completion_phrase=state.get("completion_phrase"),
            timeout_ms=state.get("timeout_ms"),
            created_at=float(state.get("created_at", 0.0)),
            sequence=int(state.get("sequence", 0)),
            status=TaskStatus(state.get("status", TaskStatus.PENDING.value)),
            assigned_worker_id=state.get("assigned_worker_id"),
            started_at=state.get("started_at"),
            completed_at=state.get("completed_at"),
            output=state.get("output", ""),
            error=state.get("error"),
        )

    def to_state(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "working_dir": self.working_dir,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "completion_phrase": self.completion_phrase,
            "timeout_ms": self.timeout_ms,
            "created_at": self.created_at,
            "sequence": self.sequence,
            "status": self.status.value,
            "assigned_worker_id": self.assigned_worker_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "output": self.output,
            "error": self.error,
        }

    def is_pending(self) -> bool:
        return self.status is TaskStatus.PENDING

    def is_running(self) -> bool:
        return self.status is TaskStatus.RUNNING

    def is_completed(self) -> bool:
        return self.status is TaskStatus.COMPLETED

    def is_failed(self) -> bool:
        return self.status is TaskStatus.FAILED

    def is_done(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def assign(self, worker_id: str, now: float) -> None:
        if self.status is not TaskStatus.PENDING:
            raise InvalidTaskStateError(f"Cannot assign task {self.id}: status is {self.status.value}")
        self.status = TaskStatus.RUNNING
        self.assigned_worker_id = worker_id
        self.started_at = now

    def complete(self, now: float) -> None:
        self.status = TaskStatus.COMPLETED
        self.completed_at = now

    def fail(self, now: float, error: str | None = None) -> None:
        self.status = TaskStatus.FAILED
        self.completed_at = now
        if error:
            self.error = error

    def check_completion(self, output: str) -> bool:
        """Return True when ``output`` carries this task's completion marker."""

        if self.completion_phrase:
            phrase = re.escape(self.completion_phrase)
            return re.search(rf"<promise>\s*{phrase}\s*</promise>", output) is not None
        return re.search(r"<promise>[^<]+</promise>", output) is not None

    def is_timed_out(self, now: float) -> bool:
        if not self.timeout_ms or self.started_at is None or not self.is_running():
            return False
        return (now - self.started_at) * 1000 > self.timeout_ms


__all__ = ["Task", "TaskSpec", "TaskStatus"]
