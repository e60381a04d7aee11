"""Key-value state store contract and an in-process implementation."""

from __future__ import annotations

import copy
from typing import Any, Protocol


class StateStore(Protocol):
    """Opaque key-value image of fleet state.

    Writes are best-effort: implementations log failures instead of raising,
    because the in-memory state stays authoritative for a live run.
    """

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        ...

    def set_session(self, session_id: str, snapshot: dict[str, Any]) -> None:
        ...

    def remove_session(self, session_id: str) -> None:
        ...

    def list_sessions(self) -> dict[str, dict[str, Any]]:
        ...

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        ...

    def set_task(self, task_id: str, state: dict[str, Any]) -> None:
        ...

    def remove_task(self, task_id: str) -> None:
        ...

    def list_tasks(self) -> dict[str, dict[str, Any]]:
        ...

    def get_config(self) -> dict[str, Any]:
        ...

    def set_config(self, partial: dict[str, Any]) -> dict[str, Any]:
        ...

    def get_loop_state(self) -> dict[str, Any] | None:
        ...

    def set_loop_state(self, state: dict[str, Any]) -> None:
        ...

    def append_cycle_metrics(self, record: dict[str, Any]) -> None:
        ...

    def list_cycle_metrics(self, session_id: str | None = None) -> list[dict[str, Any]]:
        ...


class MemoryStateStore:
    """Process-local store used when persistence is disabled and in tests."""

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.config: dict[str, Any] = {}
        self.loop_state: dict[str, Any] | None = None
        self.cycles: list[dict[str, Any]] = []

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        snapshot = self.sessions.get(session_id)
        return copy.deepcopy(snapshot) if snapshot is not None else None

    def set_session(self, session_id: str, snapshot: dict[str, Any]) -> None:
        self.sessions[session_id] = copy.deepcopy(snapshot)

    def remove_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)

    def list_sessions(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self.sessions)

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        state = self.tasks.get(task_id)
        return copy.deepcopy(state) if state is not None else None

    def set_task(self, task_id: str, state: dict[str, Any]) -> None:
        self.tasks[task_id] = copy.deepcopy(state)

    def remove_task(self, task_id: str) -> None:
        self.tasks.pop(task_id, None)

    def list_tasks(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self.tasks)

    def get_config(self) -> dict[str, Any]:
        return dict(self.config)

    def set_config(self, partial: dict[str, Any]) -> dict[str, Any]:
        self.config.update(partial)
        return dict(self.config)

    def get_loop_state(self) -> dict[str, Any] | None:
        return dict(self.loop_state) if self.loop_state is not None else None

    def set_loop_state(self, state: dict[str, Any]) -> None:
        self.loop_state = dict(state)

    def append_cycle_metrics(self, record: dict[str, Any]) -> None:
        self.cycles.append(copy.deepcopy(record))

    def list_cycle_metrics(self, session_id: str | None = None) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(record)
            for record in self.cycles
            if session_id is None or record.get("session_id") == session_id
        ]


__all__ = ["MemoryStateStore", "StateStore"]
