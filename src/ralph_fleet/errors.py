"""Error taxonomy shared by the fleet engine and its callers."""

from __future__ import annotations

from typing import Any


class FleetError(RuntimeError):
    """Base class for errors surfaced to fleet callers."""

    code = "internal_error"


class CapacityError(FleetError):
    """Raised when the concurrent session cap has been reached."""

    code = "capacity_exceeded"


class ProcessSpawnError(FleetError):
    """Raised when the agent binary cannot be started."""

    code = "spawn_failed"


class VerifierUnavailable(FleetError):
    """Raised by verifiers on timeout or transport failure."""

    code = "verifier_unavailable"


class StuckStateError(FleetError):
    """Raised when an action is refused because the circuit breaker is open."""

    code = "stuck_state"


class DependencyUnsatisfiableError(FleetError):
    """Raised when a task can never become schedulable as the backlog stands."""

    code = "dependency_unsatisfiable"

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Task '{task_id}' is unschedulable: {reason}")
        self.task_id = task_id
        self.reason = reason


class SessionNotFoundError(FleetError):
    code = "session_not_found"


class WorkerNotRunningError(FleetError):
    code = "session_not_running"


class TaskNotFoundError(FleetError):
    code = "task_not_found"


class InvalidTaskStateError(FleetError):
    code = "invalid_task_state"


def error_payload(exc: BaseException) -> dict[str, Any]:
    """Translate an exception into a stable ``{"code", "detail"}`` payload."""

    if isinstance(exc, FleetError):
        return {"code": exc.code, "detail": str(exc)}
    detail = str(exc) or exc.__class__.__name__
    return {"code": FleetError.code, "detail": detail}


__all__ = [
    "CapacityError",
    "DependencyUnsatisfiableError",
    "FleetError",
    "InvalidTaskStateError",
    "ProcessSpawnError",
    "SessionNotFoundError",
    "StuckStateError",
    "TaskNotFoundError",
    "VerifierUnavailable",
    "WorkerNotRunningError",
    "error_payload",
]
