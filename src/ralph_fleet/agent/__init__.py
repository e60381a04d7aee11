"""Agent process supervision."""

from .events import EventChannel, WorkerEvent, WorkerEventKind
from .worker import Worker, WorkerStatus, resolve_executable

__all__ = [
    "EventChannel",
    "Worker",
    "WorkerEvent",
    "WorkerEventKind",
    "WorkerStatus",
    "resolve_executable",
]
