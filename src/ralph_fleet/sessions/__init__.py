"""Session registry exports."""

from .registry import SessionRegistry, WorkerFactory

__all__ = ["SessionRegistry", "WorkerFactory"]
