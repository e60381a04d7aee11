"""Task backlog."""

from .models import Task, TaskSpec, TaskStatus
from .store import TaskStore

__all__ = ["Task", "TaskSpec", "TaskStatus", "TaskStore"]
