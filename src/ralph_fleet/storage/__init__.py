"""Storage abstractions for the fleet runtime."""

from .chroma import ChromaEvent, ChromaStateStore, ChromaUnavailableError
from .models import LoopSnapshot, SessionSnapshot
from .store import MemoryStateStore, StateStore

__all__ = [
    "ChromaEvent",
    "ChromaStateStore",
    "ChromaUnavailableError",
    "LoopSnapshot",
    "MemoryStateStore",
    "SessionSnapshot",
    "StateStore",
]
