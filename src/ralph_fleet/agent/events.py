"""Outbound event channel owned by each worker."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class WorkerEventKind(str, Enum):
    OUTPUT = "output"
    ERROR = "error"
    EXIT = "exit"
    COMPLETION = "completion"
    STATUS = "status"


@dataclass(frozen=True, slots=True)
class WorkerEvent:
    """A single message published by a worker."""

    kind: WorkerEventKind
    worker_id: str
    data: str | int | None = None
    at: float = field(default_factory=time.time)


Subscriber = Callable[[WorkerEvent], None]


class EventChannel:
    """Synchronous fan-out of worker events to independent subscribers.

    Delivery order between subscribers is not part of the contract. A failing
    subscriber is logged and does not prevent delivery to the others.
    """

    def __init__(self, worker_id: str) -> None:
        self._worker_id = worker_id
        self._subscribers: dict[int, Subscriber] = {}
        self._next_token = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber`` and return a callable that removes it."""

        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = subscriber

        def _unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return _unsubscribe

    def publish(self, kind: WorkerEventKind, data: str | int | None = None) -> WorkerEvent:
        event = WorkerEvent(kind=kind, worker_id=self._worker_id, data=data)
        for subscriber in list(self._subscribers.values()):
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "Worker event subscriber failed",
                    extra={"worker_id": self._worker_id, "event_kind": kind.value},
                )
        return event


__all__ = ["EventChannel", "Subscriber", "WorkerEvent", "WorkerEventKind"]
