"""Timer scheduling for respawn controllers.

Controllers never touch the event loop's clock directly. Production code uses
:class:`AsyncioScheduler`; tests drive a :class:`ManualScheduler` whose logical
clock only moves when :meth:`ManualScheduler.advance` is called.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Callable, Protocol

Callback = Callable[[], None]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def now(self) -> float:
        """Current time in milliseconds."""
        ...

    def call_later(self, delay_ms: float, callback: Callback) -> TimerHandle:
        ...


class AsyncioScheduler:
    """Scheduler backed by the running event loop's monotonic clock."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _event_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self._event_loop().time() * 1000.0

    def call_later(self, delay_ms: float, callback: Callback) -> TimerHandle:
        return self._event_loop().call_later(max(0.0, delay_ms) / 1000.0, callback)


class _ManualTimer:
    __slots__ = ("due", "seq", "callback", "cancelled")

    def __init__(self, due: float, seq: int, callback: Callback) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: "_ManualTimer") -> bool:
        return (self.due, self.seq) < (other.due, other.seq)


class ManualScheduler:
    """Deterministic logical clock; timers fire only inside :meth:`advance`."""

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = float(start_ms)
        self._heap: list[_ManualTimer] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callback) -> TimerHandle:
        timer = _ManualTimer(self._now + max(0.0, delay_ms), next(self._seq), callback)
        heapq.heappush(self._heap, timer)
        return timer

    def advance(self, delta_ms: float) -> None:
        """Move the clock forward, firing due timers in order."""

        target = self._now + delta_ms
        while self._heap and self._heap[0].due <= target:
            timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            self._now = timer.due
            timer.callback()
        self._now = target

    def advance_to(self, moment_ms: float) -> None:
        self.advance(max(0.0, moment_ms - self._now))

    @property
    def pending(self) -> int:
        return sum(1 for timer in self._heap if not timer.cancelled)


class TimerSlot:
    """Holds at most one pending timer; arming always cancels the previous one."""

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._handle: TimerHandle | None = None
        self.due_at: float | None = None
        self.label: str | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, delay_ms: float, callback: Callback, *, label: str | None = None) -> None:
        self.cancel()
        self.due_at = self._scheduler.now() + max(0.0, delay_ms)
        self.label = label

        def _fire() -> None:
            self._handle = None
            self.due_at = None
            callback()

        self._handle = self._scheduler.call_later(delay_ms, _fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self.due_at = None
        self.label = None


__all__ = [
    "AsyncioScheduler",
    "ManualScheduler",
    "Scheduler",
    "TimerHandle",
    "TimerSlot",
]
