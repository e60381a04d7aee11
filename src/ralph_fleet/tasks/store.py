"""Prioritized, dependency-aware backlog of tasks."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from ..errors import DependencyUnsatisfiableError, InvalidTaskStateError, TaskNotFoundError
from ..storage import StateStore
from .models import Task, TaskSpec, TaskStatus

logger = logging.getLogger(__name__)


class TaskStore:
    """Owns every task record and picks the next one to run.

    Selection re-scans the backlog on every call: pending tasks ordered by
    priority (descending), then creation time and insertion order, and the
    first whose dependencies have all completed wins. Tasks whose
    dependencies are missing or cyclic are never selected and never failed
    automatically; :meth:`stalled_backlog` reports them.
    """

    def __init__(self, store: StateStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock
        self._tasks: dict[str, Task] = {}
        self._sequence = 0
        self._load()

    def _load(self) -> None:
        for task_id, state in self._store.list_tasks().items():
            try:
                task = Task.from_state(state)
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping malformed task record", extra={"task_id": task_id, "error": str(exc)})
                continue
            self._tasks[task.id] = task
            self._sequence = max(self._sequence, task.sequence)

    def _save(self, task: Task) -> None:
        try:
            self._store.set_task(task.id, task.to_state())
        except Exception as exc:
            logger.warning("Task write failed", extra={"task_id": task.id, "error": str(exc)})

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    # writes ------------------------------------------------------------------------

    def add(self, spec: TaskSpec | dict) -> Task:
        if not isinstance(spec, TaskSpec):
            spec = TaskSpec.model_validate(spec)
        self._sequence += 1
        task = Task.from_spec(spec, created_at=self._clock(), sequence=self._sequence)
        self._tasks[task.id] = task
        self._save(task)
        logger.info(
            "Task added",
            extra={"task_id": task.id, "priority": task.priority, "dependencies": len(task.dependencies)},
        )
        return task

    def remove(self, task_id: str) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        try:
            self._store.remove_task(task_id)
        except Exception as exc:
            logger.warning("Task delete failed", extra={"task_id": task_id, "error": str(exc)})
        return True

    def mark_running(self, task_id: str, worker_id: str) -> Task:
        task = self._require(task_id)
        task.assign(worker_id, self._clock())
        self._save(task)
        return task

    def mark_completed(self, task_id: str, output: str | None = None) -> Task:
        task = self._require(task_id)
        if task.is_done():
            raise InvalidTaskStateError(f"Task {task_id} already {task.status.value}")
        if output is not None:
            task.output = output
        task.complete(self._clock())
        self._save(task)
        logger.info("Task completed", extra={"task_id": task_id, "worker_id": task.assigned_worker_id})
        return task

    def mark_failed(self, task_id: str, error: str) -> Task:
        task = self._require(task_id)
        if task.is_done():
            raise InvalidTaskStateError(f"Task {task_id} already {task.status.value}")
        task.fail(self._clock(), error)
        self._save(task)
        logger.info("Task failed", extra={"task_id": task_id, "error": error})
        return task

    def record_output(self, task_id: str, output: str) -> None:
        task = self._tasks.get(task_id)
        if task is not None:
            task.output = output

    def _clear(self, predicate: Callable[[Task], bool]) -> int:
        doomed = [task_id for task_id, task in self._tasks.items() if predicate(task)]
        for task_id in doomed:
            self.remove(task_id)
        return len(doomed)

    def clear_completed(self) -> int:
        return self._clear(Task.is_completed)

    def clear_failed(self) -> int:
        return self._clear(Task.is_failed)

    def clear_all(self) -> int:
        return self._clear(lambda _task: True)

    # reads -------------------------------------------------------------------------

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def list(self, status: TaskStatus | str | None = None) -> list[Task]:
        tasks = sorted(self._tasks.values(), key=lambda task: (task.created_at, task.sequence))
        if status is None:
            return tasks
        wanted = TaskStatus(status)
        return [task for task in tasks if task.status is wanted]

    def pending(self) -> list[Task]:
        """Pending tasks in scheduling order."""

        return sorted(
            (task for task in self._tasks.values() if task.is_pending()),
            key=lambda task: (-task.priority, task.created_at, task.sequence),
        )

    def _dependencies_met(self, task: Task) -> bool:
        for dependency_id in task.dependencies:
            dependency = self._tasks.get(dependency_id)
            if dependency is None or not dependency.is_completed():
                return False
        return True

    def next_schedulable(self) -> Task | None:
        for task in self.pending():
            if self._dependencies_met(task):
                return task
        return None

    def counts(self) -> dict[str, int]:
        totals = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            totals[task.status.value] += 1
        totals["total"] = len(self._tasks)
        return totals

    def running_for_worker(self, worker_id: str) -> list[Task]:
        return [
            task
            for task in self._tasks.values()
            if task.is_running() and task.assigned_worker_id == worker_id
        ]

    def timed_out(self, now: float | None = None) -> list[Task]:
        moment = self._clock() if now is None else now
        return [task for task in self._tasks.values() if task.is_timed_out(moment)]

    def __len__(self) -> int:
        return len(self._tasks)

    # diagnostics -------------------------------------------------------------------

    def find_cycles(self) -> list[list[str]]:
        """Return each dependency cycle once, as the list of task ids on it."""

        cycles: list[list[str]] = []
        seen_cycles: set[frozenset[str]] = set()
        state: dict[str, int] = {}
        path: list[str] = []

        def visit(task_id: str) -> None:
            state[task_id] = 1
            path.append(task_id)
            task = self._tasks[task_id]
            for dependency_id in task.dependencies:
                if dependency_id not in self._tasks:
                    continue
                marker = state.get(dependency_id, 0)
                if marker == 0:
                    visit(dependency_id)
                elif marker == 1:
                    cycle = path[path.index(dependency_id) :]
                    key = frozenset(cycle)
                    if key not in seen_cycles:
                        seen_cycles.add(key)
                        cycles.append(list(cycle))
            path.pop()
            state[task_id] = 2

        for task_id in sorted(self._tasks, key=lambda tid: self._tasks[tid].sequence):
            if state.get(task_id, 0) == 0:
                visit(task_id)
        return cycles

    def _unsatisfiable_reason(self, task: Task, cyclic: set[str], visiting: set[str]) -> str | None:
        if task.id in cyclic:
            return "dependency cycle"
        visiting.add(task.id)
        try:
            for dependency_id in task.dependencies:
                dependency = self._tasks.get(dependency_id)
                if dependency is None:
                    return f"missing dependency '{dependency_id}'"
                if dependency.is_failed():
                    return f"dependency '{dependency_id}' failed"
                if dependency.is_completed() or dependency.id in visiting:
                    continue
                inner = self._unsatisfiable_reason(dependency, cyclic, visiting)
                if inner is not None:
                    return f"dependency '{dependency_id}' is unschedulable ({inner})"
        finally:
            visiting.discard(task.id)
        return None

    def _cyclic_ids(self) -> set[str]:
        return {task_id for cycle in self.find_cycles() for task_id in cycle}

    def check_satisfiable(self, task_id: str) -> None:
        """Raise DependencyUnsatisfiableError if ``task_id`` can never be scheduled."""

        task = self._require(task_id)
        reason = self._unsatisfiable_reason(task, self._cyclic_ids(), set())
        if reason is not None:
            raise DependencyUnsatisfiableError(task_id, reason)

    def stalled_backlog(self) -> list[tuple[Task, DependencyUnsatisfiableError]]:
        """Pending tasks that cannot become schedulable, with the reason for each."""

        cyclic = self._cyclic_ids()
        stalled: list[tuple[Task, DependencyUnsatisfiableError]] = []
        for task in self.pending():
            reason = self._unsatisfiable_reason(task, cyclic, set())
            if reason is not None:
                stalled.append((task, DependencyUnsatisfiableError(task.id, reason)))
        return stalled

    def extend(self, specs: Iterable[TaskSpec | dict]) -> list[Task]:
        return [self.add(spec) for spec in specs]


__all__ = ["TaskStore"]
