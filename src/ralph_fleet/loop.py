"""Top-level assignment and recovery loop."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable

from .agent import Worker, WorkerEvent, WorkerEventKind
from .errors import FleetError, InvalidTaskStateError, SessionNotFoundError
from .metrics import MetricsAggregator
from .respawn import RespawnConfig, RespawnController, Scheduler, TimerSlot
from .sessions import SessionRegistry
from .storage import LoopSnapshot, StateStore
from .tasks import Task, TaskSpec, TaskStore

logger = logging.getLogger(__name__)

ControllerFactory = Callable[[Worker, RespawnConfig], RespawnController]

FOLLOW_UP_PROMPTS = (
    "Review the recent changes in this repository for bugs, edge cases and unclear code, and fix what you find.",
    "Find code paths without test coverage and add focused tests for them.",
    "Bring the documentation up to date with the current behavior of the code.",
    "Run the project's linters and formatters and fix every reported issue.",
)


class LoopStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class LoopController:
    """Drives the fleet on a fixed tick.

    Each tick reconciles exited workers and timed-out tasks, hands the next
    schedulable task to every idle worker whose respawn controller has no
    cycle in flight, and, while a minimum-duration run is active with an
    empty backlog, generates generic follow-up work. Task completion is read
    from each worker's event channel between ticks.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        tasks: TaskStore,
        store: StateStore,
        *,
        scheduler: Scheduler,
        controller_factory: ControllerFactory,
        metrics: MetricsAggregator | None = None,
        poll_interval_ms: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._tasks = tasks
        self._store = store
        self._scheduler = scheduler
        self._controller_factory = controller_factory
        self._metrics = metrics
        self.poll_interval_ms = poll_interval_ms
        self._clock = clock

        self._slot = TimerSlot(scheduler)
        self._controllers: dict[str, RespawnController] = {}
        self._watches: dict[str, Callable[[], None]] = {}
        self._blocked: dict[str, str] = {}

        self.status = LoopStatus.STOPPED
        self.started_at: float | None = None
        self.min_duration_ms: int | None = None
        self.tasks_completed = 0
        self.tasks_generated = 0
        self.last_check_at: float | None = None
        self._restore()
        registry.on_stopped(self.release)

    def _restore(self) -> None:
        try:
            previous = self._store.get_loop_state() or {}
        except Exception as exc:
            logger.warning("Loop state read failed", extra={"error": str(exc)})
            return
        self.tasks_completed = int(previous.get("tasks_completed", 0))
        self.tasks_generated = int(previous.get("tasks_generated", 0))

    def snapshot(self) -> LoopSnapshot:
        return LoopSnapshot(
            status=self.status.value,
            started_at=self.started_at,
            min_duration_ms=self.min_duration_ms,
            tasks_completed=self.tasks_completed,
            tasks_generated=self.tasks_generated,
            last_check_at=self.last_check_at,
            blocked_sessions=sorted(self._blocked),
        )

    def _persist(self) -> None:
        try:
            self._store.set_loop_state(self.snapshot().to_dict())
        except Exception as exc:
            logger.warning("Loop state write failed", extra={"error": str(exc)})

    # lifecycle ---------------------------------------------------------------------

    def start(self, min_duration_minutes: float | None = None) -> None:
        if self.status is LoopStatus.RUNNING:
            return
        self.status = LoopStatus.RUNNING
        self.started_at = self._clock()
        self.min_duration_ms = int(min_duration_minutes * 60_000) if min_duration_minutes else None
        for worker in self._registry.list():
            self.watch(worker)
        self._persist()
        logger.info("Loop started", extra={"min_duration_ms": self.min_duration_ms})
        self._slot.arm(0, self._on_tick, label="tick")

    def pause(self) -> None:
        if self.status is LoopStatus.RUNNING:
            self.status = LoopStatus.PAUSED
            self._persist()
            logger.info("Loop paused")

    def resume(self) -> None:
        if self.status is LoopStatus.PAUSED:
            self.status = LoopStatus.RUNNING
            self._persist()
            logger.info("Loop resumed")

    def stop(self) -> None:
        """Stop ticking and dispose every respawn controller and watch."""

        self._slot.cancel()
        for session_id in list(self._controllers):
            self.disable_respawn(session_id)
        for unsubscribe in self._watches.values():
            unsubscribe()
        self._watches.clear()
        self.status = LoopStatus.STOPPED
        self._persist()
        logger.info("Loop stopped")

    @property
    def min_duration_active(self) -> bool:
        if self.status is LoopStatus.STOPPED or not self.min_duration_ms or self.started_at is None:
            return False
        return (self._clock() - self.started_at) * 1000 < self.min_duration_ms

    # tick --------------------------------------------------------------------------

    def _on_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            logger.exception("Loop tick failed")
        if self.status is not LoopStatus.STOPPED:
            self._slot.arm(self.poll_interval_ms, self._on_tick, label="tick")

    def tick(self) -> None:
        now = self._clock()
        self.last_check_at = now
        self._reconcile_exited()
        self._fail_timed_out(now)
        if self.status is LoopStatus.RUNNING:
            self._assign_idle_workers()
            counts = self._tasks.counts()
            if self.min_duration_active and counts["pending"] == 0 and counts["running"] == 0:
                self._generate_follow_ups()
        self._persist()

    def _reconcile_exited(self) -> None:
        for worker in self._registry.reap_exited():
            self._forget(worker, f"Session exited with code {worker.exit_code}")
            logger.info(
                "Reconciled exited session",
                extra={"session_id": worker.id, "exit_code": worker.exit_code},
            )

    def release(self, worker: Worker) -> None:
        """Fail the running tasks of a stopped worker and drop its watch and controller."""

        self._forget(worker, "Session stopped")
        self._persist()
        logger.info("Released stopped session", extra={"session_id": worker.id})

    def _forget(self, worker: Worker, reason: str) -> None:
        for task in self._tasks.running_for_worker(worker.id):
            self._tasks.mark_failed(task.id, reason)
        self._drop_controller(worker.id)
        unsubscribe = self._watches.pop(worker.id, None)
        if unsubscribe is not None:
            unsubscribe()

    def _fail_timed_out(self, now: float) -> None:
        for task in self._tasks.timed_out(now):
            self._tasks.mark_failed(task.id, f"Timed out after {task.timeout_ms} ms")
            worker = self._registry.get(task.assigned_worker_id or "")
            if worker is not None and worker.current_task_id == task.id:
                worker.clear_task()

    def _assign_idle_workers(self) -> None:
        for worker in self._registry.list_idle():
            controller = self._controllers.get(worker.id)
            if controller is not None and (controller.cycle_in_flight or controller.is_blocked):
                continue
            task = self._tasks.next_schedulable()
            if task is None:
                return
            self.assign(worker, task)

    def assign(self, worker: Worker, task: Task) -> bool:
        try:
            self._tasks.mark_running(task.id, worker.id)
        except InvalidTaskStateError:
            return False
        worker.assign_task(task.id)
        controller = self._controllers.get(worker.id)
        if controller is not None:
            controller.set_completion_phrase(task.completion_phrase)
        try:
            worker.write_input(task.prompt)
        except FleetError as exc:
            self._tasks.mark_failed(task.id, str(exc))
            worker.clear_task()
            logger.warning(
                "Task prompt delivery failed",
                extra={"task_id": task.id, "session_id": worker.id, "error": str(exc)},
            )
            return False
        logger.info("Task assigned", extra={"task_id": task.id, "session_id": worker.id})
        return True

    def _generate_follow_ups(self) -> None:
        working_dirs = sorted({worker.working_dir for worker in self._registry.list()})
        for working_dir in working_dirs:
            for prompt in FOLLOW_UP_PROMPTS:
                self._tasks.add(TaskSpec(prompt=prompt, working_dir=working_dir))
                self.tasks_generated += 1
        if working_dirs:
            logger.info(
                "Generated follow-up tasks",
                extra={"count": len(working_dirs) * len(FOLLOW_UP_PROMPTS)},
            )

    # completion --------------------------------------------------------------------

    def watch(self, worker: Worker) -> None:
        """Start reading task completion from ``worker``'s event channel."""

        if worker.id in self._watches:
            return
        self._watches[worker.id] = worker.events.subscribe(
            lambda event, _worker=worker: self._on_worker_event(_worker, event)
        )

    def _on_worker_event(self, worker: Worker, event: WorkerEvent) -> None:
        task_id = worker.current_task_id
        if task_id is None:
            return
        task = self._tasks.get(task_id)
        if task is None or not task.is_running():
            return
        if event.kind is WorkerEventKind.OUTPUT:
            self._tasks.record_output(task.id, worker.output_buffer)
            if task.check_completion(worker.output_buffer):
                self._complete(worker, task)
        elif event.kind is WorkerEventKind.COMPLETION and not task.completion_phrase:
            self._complete(worker, task)

    def _complete(self, worker: Worker, task: Task) -> None:
        self._tasks.mark_completed(task.id, output=worker.output_buffer)
        worker.clear_task()
        self.tasks_completed += 1
        controller = self._controllers.get(worker.id)
        if controller is not None:
            controller.set_completion_phrase(None)
        if self._metrics is not None:
            self._metrics.record_progress(worker.id)
        self._persist()

    # respawn -----------------------------------------------------------------------

    def enable_respawn(self, session_id: str, config: RespawnConfig) -> RespawnController:
        worker = self._registry.require(session_id)
        controller = self._controllers.get(session_id)
        if controller is not None:
            controller.update_config(config)
            return controller
        controller = self._controller_factory(worker, config)
        controller.on_blocked(self._on_blocked)
        self._controllers[session_id] = controller
        controller.start()
        return controller

    def disable_respawn(self, session_id: str) -> bool:
        return self._drop_controller(session_id)

    def _drop_controller(self, session_id: str) -> bool:
        controller = self._controllers.pop(session_id, None)
        self._blocked.pop(session_id, None)
        if controller is None:
            return False
        controller.stop()
        return True

    def controller(self, session_id: str) -> RespawnController | None:
        return self._controllers.get(session_id)

    def require_controller(self, session_id: str) -> RespawnController:
        controller = self._controllers.get(session_id)
        if controller is None:
            raise SessionNotFoundError(f"Respawn is not enabled for session {session_id}")
        return controller

    def _on_blocked(self, session_id: str, reason: str) -> None:
        self._blocked[session_id] = reason
        self._persist()

    def blocked_sessions(self) -> dict[str, str]:
        return dict(self._blocked)

    def reset_circuit_breaker(self, session_id: str) -> None:
        self.require_controller(session_id).reset_circuit_breaker()
        self._blocked.pop(session_id, None)
        self._persist()

    def trigger_respawn(self, session_id: str) -> None:
        self.require_controller(session_id).trigger_now()

    def status_dict(self) -> dict[str, Any]:
        payload = self.snapshot().to_dict()
        payload["respawn"] = {sid: controller.status() for sid, controller in self._controllers.items()}
        payload["task_counts"] = self._tasks.counts()
        return payload


__all__ = ["FOLLOW_UP_PROMPTS", "LoopController", "LoopStatus"]
