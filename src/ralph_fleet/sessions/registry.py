"""Registry of live agent workers."""

from __future__ import annotations

import logging
from typing import Callable, Protocol

from ..agent import Worker, WorkerEvent, WorkerEventKind, WorkerStatus
from ..errors import CapacityError, ProcessSpawnError, SessionNotFoundError
from ..storage import StateStore

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[str], Worker]

_PERSISTED_KINDS = {
    WorkerEventKind.OUTPUT,
    WorkerEventKind.ERROR,
    WorkerEventKind.EXIT,
    WorkerEventKind.STATUS,
}


class SessionListener(Protocol):
    def __call__(self, worker: Worker) -> None:
        ...


class SessionRegistry:
    """Owns the set of live workers and enforces the concurrency cap."""

    def __init__(
        self,
        store: StateStore,
        *,
        worker_factory: WorkerFactory,
        max_sessions: int = 5,
    ) -> None:
        self._store = store
        self._worker_factory = worker_factory
        self.max_sessions = max_sessions
        self._workers: dict[str, Worker] = {}
        self._exited: dict[str, Worker] = {}
        self._starting = 0
        self._unsubscribers: dict[str, Callable[[], None]] = {}
        self._created_listeners: list[SessionListener] = []
        self._stopped_listeners: list[SessionListener] = []
        self._mark_stale_sessions_stopped()

    def _mark_stale_sessions_stopped(self) -> None:
        for session_id, snapshot in self._store.list_sessions().items():
            if snapshot.get("status") != WorkerStatus.STOPPED.value:
                snapshot["status"] = WorkerStatus.STOPPED.value
                snapshot["pid"] = None
                self._store.set_session(session_id, snapshot)
                logger.info(
                    "Marked stale session stopped",
                    extra={"session_id": session_id},
                )

    def on_created(self, listener: SessionListener) -> None:
        """Invoke ``listener`` with every worker once its process has started."""

        self._created_listeners.append(listener)

    def on_stopped(self, listener: SessionListener) -> None:
        """Invoke ``listener`` with every worker stopped through :meth:`stop`."""

        self._stopped_listeners.append(listener)

    def _persist(self, worker: Worker) -> None:
        try:
            self._store.set_session(worker.id, worker.to_snapshot().to_dict())
        except Exception as exc:
            logger.warning(
                "Session snapshot write failed",
                extra={"session_id": worker.id, "error": str(exc)},
            )

    def _observe(self, worker: Worker, event: WorkerEvent) -> None:
        if event.kind is WorkerEventKind.EXIT and worker.id in self._workers:
            self._exited[worker.id] = self._workers.pop(worker.id)
        if event.kind in _PERSISTED_KINDS:
            self._persist(worker)

    async def create(self, working_dir: str) -> Worker:
        live = len(self._workers) + self._starting
        if live >= self.max_sessions:
            raise CapacityError(f"Maximum concurrent sessions ({self.max_sessions}) reached")

        self._starting += 1
        try:
            worker = self._worker_factory(str(working_dir))
            self._unsubscribers[worker.id] = worker.events.subscribe(
                lambda event, _worker=worker: self._observe(_worker, event)
            )
            try:
                await worker.start()
            except ProcessSpawnError:
                self._persist(worker)
                self._unsubscribers.pop(worker.id)()
                raise
            self._workers[worker.id] = worker
        finally:
            self._starting -= 1

        self._persist(worker)
        logger.info(
            "Session created",
            extra={"session_id": worker.id, "working_dir": worker.working_dir, "live": len(self._workers)},
        )
        for listener in list(self._created_listeners):
            listener(worker)
        return worker

    async def stop(self, session_id: str) -> None:
        """Stop a session. Unknown and already-stopped ids are accepted silently."""

        worker = self._workers.pop(session_id, None) or self._exited.pop(session_id, None)
        if worker is None:
            stored = self._store.get_session(session_id)
            if stored and stored.get("status") != WorkerStatus.STOPPED.value:
                stored["status"] = WorkerStatus.STOPPED.value
                stored["pid"] = None
                self._store.set_session(session_id, stored)
            return

        await worker.stop()
        self._persist(worker)
        unsubscribe = self._unsubscribers.pop(session_id, None)
        if unsubscribe is not None:
            unsubscribe()
        logger.info("Session stopped", extra={"session_id": session_id})
        for listener in list(self._stopped_listeners):
            listener(worker)

    async def stop_all(self) -> None:
        for session_id in list(self._workers) + list(self._exited):
            await self.stop(session_id)

    def reap_exited(self) -> list[Worker]:
        """Return and forget workers whose process exit has been observed."""

        exited = list(self._exited.values())
        for worker in exited:
            unsubscribe = self._unsubscribers.pop(worker.id, None)
            if unsubscribe is not None:
                unsubscribe()
        self._exited.clear()
        return exited

    def get(self, session_id: str) -> Worker | None:
        return self._workers.get(session_id)

    def require(self, session_id: str) -> Worker:
        worker = self._workers.get(session_id)
        if worker is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return worker

    def list(self) -> list[Worker]:
        return list(self._workers.values())

    def list_idle(self) -> list[Worker]:
        return [worker for worker in self._workers.values() if worker.is_idle()]

    def list_busy(self) -> list[Worker]:
        return [worker for worker in self._workers.values() if worker.is_busy()]

    def count(self) -> int:
        return len(self._workers)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._workers

    def stored_sessions(self) -> dict[str, dict]:
        return self._store.list_sessions()

    async def send_input(self, session_id: str, text: str) -> None:
        await self.require(session_id).send_input(text)


__all__ = ["SessionRegistry", "WorkerFactory"]
