"""Process-wide context: wires the fleet engine together and exposes its operations."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Callable, Optional

from . import __version__
from .agent import Worker, resolve_executable
from .config import FleetSettings, get_settings
from .errors import ProcessSpawnError, TaskNotFoundError
from .loop import LoopController
from .metrics import MetricsAggregator
from .presets import PresetLoadError, PresetLoader
from .respawn import (
    AsyncioScheduler,
    CliVerifier,
    RespawnConfig,
    RespawnController,
    Scheduler,
    TeamPresence,
)
from .respawn.verifier import IdleVerifier, PlanVerifier
from .sessions import SessionRegistry
from .storage import ChromaStateStore, ChromaUnavailableError, MemoryStateStore, StateStore
from .tasks import TaskSpec, TaskStatus, TaskStore

logger = logging.getLogger(__name__)

_RUNTIME_CONFIG_KEYS = {"max_concurrent_sessions", "poll_interval_ms", "respawn", "default_preset"}


def configure_logging(level: str) -> None:
    """Configure root logging for the fleet runtime."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


class FleetRuntime:
    """Owns every fleet collaborator and defines their start and shutdown order.

    Start: store, registry, task store, metrics, loop. Shutdown runs the
    reverse: the loop stops ticking and disposes every respawn controller
    before any worker process is signalled.
    """

    def __init__(
        self,
        settings: FleetSettings,
        *,
        store: StateStore,
        store_metadata: dict[str, Any],
        registry: SessionRegistry,
        tasks: TaskStore,
        metrics: MetricsAggregator,
        loop: LoopController,
        presets: PresetLoader,
    ) -> None:
        self.settings = settings
        self.store = store
        self.store_metadata = store_metadata
        self.registry = registry
        self.tasks = tasks
        self.metrics = metrics
        self.loop = loop
        self.presets = presets
        self._metric_watches: dict[str, Callable[[], None]] = {}
        registry.on_created(self._on_session_created)

    # lifecycle ---------------------------------------------------------------------

    async def start(self) -> None:
        self.loop.start(self.settings.min_duration_minutes)
        for workdir in self.settings.workdirs:
            try:
                await self.create_session(str(workdir))
            except ProcessSpawnError as exc:
                logger.error("Initial session failed", extra={"working_dir": str(workdir), "error": str(exc)})

    async def shutdown(self) -> None:
        self.loop.stop()
        for unsubscribe in self._metric_watches.values():
            unsubscribe()
        self._metric_watches.clear()
        await self.registry.stop_all()
        logger.info("Fleet runtime stopped")

    def _on_session_created(self, worker: Worker) -> None:
        self.loop.watch(worker)
        self._metric_watches[worker.id] = self.metrics.observe(worker.events)
        try:
            default = self.default_respawn_config()
        except PresetLoadError as exc:
            logger.warning("Default respawn preset unavailable", extra={"session_id": worker.id, "error": str(exc)})
            return
        if default is not None:
            self.loop.enable_respawn(worker.id, default)

    def default_respawn_config(self) -> RespawnConfig | None:
        overlay = self.store.get_config()
        if overlay.get("respawn"):
            return RespawnConfig.model_validate(overlay["respawn"])
        preset_id = overlay.get("default_preset") or self.settings.default_preset
        if preset_id:
            return self.presets.get(preset_id).config
        return None

    # sessions ----------------------------------------------------------------------

    async def create_session(self, working_dir: str) -> dict[str, Any]:
        worker = await self.registry.create(working_dir)
        return worker.to_snapshot().to_dict()

    async def stop_session(self, session_id: str) -> None:
        self.loop.disable_respawn(session_id)
        unsubscribe = self._metric_watches.pop(session_id, None)
        if unsubscribe is not None:
            unsubscribe()
        await self.registry.stop(session_id)

    def list_sessions(self) -> list[dict[str, Any]]:
        sessions = {sid: dict(snapshot) for sid, snapshot in self.registry.stored_sessions().items()}
        for worker in self.registry.list():
            sessions[worker.id] = worker.to_snapshot().to_dict()
        for session_id, payload in sessions.items():
            controller = self.loop.controller(session_id)
            payload["respawn"] = controller.status() if controller is not None else None
        return sorted(sessions.values(), key=lambda payload: payload.get("created_at", 0.0))

    async def send_input(self, session_id: str, text: str) -> None:
        await self.registry.send_input(session_id, text)

    # tasks -------------------------------------------------------------------------

    def add_task(self, spec: TaskSpec | dict[str, Any]) -> dict[str, Any]:
        return self.tasks.add(spec).to_state()

    def remove_task(self, task_id: str) -> bool:
        return self.tasks.remove(task_id)

    def get_task(self, task_id: str) -> dict[str, Any]:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task.to_state()

    def list_tasks(self, status: TaskStatus | str | None = None) -> list[dict[str, Any]]:
        return [task.to_state() for task in self.tasks.list(status)]

    def clear_tasks(self, which: str = "completed") -> int:
        clearers = {
            "completed": self.tasks.clear_completed,
            "failed": self.tasks.clear_failed,
            "all": self.tasks.clear_all,
        }
        if which not in clearers:
            raise ValueError(f"Unknown clear target '{which}'; expected completed, failed or all")
        return clearers[which]()

    def stalled_backlog(self) -> list[dict[str, Any]]:
        return [
            {"task_id": task.id, "prompt": task.prompt, "code": error.code, "reason": error.reason}
            for task, error in self.tasks.stalled_backlog()
        ]

    # respawn -----------------------------------------------------------------------

    def enable_respawn(
        self,
        session_id: str,
        config: RespawnConfig | dict[str, Any] | None = None,
        *,
        preset_id: str | None = None,
    ) -> dict[str, Any]:
        if preset_id is not None:
            resolved = self.presets.get(preset_id).config
            if config:
                overrides = config.model_dump(exclude_unset=True) if isinstance(config, RespawnConfig) else config
                resolved = RespawnConfig.model_validate({**resolved.model_dump(), **overrides})
        elif isinstance(config, RespawnConfig):
            resolved = config
        else:
            resolved = RespawnConfig.model_validate(config or {})
        return self.loop.enable_respawn(session_id, resolved).status()

    def disable_respawn(self, session_id: str) -> bool:
        return self.loop.disable_respawn(session_id)

    def trigger_respawn(self, session_id: str) -> None:
        self.loop.trigger_respawn(session_id)

    def reset_circuit_breaker(self, session_id: str) -> None:
        self.loop.reset_circuit_breaker(session_id)

    def blocked_sessions(self) -> dict[str, str]:
        return self.loop.blocked_sessions()

    def cycle_metrics(self, session_id: str | None = None) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.metrics.cycles(session_id)]

    def health(self, session_id: str) -> dict[str, Any]:
        controller: RespawnController | None = self.loop.controller(session_id)
        kwargs = {"breaker_state": controller.breaker_state} if controller is not None else {}
        payload = self.metrics.health(session_id, **kwargs).to_dict()
        payload["aggregate"] = self.metrics.aggregate(session_id).to_dict()
        return payload

    # config ------------------------------------------------------------------------

    def update_config(self, partial: dict[str, Any]) -> dict[str, Any]:
        unknown = set(partial) - _RUNTIME_CONFIG_KEYS
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        update = dict(partial)
        if "respawn" in update and update["respawn"] is not None:
            update["respawn"] = RespawnConfig.model_validate(update["respawn"]).model_dump()
        if update.get("default_preset"):
            self.presets.get(update["default_preset"])
        if "max_concurrent_sessions" in update:
            value = int(update["max_concurrent_sessions"])
            if value < 1:
                raise ValueError("max_concurrent_sessions must be >= 1")
            self.registry.max_sessions = value
        if "poll_interval_ms" in update:
            value = int(update["poll_interval_ms"])
            if value < 1:
                raise ValueError("poll_interval_ms must be >= 1")
            self.loop.poll_interval_ms = value
        return self.store.set_config(update)

    def status(self) -> dict[str, Any]:
        return {
            "version": __version__,
            "log_level": self.settings.log_level,
            "storage": self.store_metadata,
            "sessions": {"live": self.registry.count(), "max": self.registry.max_sessions},
            "loop": self.loop.status_dict(),
            "blocked_sessions": self.blocked_sessions(),
        }


def _default_worker_factory(settings: FleetSettings) -> Callable[[str], Worker]:
    def factory(working_dir: str) -> Worker:
        return Worker(
            working_dir,
            executable=resolve_executable(settings.agent_path),
            args=settings.agent_args,
            nice_value=settings.nice_value,
            max_buffer_chars=settings.max_buffer_chars,
            stop_grace_seconds=settings.stop_grace_ms / 1000,
        )

    return factory


def _build_verifiers(settings: FleetSettings) -> tuple[IdleVerifier | None, PlanVerifier | None]:
    try:
        return CliVerifier(settings.verifier_path), CliVerifier.for_plan_mode(settings.verifier_path)
    except ProcessSpawnError as exc:
        logger.info("AI verifiers unavailable", extra={"error": str(exc)})
        return None, None


def create_runtime(
    settings: Optional[FleetSettings] = None,
    *,
    store: StateStore | None = None,
    worker_factory: Callable[[str], Worker] | None = None,
    scheduler: Scheduler | None = None,
    idle_verifier: IdleVerifier | None = None,
    plan_verifier: PlanVerifier | None = None,
    team: TeamPresence | None = None,
) -> FleetRuntime:
    """Instantiate the fleet runtime with its collaborators."""

    settings = settings or get_settings()

    store_metadata: dict[str, Any] = {
        "backend": "memory",
        "path": str(settings.state_path),
        "error": None,
    }
    if store is None:
        try:
            chroma_store = ChromaStateStore(Path(settings.state_path))
            chroma_store.ping()
            store = chroma_store
            store_metadata["backend"] = "chroma"
        except ChromaUnavailableError as exc:
            store_metadata["error"] = str(exc)
            logger.warning("Chroma unavailable; state kept in memory", extra={"error": str(exc)})
            store = MemoryStateStore()
    else:
        store_metadata["backend"] = type(store).__name__

    if idle_verifier is None and plan_verifier is None:
        idle_verifier, plan_verifier = _build_verifiers(settings)

    scheduler = scheduler or AsyncioScheduler()
    presets = PresetLoader(settings.preset_paths)
    try:
        presets.load_all()
    except PresetLoadError as exc:
        logger.warning("Preset files failed to load", extra={"error": str(exc)})

    registry = SessionRegistry(
        store,
        worker_factory=worker_factory or _default_worker_factory(settings),
        max_sessions=settings.max_concurrent_sessions,
    )
    tasks = TaskStore(store)
    metrics = MetricsAggregator(store)

    def controller_factory(worker: Worker, config: RespawnConfig) -> RespawnController:
        return RespawnController(
            worker,
            config,
            scheduler=scheduler,
            idle_verifier=idle_verifier,
            plan_verifier=plan_verifier,
            team=team,
            metrics=metrics,
        )

    loop = LoopController(
        registry,
        tasks,
        store,
        scheduler=scheduler,
        controller_factory=controller_factory,
        metrics=metrics,
        poll_interval_ms=settings.poll_interval_ms,
    )

    overlay = store.get_config()
    if "max_concurrent_sessions" in overlay:
        registry.max_sessions = int(overlay["max_concurrent_sessions"])
    if "poll_interval_ms" in overlay:
        loop.poll_interval_ms = int(overlay["poll_interval_ms"])

    return FleetRuntime(
        settings,
        store=store,
        store_metadata=store_metadata,
        registry=registry,
        tasks=tasks,
        metrics=metrics,
        loop=loop,
        presets=presets,
    )


async def _serve(runtime: FleetRuntime) -> None:
    stop = asyncio.Event()
    event_loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        event_loop.add_signal_handler(signum, stop.set)
    await runtime.start()
    try:
        await stop.wait()
    finally:
        await runtime.shutdown()


def main() -> None:
    """Entry point for running the fleet runtime via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    runtime = create_runtime(settings)
    logger.info(
        "Launching ralph-fleet",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "storage": runtime.store_metadata.get("backend"),
            "max_sessions": runtime.registry.max_sessions,
        },
    )
    asyncio.run(_serve(runtime))


if __name__ == "__main__":
    main()
