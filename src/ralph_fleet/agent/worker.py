"""Async supervision of a single agent subprocess."""

from __future__ import annotations

import asyncio
import codecs
import logging
import shutil
import signal
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence
from uuid import uuid4

from ..errors import ProcessSpawnError, WorkerNotRunningError
from ..patterns import DEFAULT_PATTERNS, PatternSet
from ..storage.models import SessionSnapshot
from .events import EventChannel, WorkerEventKind
from .utils import agent_environment, wrap_with_nice

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    STOPPED = "stopped"
    ERROR = "error"


def resolve_executable(explicit: Path | str | None, default_name: str = "claude") -> Path:
    """Locate the agent binary, raising ProcessSpawnError when it is missing."""

    if explicit is not None:
        candidate = Path(explicit)
        if candidate.exists() and candidate.is_file():
            return candidate
        found = shutil.which(str(explicit))
        if found is not None:
            return Path(found)
        raise ProcessSpawnError(f"Agent executable not found at {candidate}")

    binary = shutil.which(default_name)
    if binary is None:
        raise ProcessSpawnError(f"Agent executable '{default_name}' not found on PATH")
    return Path(binary)


class Worker:
    """Owns one agent subprocess, its three streams, and its observable state.

    Every state change is announced on :attr:`events`; subscribers never call
    back into the process streams directly.
    """

    def __init__(
        self,
        working_dir: Path | str,
        *,
        executable: Path | str,
        args: Sequence[str] = (),
        env: dict[str, str] | None = None,
        nice_value: int | None = None,
        worker_id: str | None = None,
        patterns: PatternSet = DEFAULT_PATTERNS,
        max_buffer_chars: int = 1_000_000,
        stop_grace_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.id = worker_id or uuid4().hex
        self.working_dir = str(working_dir)
        self._executable = str(executable)
        self._args = tuple(args)
        self._env = env
        self._nice_value = nice_value
        self._patterns = patterns
        self._max_buffer_chars = max_buffer_chars
        self._stop_grace_seconds = stop_grace_seconds
        self._clock = clock

        self.created_at = clock()
        self.events = EventChannel(self.id)

        self._process: asyncio.subprocess.Process | None = None
        self._status = WorkerStatus.IDLE
        self._current_task_id: str | None = None
        self._output_buffer = ""
        self._error_buffer = ""
        self._last_activity_at = self.created_at
        self._exit_code: int | None = None
        self._io_tasks: list[asyncio.Task] = []
        self._exit_task: asyncio.Task | None = None
        self._exited = asyncio.Event()

    @property
    def status(self) -> WorkerStatus:
        return self._status

    @property
    def pid(self) -> int | None:
        if self._process is None or self._status not in (WorkerStatus.IDLE, WorkerStatus.BUSY):
            return None
        return self._process.pid

    @property
    def current_task_id(self) -> str | None:
        return self._current_task_id

    @property
    def output_buffer(self) -> str:
        return self._output_buffer

    @property
    def error_buffer(self) -> str:
        return self._error_buffer

    @property
    def last_activity_at(self) -> float:
        return self._last_activity_at

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def is_idle(self) -> bool:
        return self._status is WorkerStatus.IDLE

    def is_busy(self) -> bool:
        return self._status is WorkerStatus.BUSY

    def is_running(self) -> bool:
        return self._status in (WorkerStatus.IDLE, WorkerStatus.BUSY)

    def to_snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            id=self.id,
            pid=self.pid,
            status=self._status.value,
            working_dir=self.working_dir,
            current_task_id=self._current_task_id,
            created_at=self.created_at,
            last_activity_at=self._last_activity_at,
        )

    async def start(self) -> None:
        if self._process is not None:
            raise RuntimeError(f"Worker {self.id} already started")

        argv = wrap_with_nice([self._executable, *self._args], self._nice_value)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.working_dir,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=agent_environment(self.id, self._env),
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            self._status = WorkerStatus.ERROR
            self.events.publish(WorkerEventKind.ERROR, str(exc))
            raise ProcessSpawnError(f"Failed to start agent for {self.working_dir}: {exc}") from exc

        self._status = WorkerStatus.IDLE
        self._last_activity_at = self._clock()
        loop = asyncio.get_running_loop()
        self._io_tasks = [
            loop.create_task(self._pump(self._process.stdout, WorkerEventKind.OUTPUT)),
            loop.create_task(self._pump(self._process.stderr, WorkerEventKind.ERROR)),
        ]
        self._exit_task = loop.create_task(self._wait_for_exit())
        logger.info(
            "Started agent process",
            extra={"worker_id": self.id, "pid": self._process.pid, "working_dir": self.working_dir},
        )

    async def _pump(self, stream: asyncio.StreamReader | None, kind: WorkerEventKind) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self._on_text(kind, text)
        tail = decoder.decode(b"", final=True)
        if tail:
            self._on_text(kind, tail)

    def _on_text(self, kind: WorkerEventKind, text: str) -> None:
        self._last_activity_at = self._clock()
        if kind is WorkerEventKind.OUTPUT:
            self._output_buffer = (self._output_buffer + text)[-self._max_buffer_chars :]
            self.events.publish(WorkerEventKind.OUTPUT, text)
            phrase = self._patterns.detect_completion(text)
            if phrase is not None:
                self.events.publish(WorkerEventKind.COMPLETION, phrase)
        else:
            self._error_buffer = (self._error_buffer + text)[-self._max_buffer_chars :]
            self.events.publish(WorkerEventKind.ERROR, text)

    async def _wait_for_exit(self) -> None:
        process = self._process
        if process is None:
            raise WorkerNotRunningError(f"Worker {self.id} was never started")
        code = await process.wait()
        if self._io_tasks:
            await asyncio.gather(*self._io_tasks, return_exceptions=True)
        self._exit_code = code
        self._status = WorkerStatus.STOPPED
        self._current_task_id = None
        self._exited.set()
        logger.info("Agent process exited", extra={"worker_id": self.id, "exit_code": code})
        self.events.publish(WorkerEventKind.EXIT, code)

    async def stop(self) -> None:
        """Terminate the process, escalating to SIGKILL after the grace period."""

        process = self._process
        if process is None or self._exited.is_set():
            self._status = WorkerStatus.STOPPED
            self._current_task_id = None
            return

        if process.returncode is None:
            try:
                process.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=self._stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Agent ignored SIGTERM; escalating",
                extra={"worker_id": self.id, "grace_seconds": self._stop_grace_seconds},
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
        self._status = WorkerStatus.STOPPED
        self._current_task_id = None

    def write_input(self, text: str) -> None:
        """Queue ``text`` plus a newline on the agent's stdin."""

        self._write(text + "\n")

    def write_keystroke(self, keys: str) -> None:
        """Send raw keys without a trailing newline."""

        self._write(keys)

    def _write(self, payload: str) -> None:
        process = self._process
        if process is None or process.stdin is None or not self.is_running():
            raise WorkerNotRunningError(f"Worker {self.id} is not running")
        if process.stdin.is_closing():
            raise WorkerNotRunningError(f"Worker {self.id} stdin is closed")
        process.stdin.write(payload.encode("utf-8"))
        self._last_activity_at = self._clock()

    async def send_input(self, text: str) -> None:
        self.write_input(text)
        process = self._process
        if process is None or process.stdin is None:
            raise WorkerNotRunningError(f"Worker {self.id} is not running")
        await process.stdin.drain()

    def assign_task(self, task_id: str) -> None:
        if not self.is_running():
            raise WorkerNotRunningError(f"Worker {self.id} cannot take task {task_id}")
        self._current_task_id = task_id
        self._status = WorkerStatus.BUSY
        self.clear_buffers()
        self._last_activity_at = self._clock()
        self.events.publish(WorkerEventKind.STATUS, self._status.value)

    def clear_task(self) -> None:
        self._current_task_id = None
        if self._status is WorkerStatus.BUSY:
            self._status = WorkerStatus.IDLE
        self._last_activity_at = self._clock()
        self.events.publish(WorkerEventKind.STATUS, self._status.value)

    def clear_buffers(self) -> None:
        self._output_buffer = ""
        self._error_buffer = ""


__all__ = ["Worker", "WorkerStatus", "resolve_executable"]
