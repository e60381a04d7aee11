"""Optional out-of-band verifiers for idle and plan-mode decisions."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Protocol

from ..agent.utils import agent_environment
from ..agent.worker import resolve_executable
from ..errors import VerifierUnavailable


class Verdict(str, Enum):
    WORKING = "WORKING"
    IDLE = "IDLE"
    PLAN_MODE = "PLAN_MODE"
    NOT_PLAN_MODE = "NOT_PLAN_MODE"


@dataclass(slots=True)
class VerifierResult:
    verdict: Verdict
    raw: str = ""


class IdleVerifier(Protocol):
    async def check(self, text: str, model: str, timeout_s: float) -> VerifierResult:
        ...


class PlanVerifier(Protocol):
    async def check(self, text: str, model: str, timeout_s: float) -> VerifierResult:
        ...


IDLE_PROMPT = (
    "You are inspecting the tail of a coding agent's terminal output. "
    "Answer with exactly one word: WORKING if the agent is still doing work, "
    "IDLE if it has finished and is waiting for input.\n\n--- OUTPUT ---\n"
)

PLAN_PROMPT = (
    "You are inspecting the tail of a coding agent's terminal output. "
    "Answer with exactly one word: PLAN_MODE if the agent is showing a plan "
    "approval prompt, NOT_PLAN_MODE otherwise.\n\n--- OUTPUT ---\n"
)


class CliVerifier:
    """Ask a one-shot model CLI for a verdict on a window of agent output.

    The CLI receives the prompt on stdin and the model via ``--model``. The
    first allowed verdict word in its stdout wins; anything else, a non-zero
    exit, or a timeout is reported as :class:`VerifierUnavailable`.
    """

    def __init__(
        self,
        executable: Path | str | None = None,
        *,
        prompt: str = IDLE_PROMPT,
        verdicts: Iterable[Verdict] = (Verdict.WORKING, Verdict.IDLE),
        extra_args: Iterable[str] = ("-p",),
    ) -> None:
        self._executable = resolve_executable(executable)
        self._prompt = prompt
        self._verdicts = tuple(verdicts)
        self._extra_args = tuple(extra_args)
        # Longest first so NOT_PLAN_MODE is not read as PLAN_MODE.
        ordered = sorted((verdict.value for verdict in self._verdicts), key=len, reverse=True)
        self._verdict_re = re.compile(r"\b(" + "|".join(map(re.escape, ordered)) + r")\b")

    @classmethod
    def for_plan_mode(cls, executable: Path | str | None = None) -> "CliVerifier":
        return cls(
            executable,
            prompt=PLAN_PROMPT,
            verdicts=(Verdict.PLAN_MODE, Verdict.NOT_PLAN_MODE),
        )

    @property
    def executable(self) -> Path:
        return self._executable

    async def check(self, text: str, model: str, timeout_s: float) -> VerifierResult:
        try:
            return await asyncio.wait_for(self._invoke(text, model), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise VerifierUnavailable(f"Verifier timed out after {timeout_s:.1f}s") from exc
        except OSError as exc:
            raise VerifierUnavailable(f"Verifier could not be started: {exc}") from exc

    async def _invoke(self, text: str, model: str) -> VerifierResult:
        cmd = [str(self._executable), *self._extra_args, "--model", model]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=agent_environment(),
        )
        try:
            stdout_bytes, stderr_bytes = await process.communicate((self._prompt + text).encode("utf-8"))
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        if process.returncode != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            raise VerifierUnavailable(f"Verifier exited with {process.returncode}: {stderr[:200]}")
        match = self._verdict_re.search(stdout.upper())
        if match is None:
            raise VerifierUnavailable(f"Verifier returned no verdict: {stdout.strip()[:200]}")
        return VerifierResult(verdict=Verdict(match.group(1)), raw=stdout)


class StaticVerifier:
    """Test double that replays queued verdicts (or exceptions) in order."""

    def __init__(self, responses: Iterable[Verdict | BaseException] | None = None) -> None:
        self._responses = list(responses or [])
        self.calls: list[tuple[str, str, float]] = []

    async def check(self, text: str, model: str, timeout_s: float) -> VerifierResult:
        self.calls.append((text, model, timeout_s))
        if not self._responses:
            raise VerifierUnavailable("No verdict queued")
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return VerifierResult(verdict=response, raw=response.value)


__all__ = [
    "CliVerifier",
    "IDLE_PROMPT",
    "IdleVerifier",
    "PLAN_PROMPT",
    "PlanVerifier",
    "StaticVerifier",
    "Verdict",
    "VerifierResult",
]
