"""Utility helpers for launching agent processes."""

from __future__ import annotations

import os
from typing import Mapping, Sequence

SESSION_ENV_VAR = "RALPH_FLEET_SESSION_ID"

# Set by a running agent CLI; a child that inherits them refuses to start or
# behaves as a nested sub-agent.
_NESTING_VARS = (
    "CLAUDECODE",
    "CLAUDE_CODE_ENTRYPOINT",
    "CLAUDE_CODE_SSE_PORT",
)


def agent_environment(
    session_id: str | None = None,
    overrides: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return the environment for an agent child process.

    The fleet is often launched from inside an agent shell, so the markers that
    agent leaves behind are removed. ``session_id`` is exported as
    ``RALPH_FLEET_SESSION_ID`` and ``overrides`` are applied last.
    """

    env = {key: value for key, value in os.environ.items() if key not in _NESTING_VARS}
    if session_id is not None:
        env[SESSION_ENV_VAR] = session_id
    if overrides:
        env.update(overrides)
    return env


def wrap_with_nice(argv: Sequence[str], nice_value: int | None) -> list[str]:
    """Prefix ``argv`` with ``nice -n`` when a priority adjustment is requested."""

    if nice_value is None:
        return list(argv)
    value = max(-20, min(19, int(nice_value)))
    return ["nice", "-n", str(value), *argv]
