"""Stateless reading of agent state from buffered output and elapsed time."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Protocol

from ..patterns import DEFAULT_PATTERNS, Matcher, MatcherKind, PatternMatch, PatternSet

_DECISION_KINDS = (MatcherKind.COMPLETION, MatcherKind.PLAN_PROMPT, MatcherKind.WORKING)


class Signal(str, Enum):
    WORKING = "working"
    LIKELY_IDLE = "likely_idle"
    CONFIRMED_IDLE = "confirmed_idle"
    PLAN_PROMPT = "plan_prompt"


@dataclass(frozen=True, slots=True)
class SignalReading:
    signal: Signal
    reason: str
    match: PatternMatch | None = None
    exit_signal: bool = False


class TeamPresence(Protocol):
    def has_active_teammates(self, session_id: str) -> bool:
        ...


class IdleSignal:
    """Turns output text plus timing into a :class:`Signal`.

    Precedence: active teammates and recent output always read as WORKING.
    Otherwise the latest pattern match in the output tail decides, except
    that once ``watching_ms`` reaches the no-output timeout only a pending
    plan prompt still outranks the no-output fallback.
    """

    def __init__(self, patterns: PatternSet = DEFAULT_PATTERNS) -> None:
        self.patterns = patterns

    def evaluate(
        self,
        text: str,
        *,
        silence_ms: float,
        watching_ms: float,
        idle_timeout_ms: float,
        no_output_timeout_ms: float,
        has_active_teammates: bool = False,
        extra_matchers: Iterable[Matcher] = (),
    ) -> SignalReading:
        exit_signal = (
            self.patterns.latest_match(text, kinds=[MatcherKind.EXIT_SIGNAL]) is not None
        )
        if has_active_teammates:
            return SignalReading(Signal.WORKING, "teammates_active", exit_signal=exit_signal)
        if silence_ms < idle_timeout_ms:
            return SignalReading(Signal.WORKING, "recent_output", exit_signal=exit_signal)

        match = self.patterns.latest_match(text, extra=extra_matchers, kinds=_DECISION_KINDS)
        if match is not None and match.kind is MatcherKind.PLAN_PROMPT:
            return SignalReading(Signal.PLAN_PROMPT, "plan_prompt", match, exit_signal)
        if watching_ms >= no_output_timeout_ms:
            return SignalReading(Signal.CONFIRMED_IDLE, "no_output_timeout", match, exit_signal)
        if match is None:
            return SignalReading(Signal.LIKELY_IDLE, "silence", None, exit_signal)
        if match.kind is MatcherKind.WORKING:
            return SignalReading(Signal.WORKING, "working_indicator", match, exit_signal)
        return SignalReading(Signal.LIKELY_IDLE, "completion_message", match, exit_signal)


__all__ = ["IdleSignal", "Signal", "SignalReading", "TeamPresence"]
