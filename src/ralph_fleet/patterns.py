"""Heuristic text patterns used to read agent state from terminal output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, Field, PrivateAttr, field_validator

_ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07|\x1b[@-_]")


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from ``text``."""

    return _ANSI_RE.sub("", text)


class MatcherKind(str, Enum):
    COMPLETION = "completion"
    PLAN_PROMPT = "plan_prompt"
    WORKING = "working"
    EXIT_SIGNAL = "exit_signal"


class Matcher(BaseModel):
    """A named regular expression tagged with the agent state it indicates."""

    kind: MatcherKind
    pattern: str
    name: str | None = None
    ignore_case: bool = True

    _regex: re.Pattern[str] = PrivateAttr()

    def model_post_init(self, __context) -> None:
        flags = re.IGNORECASE if self.ignore_case else 0
        self._regex = re.compile(self.pattern, flags)

    @field_validator("pattern")
    @classmethod
    def _validate_pattern(cls, value: str) -> str:
        if not value:
            raise ValueError("Matcher pattern must not be empty")
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"Invalid matcher pattern {value!r}: {exc}") from exc
        return value

    @property
    def label(self) -> str:
        return self.name or self.pattern

    def finditer(self, text: str) -> Iterable[re.Match[str]]:
        return self._regex.finditer(text)


@dataclass(frozen=True, slots=True)
class PatternMatch:
    kind: MatcherKind
    label: str
    start: int
    end: int
    text: str


class PatternSet(BaseModel):
    """Ordered matcher configuration.

    When several matchers hit the scanned tail, the match ending last wins;
    ties go to the matcher listed first.
    """

    matchers: list[Matcher] = Field(default_factory=list)
    promise_pattern: str = r"<promise>([^<]+)</promise>"
    token_pattern: str = r"(\d+(?:\.\d+)?)\s*([kKmM]?)\s+tokens\b"
    tail_chars: int = Field(default=2000, ge=100)

    def latest_match(
        self,
        text: str,
        *,
        extra: Iterable[Matcher] = (),
        kinds: Iterable[MatcherKind] | None = None,
    ) -> PatternMatch | None:
        tail = strip_ansi(text)[-self.tail_chars :]
        wanted = set(kinds) if kinds is not None else None
        best: PatternMatch | None = None
        for matcher in [*self.matchers, *extra]:
            if wanted is not None and matcher.kind not in wanted:
                continue
            for match in matcher.finditer(tail):
                if best is None or match.end() > best.end:
                    best = PatternMatch(
                        kind=matcher.kind,
                        label=matcher.label,
                        start=match.start(),
                        end=match.end(),
                        text=match.group(0),
                    )
        return best

    def find_promise(self, text: str) -> str | None:
        """Return the phrase of the last ``<promise>`` tag in ``text``."""

        matches = re.findall(self.promise_pattern, strip_ansi(text))
        return matches[-1].strip() if matches else None

    def detect_completion(self, text: str) -> str | None:
        """Return a completion phrase, ``"auto-detected"`` for indicators, or None."""

        phrase = self.find_promise(text)
        if phrase:
            return phrase
        if self.latest_match(text, kinds=[MatcherKind.COMPLETION]) is not None:
            return "auto-detected"
        return None

    def parse_tokens(self, text: str) -> int | None:
        """Return the most recent token count reported in ``text``."""

        matches = re.findall(self.token_pattern, strip_ansi(text)[-self.tail_chars :])
        if not matches:
            return None
        number, suffix = matches[-1]
        multiplier = {"k": 1_000, "m": 1_000_000}.get(suffix.lower(), 1)
        return int(float(number) * multiplier)


def completion_phrase_matcher(phrase: str) -> Matcher:
    """Matcher for a task-specific completion phrase, bare or in promise tags."""

    return Matcher(
        kind=MatcherKind.COMPLETION,
        pattern=re.escape(phrase),
        name=f"phrase:{phrase}",
        ignore_case=False,
    )


DEFAULT_PATTERNS = PatternSet(
    matchers=[
        Matcher(kind=MatcherKind.COMPLETION, pattern=r"<promise>[^<]+</promise>", name="promise_tag"),
        Matcher(kind=MatcherKind.COMPLETION, pattern=r"Task completed successfully"),
        Matcher(kind=MatcherKind.COMPLETION, pattern=r"All tasks done"),
        Matcher(kind=MatcherKind.COMPLETION, pattern="✓ Complete", name="check_complete"),
        Matcher(
            kind=MatcherKind.COMPLETION,
            pattern=r"\b[A-Z][a-z]+ed for (?:\d+h\s*)?(?:\d+m\s*)?\d+s\b",
            name="worked_for",
            ignore_case=False,
        ),
        Matcher(kind=MatcherKind.PLAN_PROMPT, pattern=r"Would you like to proceed\?", name="plan_proceed"),
        Matcher(kind=MatcherKind.PLAN_PROMPT, pattern=r"Yes, and auto-accept edits", name="plan_accept_option"),
        Matcher(kind=MatcherKind.WORKING, pattern=r"esc to interrupt", name="esc_to_interrupt"),
        Matcher(kind=MatcherKind.EXIT_SIGNAL, pattern=r"EXIT_SIGNAL:\s*true", name="exit_signal"),
    ]
)


__all__ = [
    "DEFAULT_PATTERNS",
    "Matcher",
    "MatcherKind",
    "PatternMatch",
    "PatternSet",
    "completion_phrase_matcher",
    "strip_ansi",
]
