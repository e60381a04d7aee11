from __future__ import annotations

import pytest

from ralph_fleet.patterns import DEFAULT_PATTERNS, PatternSet, completion_phrase_matcher, strip_ansi
from ralph_fleet.respawn import IdleSignal, Signal


def _evaluate(text: str, *, silence_ms: float = 6000, watching_ms: float = 0, **kwargs):
    return IdleSignal().evaluate(
        text,
        silence_ms=silence_ms,
        watching_ms=watching_ms,
        idle_timeout_ms=5000,
        no_output_timeout_ms=30000,
        **kwargs,
    )


def test_recent_output_reads_as_working() -> None:
    reading = _evaluate("Task completed successfully", silence_ms=100)
    assert reading.signal is Signal.WORKING
    assert reading.reason == "recent_output"


def test_teammates_override_everything() -> None:
    reading = _evaluate("Would you like to proceed?", watching_ms=60000, has_active_teammates=True)
    assert reading.signal is Signal.WORKING
    assert reading.reason == "teammates_active"


def test_completion_message_is_likely_idle() -> None:
    reading = _evaluate("...\nTask completed successfully\n> ")
    assert reading.signal is Signal.LIKELY_IDLE
    assert reading.reason == "completion_message"
    assert reading.match is not None and reading.match.text == "Task completed successfully"


def test_latest_match_wins() -> None:
    working_last = _evaluate("All tasks done\nthinking... (esc to interrupt)")
    assert working_last.signal is Signal.WORKING
    assert working_last.reason == "working_indicator"

    done_last = _evaluate("thinking... (esc to interrupt)\nWorked for 2m 13s")
    assert done_last.signal is Signal.LIKELY_IDLE


def test_plan_prompt_detected() -> None:
    reading = _evaluate("Here is the plan.\nWould you like to proceed?\n 1. Yes")
    assert reading.signal is Signal.PLAN_PROMPT


def test_plan_prompt_outranks_no_output_fallback() -> None:
    reading = _evaluate("Would you like to proceed?", watching_ms=30000)
    assert reading.signal is Signal.PLAN_PROMPT


def test_no_output_timeout_confirms_idle() -> None:
    reading = _evaluate("still thinking (esc to interrupt)", watching_ms=30000)
    assert reading.signal is Signal.CONFIRMED_IDLE
    assert reading.reason == "no_output_timeout"


def test_silence_without_markers() -> None:
    reading = _evaluate("some ordinary log line")
    assert reading.signal is Signal.LIKELY_IDLE
    assert reading.reason == "silence"
    assert reading.match is None


def test_exit_signal_flag() -> None:
    reading = _evaluate("EXIT_SIGNAL: true\nAll tasks done")
    assert reading.exit_signal is True


def test_ansi_sequences_are_ignored() -> None:
    text = "\x1b[32mTask completed\x1b[0m successfully"
    assert strip_ansi(text) == "Task completed successfully"
    assert _evaluate("\x1b[1mTask completed successfully\x1b[0m").signal is Signal.LIKELY_IDLE


def test_task_phrase_matcher_is_literal() -> None:
    matcher = completion_phrase_matcher("DONE (1+1)")
    reading = _evaluate("result: DONE (1+1)", extra_matchers=[matcher])
    assert reading.reason == "completion_message"
    assert reading.match.label == "phrase:DONE (1+1)"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Context: 12k tokens", 12_000),
        ("used 1.5M tokens so far", 1_500_000),
        ("842 tokens", 842),
        ("no counts here", None),
    ],
)
def test_parse_tokens(text: str, expected: int | None) -> None:
    assert DEFAULT_PATTERNS.parse_tokens(text) == expected


def test_detect_completion() -> None:
    assert DEFAULT_PATTERNS.detect_completion("<promise>SHIPPED</promise>") == "SHIPPED"
    assert DEFAULT_PATTERNS.detect_completion("✓ Complete") == "auto-detected"
    assert DEFAULT_PATTERNS.detect_completion("nothing yet") is None


def test_invalid_matcher_pattern_rejected() -> None:
    with pytest.raises(ValueError):
        PatternSet.model_validate({"matchers": [{"kind": "working", "pattern": "("}]})
