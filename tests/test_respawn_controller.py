from __future__ import annotations

import asyncio

import pytest

from ralph_fleet.agent import EventChannel, WorkerEventKind
from ralph_fleet.errors import StuckStateError, VerifierUnavailable, WorkerNotRunningError
from ralph_fleet.metrics import BreakerState, CycleMetrics, CycleOutcome, MetricsAggregator
from ralph_fleet.respawn import (
    ControllerState,
    ManualScheduler,
    RespawnConfig,
    RespawnController,
    StaticVerifier,
    Verdict,
)
from ralph_fleet.respawn.config import DEFAULT_VERIFIER_MODEL

UPDATE = "update all the docs and CLAUDE.md"


class FakeWorker:
    def __init__(self, worker_id: str = "sess-1") -> None:
        self.id = worker_id
        self.events = EventChannel(worker_id)
        self.output_buffer = ""
        self.inputs: list[str] = []
        self.keystrokes: list[str] = []
        self.fail_writes = False

    def emit(self, text: str) -> None:
        self.output_buffer += text
        self.events.publish(WorkerEventKind.OUTPUT, text)

    def write_input(self, text: str) -> None:
        if self.fail_writes:
            raise WorkerNotRunningError(f"Worker {self.id} is not running")
        self.inputs.append(text)

    def write_keystroke(self, keys: str) -> None:
        self.keystrokes.append(keys)


class Harness:
    def __init__(self, *, team=None, idle_verifier=None, plan_verifier=None, **overrides) -> None:
        self.scheduler = ManualScheduler()
        self.worker = FakeWorker()
        self.metrics = MetricsAggregator(clock=self.scheduler.now)
        self.records: list[CycleMetrics] = []
        self.blocked: list[tuple[str, str]] = []
        self.controller = RespawnController(
            self.worker,
            RespawnConfig(**overrides),
            scheduler=self.scheduler,
            idle_verifier=idle_verifier,
            plan_verifier=plan_verifier,
            team=team,
            metrics=self.metrics,
            wall_clock=self.scheduler.now,
        )
        self.controller.on_cycle(self.records.append)
        self.controller.on_blocked(lambda session_id, reason: self.blocked.append((session_id, reason)))
        self.controller.start()

    @property
    def outcomes(self) -> list[CycleOutcome]:
        return [record.outcome for record in self.records]


def test_completion_recovers_once_after_confirm_delay() -> None:
    h = Harness(idle_timeout_ms=1000, completion_confirm_ms=500, inter_step_delay_ms=0)
    h.worker.emit("Task completed successfully\n> ")

    h.scheduler.advance(1000)
    assert h.controller.state is ControllerState.CONFIRMING

    h.scheduler.advance(499)
    assert h.records == []
    assert h.worker.inputs == []

    h.scheduler.advance(1)
    assert h.outcomes == [CycleOutcome.SUCCESS]
    record = h.records[0]
    assert record.cycle_id == "sess-1:1"
    assert record.idle_reason == "completion_message"
    assert record.steps_completed == ("clear", "init", "update")
    assert record.completion_confirm_ms_used == 500
    assert record.idle_detection_ms == 1500
    assert record.duration_ms == 500
    assert h.worker.inputs == ["/clear", "/init", UPDATE]
    assert h.controller.state is ControllerState.WORKING
    assert h.metrics.cycles("sess-1") == [record]


def test_inter_step_delay_spaces_recovery_inputs() -> None:
    h = Harness(idle_timeout_ms=1000, completion_confirm_ms=500, inter_step_delay_ms=200)
    h.worker.emit("All tasks done")

    h.scheduler.advance(1500)
    assert h.worker.inputs == ["/clear"]
    assert h.controller.state is ControllerState.RECOVERING

    h.scheduler.advance(200)
    assert h.worker.inputs == ["/clear", "/init"]

    h.scheduler.advance(200)
    assert h.worker.inputs == ["/clear", "/init", UPDATE]
    assert h.records[0].duration_ms == 900


def test_output_during_confirming_abandons_cycle() -> None:
    h = Harness(idle_timeout_ms=1000, completion_confirm_ms=500, inter_step_delay_ms=0)
    h.worker.emit("Task completed successfully")
    h.scheduler.advance(1200)
    assert h.controller.state is ControllerState.CONFIRMING

    h.worker.emit("actually, one more thing")

    assert h.controller.state is ControllerState.WORKING
    h.scheduler.advance(400)
    assert h.worker.inputs == []
    assert h.records == []
    assert list(h.controller.timing.interrupted_confirm_ms) == [200]


def test_output_during_watching_returns_to_working() -> None:
    h = Harness(idle_timeout_ms=1000, no_output_timeout_ms=2000, inter_step_delay_ms=0)
    h.scheduler.advance(1000)
    assert h.controller.state is ControllerState.WATCHING

    h.scheduler.advance(1000)
    h.worker.emit("compiling...")
    assert h.controller.state is ControllerState.WORKING

    h.scheduler.advance(1500)
    assert h.controller.state is ControllerState.WATCHING
    assert h.worker.inputs == []


def test_plan_prompt_is_accepted_after_delay() -> None:
    h = Harness(idle_timeout_ms=1000, auto_accept_delay_ms=500)
    h.worker.emit("Here is my plan.\nWould you like to proceed?\n 1. Yes")

    h.scheduler.advance(1000)
    assert h.controller.state is ControllerState.PLAN_PENDING

    h.scheduler.advance(500)
    assert h.worker.keystrokes == ["\r"]
    assert h.worker.inputs == []
    assert h.records == []
    assert h.controller.state is ControllerState.WORKING


def test_output_during_plan_pending_skips_accept() -> None:
    h = Harness(idle_timeout_ms=1000, auto_accept_delay_ms=500)
    h.worker.emit("Would you like to proceed?")
    h.scheduler.advance(1200)

    h.worker.emit("Proceeding with the plan")
    h.scheduler.advance(300)

    assert h.worker.keystrokes == []
    assert h.controller.state is ControllerState.WORKING


def test_plan_prompt_waits_when_auto_accept_disabled() -> None:
    h = Harness(idle_timeout_ms=1000, auto_accept_prompts=False)
    h.worker.emit("Would you like to proceed?")

    h.scheduler.advance(120_000)

    assert h.worker.keystrokes == []
    assert h.worker.inputs == []
    assert h.controller.state is ControllerState.WATCHING


def test_circuit_breaker_blocks_after_unproductive_recoveries() -> None:
    h = Harness(idle_timeout_ms=1000, no_output_timeout_ms=2000, inter_step_delay_ms=0)

    h.scheduler.advance_to(3000)
    assert h.outcomes == [CycleOutcome.SUCCESS]
    assert h.records[0].idle_reason == "no_output_timeout"

    h.scheduler.advance_to(6000)
    assert h.outcomes == [CycleOutcome.SUCCESS] * 2
    assert h.controller.breaker_state is BreakerState.CLOSED

    h.scheduler.advance_to(9000)
    assert h.outcomes[-1] is CycleOutcome.STUCK_RECOVERY
    assert h.controller.breaker_state is BreakerState.HALF_OPEN
    assert h.records[-1].steps_completed[0] == "clear"

    h.scheduler.advance_to(12000)
    assert h.outcomes[-1] is CycleOutcome.BLOCKED
    assert h.controller.breaker_state is BreakerState.OPEN
    assert h.controller.state is ControllerState.BLOCKED
    assert h.blocked == [("sess-1", "3 consecutive recoveries produced no activity")]
    assert h.worker.inputs.count(UPDATE) == 3

    h.scheduler.advance(100_000)
    assert h.worker.inputs.count(UPDATE) == 3
    assert len(h.records) == 4
    with pytest.raises(StuckStateError):
        h.controller.trigger_now()

    h.controller.reset_circuit_breaker()
    assert h.controller.breaker_state is BreakerState.CLOSED
    assert h.controller.state is ControllerState.WORKING
    assert h.controller.consecutive_unproductive == 0


def test_late_activity_after_recovery_counts_toward_breaker() -> None:
    h = Harness(idle_timeout_ms=1000, no_output_timeout_ms=5000, inter_step_delay_ms=0)

    for cycle in range(3):
        h.scheduler.advance_to(6000 + cycle * 10_000)
        assert len(h.records) == cycle + 1
        h.scheduler.advance(4000)
        h.worker.emit("Reading CLAUDE.md...")
        assert h.controller.consecutive_unproductive == cycle + 1

    assert h.outcomes == [CycleOutcome.SUCCESS, CycleOutcome.SUCCESS, CycleOutcome.STUCK_RECOVERY]
    assert h.controller.breaker_state is BreakerState.HALF_OPEN

    h.scheduler.advance_to(36_000)
    assert h.outcomes[-1] is CycleOutcome.BLOCKED
    assert h.controller.breaker_state is BreakerState.OPEN
    assert h.controller.state is ControllerState.BLOCKED
    assert h.blocked == [("sess-1", "3 consecutive recoveries produced no activity")]


def test_activity_after_recovery_closes_half_open_breaker() -> None:
    h = Harness(idle_timeout_ms=1000, no_output_timeout_ms=2000, inter_step_delay_ms=0)
    h.scheduler.advance_to(9000)
    assert h.controller.breaker_state is BreakerState.HALF_OPEN

    h.scheduler.advance(500)
    h.worker.emit("Reading CLAUDE.md...")

    assert h.controller.breaker_state is BreakerState.CLOSED
    assert h.controller.consecutive_unproductive == 0


def test_low_context_skips_clear() -> None:
    h = Harness(
        idle_timeout_ms=1000,
        completion_confirm_ms=500,
        inter_step_delay_ms=0,
        skip_clear_when_low_context=True,
    )
    h.worker.emit("Context: 12k tokens\nTask completed successfully")

    h.scheduler.advance(1500)

    assert h.worker.inputs == ["/init", UPDATE]
    assert h.records[0].clear_skipped is True
    assert h.records[0].token_count_at_start == 12_000


def test_high_context_still_clears() -> None:
    h = Harness(
        idle_timeout_ms=1000,
        completion_confirm_ms=500,
        inter_step_delay_ms=0,
        skip_clear_when_low_context=True,
    )
    h.worker.emit("Context: 150k tokens\nTask completed successfully")

    h.scheduler.advance(1500)

    assert h.worker.inputs[0] == "/clear"
    assert h.records[0].clear_skipped is False


def test_kickstart_sent_when_init_produces_no_output() -> None:
    h = Harness(
        idle_timeout_ms=1000,
        no_output_timeout_ms=2000,
        inter_step_delay_ms=0,
        kickstart_prompt="keep going",
    )
    h.scheduler.advance_to(3000)
    assert h.worker.inputs[-1] == UPDATE

    h.scheduler.advance_to(4999)
    assert "keep going" not in h.worker.inputs

    h.scheduler.advance_to(5000)
    assert h.worker.inputs[-1] == "keep going"


def test_kickstart_cancelled_by_activity() -> None:
    h = Harness(
        idle_timeout_ms=1000,
        no_output_timeout_ms=2000,
        inter_step_delay_ms=0,
        kickstart_prompt="keep going",
    )
    h.scheduler.advance_to(3000)
    h.scheduler.advance_to(4500)
    h.worker.emit("Analyzing repository")

    h.scheduler.advance_to(5500)

    assert "keep going" not in h.worker.inputs


def test_stop_cancels_in_flight_cycle() -> None:
    h = Harness(idle_timeout_ms=1000, completion_confirm_ms=500)
    h.worker.emit("Task completed successfully")
    h.scheduler.advance(1200)

    h.controller.stop()

    assert h.outcomes == [CycleOutcome.CANCELLED]
    assert h.controller.state is ControllerState.STOPPED
    assert h.scheduler.pending == 0
    assert h.worker.events.subscriber_count == 0

    h.scheduler.advance(100_000)
    assert h.worker.inputs == []
    h.controller.stop()
    assert len(h.records) == 1


def test_exit_event_stops_controller() -> None:
    h = Harness(idle_timeout_ms=1000)
    h.worker.events.publish(WorkerEventKind.EXIT, 0)

    assert h.controller.state is ControllerState.STOPPED
    assert h.scheduler.pending == 0
    assert h.records == []


def test_exit_signal_halts_until_new_output() -> None:
    h = Harness(idle_timeout_ms=1000, no_output_timeout_ms=2000, inter_step_delay_ms=0)
    h.worker.emit("All work finished.\nEXIT_SIGNAL: true\n")

    h.scheduler.advance_to(3000)
    assert h.outcomes == [CycleOutcome.BLOCKED]
    assert h.records[0].error_message == "agent reported exit signal"
    assert h.worker.inputs == []
    assert h.controller.state is ControllerState.WORKING

    h.scheduler.advance(100_000)
    assert len(h.records) == 1

    h.worker.emit("new instructions arrived")
    h.scheduler.advance(3000)
    assert h.outcomes == [CycleOutcome.BLOCKED, CycleOutcome.SUCCESS]
    assert h.worker.inputs[-1] == UPDATE


def test_active_teammates_suppress_recovery() -> None:
    class Team:
        def has_active_teammates(self, session_id: str) -> bool:
            return session_id == "sess-1"

    h = Harness(team=Team(), idle_timeout_ms=1000, no_output_timeout_ms=2000)
    h.worker.emit("Task completed successfully")

    h.scheduler.advance(60_000)

    assert h.worker.inputs == []
    assert h.records == []
    assert h.controller.state is ControllerState.WORKING


def test_trigger_now_runs_manual_recovery() -> None:
    h = Harness(inter_step_delay_ms=0, send_clear=False)
    h.controller.trigger_now()

    assert h.worker.inputs == ["/init", UPDATE]
    assert h.records[0].idle_reason == "manual"
    assert h.records[0].outcome is CycleOutcome.SUCCESS


def test_trigger_now_requires_running_controller() -> None:
    h = Harness()
    h.controller.stop()

    with pytest.raises(WorkerNotRunningError):
        h.controller.trigger_now()


def test_write_failure_records_error() -> None:
    h = Harness(inter_step_delay_ms=0)
    h.worker.fail_writes = True

    h.controller.trigger_now()

    assert h.outcomes == [CycleOutcome.ERROR]
    assert "not running" in h.records[0].error_message
    assert h.controller.state is ControllerState.WORKING


def test_untracked_cycles_skip_aggregator() -> None:
    h = Harness(inter_step_delay_ms=0, track_cycle_metrics=False)
    h.controller.trigger_now()

    assert len(h.records) == 1
    assert h.metrics.cycles("sess-1") == []


def test_verifier_working_verdict_abandons_cycle() -> None:
    verifier = StaticVerifier([Verdict.WORKING])
    h = Harness(
        idle_verifier=verifier,
        idle_timeout_ms=1000,
        completion_confirm_ms=500,
        inter_step_delay_ms=0,
        ai_idle_check_enabled=True,
    )

    async def scenario() -> None:
        h.worker.emit("Task completed successfully")
        h.scheduler.advance(1500)
        assert h.controller.state is ControllerState.VERIFYING
        for _ in range(10):
            await asyncio.sleep(0)

    asyncio.run(scenario())

    assert h.controller.state is ControllerState.WORKING
    assert h.records == []
    assert h.worker.inputs == []
    assert len(verifier.calls) == 1
    text, model, timeout_s = verifier.calls[0]
    assert "Task completed successfully" in text
    assert model == DEFAULT_VERIFIER_MODEL
    assert timeout_s == 90
    assert h.metrics.health("sess-1").components["ai_checker"] == 100


def test_verifier_failure_falls_back_to_heuristic() -> None:
    verifier = StaticVerifier([VerifierUnavailable("timed out")])
    h = Harness(
        idle_verifier=verifier,
        idle_timeout_ms=1000,
        completion_confirm_ms=500,
        inter_step_delay_ms=0,
        ai_idle_check_enabled=True,
    )

    async def scenario() -> None:
        h.worker.emit("Task completed successfully")
        h.scheduler.advance(1500)
        for _ in range(10):
            await asyncio.sleep(0)

    asyncio.run(scenario())

    assert h.outcomes == [CycleOutcome.SUCCESS]
    assert h.worker.inputs[-1] == UPDATE
    assert h.metrics.health("sess-1").components["ai_checker"] == 0


def test_plan_verifier_not_plan_mode_skips_accept() -> None:
    verifier = StaticVerifier([Verdict.NOT_PLAN_MODE])
    h = Harness(
        plan_verifier=verifier,
        idle_timeout_ms=1000,
        auto_accept_delay_ms=500,
        ai_plan_check_enabled=True,
    )

    async def scenario() -> None:
        h.worker.emit("Would you like to proceed?")
        h.scheduler.advance(1000)
        for _ in range(10):
            await asyncio.sleep(0)
        h.scheduler.advance(1000)

    asyncio.run(scenario())

    assert h.worker.keystrokes == []
    assert h.controller.state is ControllerState.WATCHING


def test_verifier_without_event_loop_uses_heuristic() -> None:
    verifier = StaticVerifier([Verdict.WORKING])
    h = Harness(
        idle_verifier=verifier,
        idle_timeout_ms=1000,
        completion_confirm_ms=500,
        inter_step_delay_ms=0,
        ai_idle_check_enabled=True,
    )
    h.worker.emit("Task completed successfully")

    h.scheduler.advance(1500)

    assert verifier.calls == []
    assert h.outcomes == [CycleOutcome.SUCCESS]


def test_adaptive_delay_stays_within_bounds() -> None:
    h = Harness(
        adaptive_timing_enabled=True,
        completion_confirm_ms=1000,
        adaptive_min_confirm_ms=2000,
        adaptive_max_confirm_ms=4000,
    )
    assert h.controller.confirm_delay_ms == 2000

    for _ in range(5):
        h.controller.timing.record_cycle(100_000, 1000)
    assert h.controller.confirm_delay_ms == 4000


def test_config_validation() -> None:
    with pytest.raises(ValueError):
        RespawnConfig(adaptive_min_confirm_ms=10, adaptive_max_confirm_ms=5)
    with pytest.raises(ValueError):
        RespawnConfig(circuit_breaker_threshold=2, circuit_breaker_warn_threshold=3)
    with pytest.raises(ValueError):
        RespawnConfig(unknown_field=True)
    assert RespawnConfig(kickstart_prompt="  ").kickstart_prompt is None
    assert RespawnConfig(idle_timeout_ms=2000).stuck_bound_ms == 6000
