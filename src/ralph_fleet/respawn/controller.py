"""Per-worker idle detection and recovery state machine."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ..agent import Worker, WorkerEvent, WorkerEventKind
from ..errors import FleetError, StuckStateError, WorkerNotRunningError
from ..metrics import BreakerState, CycleMetrics, CycleOutcome, MetricsAggregator
from ..patterns import DEFAULT_PATTERNS, Matcher, MatcherKind, PatternSet, completion_phrase_matcher
from .config import RespawnConfig
from .scheduler import Scheduler, TimerSlot
from .signals import IdleSignal, Signal, TeamPresence
from .timing import TimingHistory
from .verifier import IdleVerifier, PlanVerifier, Verdict, VerifierResult

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    WORKING = "working"
    WATCHING = "watching"
    CONFIRMING = "confirming"
    VERIFYING = "verifying"
    PLAN_PENDING = "plan_pending"
    CONFIRMED_IDLE = "confirmed_idle"
    RECOVERING = "recovering"
    BLOCKED = "blocked"
    STOPPED = "stopped"


_CYCLE_STATES = {
    ControllerState.CONFIRMING,
    ControllerState.VERIFYING,
    ControllerState.PLAN_PENDING,
    ControllerState.CONFIRMED_IDLE,
    ControllerState.RECOVERING,
}


def _epoch_ms() -> float:
    return time.time() * 1000.0


@dataclass(slots=True)
class _CycleDraft:
    started_at: float
    wall_started_at: float
    activity_at: float
    idle_reason: str
    confirm_ms_used: float = 0.0
    detected_at: float | None = None
    steps: list[str] = field(default_factory=list)
    clear_skipped: bool = False
    token_start: int | None = None
    outcome: CycleOutcome = CycleOutcome.SUCCESS


BlockedListener = Callable[[str, str], None]
CycleListener = Callable[[CycleMetrics], None]


class RespawnController:
    """Watches one worker's output and re-engages it when it goes idle.

    All timing goes through a single :class:`TimerSlot`. The slot always
    holds the earliest of two deadlines: the current state's own deadline and
    the pending kickstart, if any. Every state transition replaces the state
    deadline, so a timer armed for a state that has since been left can never
    fire into the new one.

    Output is read from the worker's event channel only. The controller keeps
    its own tail of text received since the last recovery so that a
    completion message answered by a recovery is never matched twice.
    """

    def __init__(
        self,
        worker: Worker,
        config: RespawnConfig | None = None,
        *,
        scheduler: Scheduler,
        idle_signal: IdleSignal | None = None,
        idle_verifier: IdleVerifier | None = None,
        plan_verifier: PlanVerifier | None = None,
        team: TeamPresence | None = None,
        metrics: MetricsAggregator | None = None,
        patterns: PatternSet = DEFAULT_PATTERNS,
        wall_clock: Callable[[], float] = _epoch_ms,
    ) -> None:
        self.worker = worker
        self.config = config or RespawnConfig()
        self._scheduler = scheduler
        self._patterns = patterns
        self._signal = idle_signal or IdleSignal(patterns)
        self._idle_verifier = idle_verifier
        self._plan_verifier = plan_verifier
        self._team = team
        self._metrics = metrics
        self._wall_clock = wall_clock

        self._slot = TimerSlot(scheduler)
        self._state = ControllerState.STOPPED
        self._state_deadline: float | None = None
        self._unsubscribe: Callable[[], None] | None = None

        self._tail = ""
        self._tail_limit = max(
            patterns.tail_chars,
            self.config.ai_idle_check_max_context,
            self.config.ai_plan_check_max_context,
        )
        self._extra_matchers: tuple[Matcher, ...] = ()

        self._last_activity_at = 0.0
        self._watching_since = 0.0
        self._confirming_since = 0.0
        self._draft: _CycleDraft | None = None
        self._recovery_plan: deque[tuple[str, str]] = deque()
        self._halted_by_exit_signal = False

        self._init_sent_at: float | None = None
        self._activity_since_init = False
        self._kickstart_due: float | None = None

        self._idle_cooldown_until = 0.0
        self._plan_cooldown_until = 0.0
        self._verify_task: asyncio.Task | None = None
        self._verify_generation = 0

        self._breaker = BreakerState.CLOSED
        self._consecutive_unproductive = 0
        self._awaiting_activity_since: float | None = None

        self._cycle_count = 0
        self._last_cycle: CycleMetrics | None = None
        self.timing = TimingHistory()
        self._blocked_listeners: list[BlockedListener] = []
        self._cycle_listeners: list[CycleListener] = []

    # public surface ----------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.worker.id

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def breaker_state(self) -> BreakerState:
        return self._breaker

    @property
    def consecutive_unproductive(self) -> int:
        return self._consecutive_unproductive

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def last_cycle(self) -> CycleMetrics | None:
        return self._last_cycle

    @property
    def is_blocked(self) -> bool:
        return self._state is ControllerState.BLOCKED

    @property
    def is_running(self) -> bool:
        return self._state is not ControllerState.STOPPED

    @property
    def cycle_in_flight(self) -> bool:
        return self._state in _CYCLE_STATES

    @property
    def confirm_delay_ms(self) -> float:
        """Confirmation delay the next CONFIRMING state will use."""

        config = self.config
        if not config.adaptive_timing_enabled:
            return float(config.completion_confirm_ms)
        return self.timing.confirm_delay(
            config.completion_confirm_ms,
            config.adaptive_min_confirm_ms,
            config.adaptive_max_confirm_ms,
        )

    def on_blocked(self, listener: BlockedListener) -> None:
        """Call ``listener(session_id, reason)`` when the circuit breaker opens."""

        self._blocked_listeners.append(listener)

    def on_cycle(self, listener: CycleListener) -> None:
        self._cycle_listeners.append(listener)

    def set_completion_phrase(self, phrase: str | None) -> None:
        self._extra_matchers = (completion_phrase_matcher(phrase),) if phrase else ()

    def update_config(self, config: RespawnConfig) -> None:
        self.config = config
        self._tail_limit = max(
            self._patterns.tail_chars,
            config.ai_idle_check_max_context,
            config.ai_plan_check_max_context,
        )
        if self._state is ControllerState.WORKING:
            self._schedule(self._last_activity_at + config.idle_timeout_ms)

    def start(self) -> None:
        if self._state is not ControllerState.STOPPED:
            return
        self._unsubscribe = self.worker.events.subscribe(self._on_event)
        self._tail = self.worker.output_buffer[-self._tail_limit :]
        self._last_activity_at = self._now()
        self._state = ControllerState.WORKING
        self._schedule(self._last_activity_at + self.config.idle_timeout_ms)
        logger.info("Respawn enabled", extra={"session_id": self.session_id})

    def stop(self) -> None:
        """Cancel every timer and verifier call; record a cancelled in-flight cycle."""

        if self._state is ControllerState.STOPPED:
            return
        self._slot.cancel()
        self._state_deadline = None
        self._kickstart_due = None
        self._cancel_verification()
        self._recovery_plan.clear()
        if self._draft is not None:
            self._finish_cycle(CycleOutcome.CANCELLED)
        self._state = ControllerState.STOPPED
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        logger.info("Respawn disabled", extra={"session_id": self.session_id})

    def trigger_now(self) -> None:
        """Run a recovery immediately, bypassing idle detection."""

        if self._breaker is BreakerState.OPEN:
            raise StuckStateError(f"Session {self.session_id} is blocked by the circuit breaker")
        if self._state is ControllerState.STOPPED:
            raise WorkerNotRunningError(f"Respawn is not enabled for session {self.session_id}")
        if self._state in (ControllerState.CONFIRMED_IDLE, ControllerState.RECOVERING):
            return
        self._cancel_verification()
        if self._draft is None:
            self._open_cycle("manual")
        self._commit_idle()

    def reset_circuit_breaker(self) -> None:
        self._breaker = BreakerState.CLOSED
        self._consecutive_unproductive = 0
        self._awaiting_activity_since = None
        logger.info("Circuit breaker reset", extra={"session_id": self.session_id})
        if self._state is ControllerState.BLOCKED:
            self._last_activity_at = self._now()
            self._to_working()

    # events ------------------------------------------------------------------------

    def _now(self) -> float:
        return self._scheduler.now()

    def _on_event(self, event: WorkerEvent) -> None:
        if event.kind is WorkerEventKind.EXIT:
            self.stop()
        elif event.kind in (WorkerEventKind.OUTPUT, WorkerEventKind.ERROR):
            if event.kind is WorkerEventKind.OUTPUT and isinstance(event.data, str):
                self._tail = (self._tail + event.data)[-self._tail_limit :]
            self._on_activity()

    def _on_activity(self) -> None:
        now = self._now()
        self._last_activity_at = now
        self._halted_by_exit_signal = False

        if self._awaiting_activity_since is not None:
            if now - self._awaiting_activity_since <= self.config.stuck_bound_ms:
                self._consecutive_unproductive = 0
                if self._breaker is BreakerState.HALF_OPEN:
                    self._breaker = BreakerState.CLOSED
            else:
                # Too late to credit the recovery; the open threshold is applied at the next commit.
                self._consecutive_unproductive += 1
                if (
                    self._breaker is BreakerState.CLOSED
                    and self._consecutive_unproductive >= self.config.circuit_breaker_warn_threshold
                ):
                    self._breaker = BreakerState.HALF_OPEN
            self._awaiting_activity_since = None

        if self._init_sent_at is not None:
            self._activity_since_init = True
            self._kickstart_due = None

        state = self._state
        if state in (ControllerState.STOPPED, ControllerState.BLOCKED, ControllerState.RECOVERING):
            return
        if state is ControllerState.WORKING:
            if self._state_deadline is None:
                self._schedule(now + self.config.idle_timeout_ms)
            return
        if state is ControllerState.CONFIRMING:
            self.timing.record_interrupted_confirm(now - self._confirming_since)
        if state is ControllerState.VERIFYING:
            self._cancel_verification()
        if self._draft is not None:
            logger.debug(
                "Would-be cycle interrupted by output",
                extra={"session_id": self.session_id, "state": state.value},
            )
            self._draft = None
        self._to_working()

    # timers ------------------------------------------------------------------------

    def _schedule(self, deadline: float | None) -> None:
        self._state_deadline = deadline
        self._rearm()

    def _rearm(self) -> None:
        candidates = [d for d in (self._state_deadline, self._kickstart_due) if d is not None]
        if not candidates:
            self._slot.cancel()
            return
        due = min(candidates)
        self._slot.arm(due - self._now(), self._on_timer, label=self._state.value)

    def _on_timer(self) -> None:
        now = self._now()
        if self._kickstart_due is not None and now >= self._kickstart_due:
            self._kickstart_due = None
            self._send_kickstart()
        if self._state_deadline is not None and now >= self._state_deadline:
            self._state_deadline = None
            self._on_state_deadline()
        else:
            self._rearm()

    def _on_state_deadline(self) -> None:
        state = self._state
        if state is ControllerState.WORKING:
            if self._halted_by_exit_signal:
                self._rearm()
                return
            silence = self._now() - self._last_activity_at
            if silence >= self.config.idle_timeout_ms:
                self._enter_watching()
            else:
                self._schedule(self._last_activity_at + self.config.idle_timeout_ms)
        elif state is ControllerState.WATCHING:
            self._evaluate()
        elif state is ControllerState.CONFIRMING:
            self._before_commit()
        elif state is ControllerState.PLAN_PENDING:
            self._accept_plan()
        elif state is ControllerState.RECOVERING:
            self._send_steps()
        else:
            self._rearm()

    # detection ---------------------------------------------------------------------

    def _to_working(self, poll_ms: float | None = None) -> None:
        self._state = ControllerState.WORKING
        if poll_ms is not None:
            self._schedule(self._now() + poll_ms)
        else:
            self._schedule(self._last_activity_at + self.config.idle_timeout_ms)

    def _enter_watching(self) -> None:
        self._state = ControllerState.WATCHING
        self._watching_since = self._now()
        logger.debug("Watching for idle", extra={"session_id": self.session_id})
        self._evaluate()

    def _has_teammates(self) -> bool:
        if self._team is None:
            return False
        try:
            return bool(self._team.has_active_teammates(self.session_id))
        except Exception as exc:
            logger.warning(
                "Team presence check failed",
                extra={"session_id": self.session_id, "error": str(exc)},
            )
            return False

    def _evaluate(self) -> None:
        now = self._now()
        config = self.config
        reading = self._signal.evaluate(
            self._tail,
            silence_ms=now - self._last_activity_at,
            watching_ms=now - self._watching_since,
            idle_timeout_ms=config.idle_timeout_ms,
            no_output_timeout_ms=config.no_output_timeout_ms,
            has_active_teammates=self._has_teammates(),
            extra_matchers=self._extra_matchers,
        )
        fallback_at = self._watching_since + config.no_output_timeout_ms

        if reading.signal is Signal.WORKING and reading.reason == "teammates_active":
            self._to_working(poll_ms=config.idle_timeout_ms)
        elif reading.signal is Signal.WORKING and reading.reason == "recent_output":
            self._to_working()
        elif reading.signal is Signal.PLAN_PROMPT:
            if config.auto_accept_prompts:
                self._plan_detected()
            else:
                # Waits for the operator; any output returns to WORKING.
                self._schedule(None)
        elif reading.signal is Signal.LIKELY_IDLE and reading.reason == "completion_message":
            self._enter_confirming()
        elif reading.signal is Signal.CONFIRMED_IDLE:
            self._open_cycle(reading.reason)
            self._before_commit()
        else:
            self._schedule(fallback_at)

    def _enter_confirming(self) -> None:
        delay = self.confirm_delay_ms
        self._state = ControllerState.CONFIRMING
        self._confirming_since = self._now()
        self._open_cycle("completion_message", confirm_ms=delay)
        logger.debug(
            "Completion matched; confirming",
            extra={"session_id": self.session_id, "confirm_ms": delay},
        )
        self._schedule(self._confirming_since + delay)

    def _open_cycle(self, reason: str, *, confirm_ms: float = 0.0) -> None:
        self._draft = _CycleDraft(
            started_at=self._now(),
            wall_started_at=self._wall_clock(),
            activity_at=self._last_activity_at,
            idle_reason=reason,
            confirm_ms_used=confirm_ms,
            token_start=self._patterns.parse_tokens(self._tail),
        )

    # verification ------------------------------------------------------------------

    def _before_commit(self) -> None:
        config = self.config
        if (
            config.ai_idle_check_enabled
            and self._idle_verifier is not None
            and self._now() >= self._idle_cooldown_until
        ):
            self._start_verification("idle")
        else:
            self._commit_idle()

    def _plan_detected(self) -> None:
        config = self.config
        if (
            config.ai_plan_check_enabled
            and self._plan_verifier is not None
            and self._now() >= self._plan_cooldown_until
        ):
            self._start_verification("plan")
        else:
            self._enter_plan_pending()

    def _start_verification(self, kind: str) -> None:
        config = self.config
        if kind == "idle":
            verifier = self._idle_verifier
            model = config.ai_idle_check_model
            timeout_s = config.ai_idle_check_timeout_ms / 1000
            text = self._tail[-config.ai_idle_check_max_context :]
        else:
            verifier = self._plan_verifier
            model = config.ai_plan_check_model
            timeout_s = config.ai_plan_check_timeout_ms / 1000
            text = self._tail[-config.ai_plan_check_max_context :]
        if verifier is None:
            self._apply_verdict(kind, None)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No event loop for verifier; using heuristic decision",
                extra={"session_id": self.session_id, "verifier": kind},
            )
            self._apply_verdict(kind, None)
            return

        self._state = ControllerState.VERIFYING
        self._schedule(None)
        self._verify_generation += 1
        self._verify_task = loop.create_task(
            self._run_verifier(kind, verifier, text, model, timeout_s, self._verify_generation)
        )

    async def _run_verifier(
        self,
        kind: str,
        verifier: IdleVerifier | PlanVerifier,
        text: str,
        model: str,
        timeout_s: float,
        generation: int,
    ) -> None:
        result: VerifierResult | None
        try:
            result = await asyncio.wait_for(verifier.check(text, model, timeout_s), timeout=timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Verifier unavailable; using heuristic decision",
                extra={"session_id": self.session_id, "verifier": kind, "error": str(exc) or type(exc).__name__},
            )
            result = None

        if generation != self._verify_generation or self._state is not ControllerState.VERIFYING:
            return
        self._verify_task = None
        if self._metrics is not None:
            self._metrics.record_verifier_call(self.session_id, ok=result is not None)
        self._apply_verdict(kind, result)

    def _apply_verdict(self, kind: str, result: VerifierResult | None) -> None:
        now = self._now()
        config = self.config
        if kind == "idle":
            if result is not None and result.verdict is Verdict.WORKING:
                self._idle_cooldown_until = now + config.ai_idle_check_cooldown_ms
                self._draft = None
                self._last_activity_at = now
                logger.info("Verifier reports agent still working", extra={"session_id": self.session_id})
                self._to_working()
            else:
                self._commit_idle()
        else:
            if result is not None and result.verdict is Verdict.NOT_PLAN_MODE:
                self._plan_cooldown_until = now + config.ai_plan_check_cooldown_ms
                self._state = ControllerState.WATCHING
                self._schedule(self._watching_since + config.no_output_timeout_ms)
            else:
                self._enter_plan_pending()

    def _cancel_verification(self) -> None:
        self._verify_generation += 1
        if self._verify_task is not None and not self._verify_task.done():
            self._verify_task.cancel()
        self._verify_task = None

    # plan mode ---------------------------------------------------------------------

    def _enter_plan_pending(self) -> None:
        self._state = ControllerState.PLAN_PENDING
        self._schedule(self._now() + self.config.auto_accept_delay_ms)

    def _accept_plan(self) -> None:
        match = self._patterns.latest_match(
            self._tail,
            kinds=[MatcherKind.COMPLETION, MatcherKind.PLAN_PROMPT, MatcherKind.WORKING],
        )
        if match is not None and match.kind is MatcherKind.PLAN_PROMPT:
            try:
                self.worker.write_keystroke(self.config.accept_keystroke)
            except FleetError as exc:
                logger.warning(
                    "Plan accept failed",
                    extra={"session_id": self.session_id, "error": str(exc)},
                )
            else:
                logger.info("Plan prompt accepted", extra={"session_id": self.session_id})
                self._tail = ""
        self._last_activity_at = self._now()
        self._to_working()

    # recovery ----------------------------------------------------------------------

    def _commit_idle(self) -> None:
        if self._draft is None:
            raise RuntimeError(f"Session {self.session_id} committed idle with no cycle in progress")
        now = self._now()
        config = self.config
        self._state = ControllerState.CONFIRMED_IDLE
        self._draft.detected_at = now

        if self._patterns.latest_match(self._tail, kinds=[MatcherKind.EXIT_SIGNAL]) is not None:
            self._finish_cycle(CycleOutcome.BLOCKED, error_message="agent reported exit signal")
            self._halted_by_exit_signal = True
            self._tail = ""
            self._state = ControllerState.WORKING
            self._schedule(None)
            logger.info("Exit signal seen; recovery skipped", extra={"session_id": self.session_id})
            return

        if self._awaiting_activity_since is not None:
            self._consecutive_unproductive += 1
            self._awaiting_activity_since = None

        force_clear = False
        if self._consecutive_unproductive >= config.circuit_breaker_threshold:
            self._open_breaker()
            return
        if self._consecutive_unproductive >= config.circuit_breaker_warn_threshold:
            self._breaker = BreakerState.HALF_OPEN
            self._draft.outcome = CycleOutcome.STUCK_RECOVERY
            force_clear = True
            logger.warning(
                "Recoveries are not producing activity",
                extra={"session_id": self.session_id, "consecutive": self._consecutive_unproductive},
            )

        self._begin_recovery(force_clear)

    def _open_breaker(self) -> None:
        reason = f"{self._consecutive_unproductive} consecutive recoveries produced no activity"
        self._breaker = BreakerState.OPEN
        self._finish_cycle(CycleOutcome.BLOCKED, error_message=reason)
        self._state = ControllerState.BLOCKED
        self._kickstart_due = None
        self._schedule(None)
        logger.warning("Circuit breaker open; session blocked", extra={"session_id": self.session_id, "reason": reason})
        for listener in list(self._blocked_listeners):
            try:
                listener(self.session_id, reason)
            except Exception:
                logger.exception("Blocked listener failed", extra={"session_id": self.session_id})

    def _begin_recovery(self, force_clear: bool) -> None:
        if self._draft is None:
            raise RuntimeError(f"Session {self.session_id} began recovery with no cycle in progress")
        config = self.config
        clear_wanted = config.send_clear or force_clear
        skip_clear = False
        if clear_wanted and not force_clear and config.skip_clear_when_low_context:
            tokens = self._patterns.parse_tokens(self._tail)
            if tokens is not None:
                used_percent = 100.0 * tokens / config.context_window_tokens
                skip_clear = used_percent < config.skip_clear_threshold_percent
        self._draft.clear_skipped = skip_clear

        plan: list[tuple[str, str]] = []
        if clear_wanted and not skip_clear:
            plan.append(("clear", config.clear_command))
        if config.send_init:
            plan.append(("init", config.init_command))
        plan.append(("update", config.update_prompt))

        self._recovery_plan = deque(plan)
        self._init_sent_at = None
        self._activity_since_init = False
        self._kickstart_due = None
        self._state = ControllerState.RECOVERING
        logger.info(
            "Idle confirmed; recovering",
            extra={
                "session_id": self.session_id,
                "reason": self._draft.idle_reason,
                "steps": [step for step, _ in plan],
            },
        )
        self._send_steps()

    def _send_steps(self) -> None:
        draft = self._draft
        if draft is None:
            raise RuntimeError(f"Session {self.session_id} has recovery steps but no cycle in progress")
        delay = self.config.inter_step_delay_ms
        while self._recovery_plan:
            step, text = self._recovery_plan.popleft()
            try:
                self.worker.write_input(text)
            except FleetError as exc:
                self._recovery_plan.clear()
                self._finish_cycle(CycleOutcome.ERROR, error_message=str(exc))
                self._state = ControllerState.WORKING
                self._schedule(None)
                logger.warning(
                    "Recovery step failed",
                    extra={"session_id": self.session_id, "step": step, "error": str(exc)},
                )
                return
            draft.steps.append(step)
            if step == "init":
                self._init_sent_at = self._now()
            if self._recovery_plan and delay > 0:
                self._schedule(self._now() + delay)
                return
        self._complete_recovery()

    def _complete_recovery(self) -> None:
        if self._draft is None:
            raise RuntimeError(f"Session {self.session_id} completed recovery with no cycle in progress")
        outcome = self._draft.outcome
        now = self._now()
        config = self.config
        self._awaiting_activity_since = now
        if config.kickstart_prompt and not self._activity_since_init:
            self._kickstart_due = (self._init_sent_at or now) + config.no_output_timeout_ms
        self._finish_cycle(outcome)
        self._tail = ""
        self._last_activity_at = now
        self._to_working()

    def _send_kickstart(self) -> None:
        prompt = self.config.kickstart_prompt
        if not prompt or self._state not in (ControllerState.WORKING, ControllerState.WATCHING):
            return
        try:
            self.worker.write_input(prompt)
        except FleetError as exc:
            logger.warning("Kickstart failed", extra={"session_id": self.session_id, "error": str(exc)})
            return
        logger.info("Kickstart sent", extra={"session_id": self.session_id})

    def _finish_cycle(self, outcome: CycleOutcome, *, error_message: str | None = None) -> CycleMetrics:
        draft = self._draft
        if draft is None:
            raise RuntimeError(f"Session {self.session_id} has no cycle in progress to finish")
        self._draft = None
        now = self._now()
        detected_at = draft.detected_at if draft.detected_at is not None else now
        idle_detection_ms = max(0.0, detected_at - draft.activity_at)
        duration_ms = max(0.0, now - draft.started_at)

        self._cycle_count += 1
        record = CycleMetrics(
            session_id=self.session_id,
            cycle_number=self._cycle_count,
            started_at=draft.wall_started_at,
            completed_at=self._wall_clock(),
            duration_ms=duration_ms,
            idle_reason=draft.idle_reason,
            idle_detection_ms=idle_detection_ms,
            steps_completed=tuple(draft.steps),
            clear_skipped=draft.clear_skipped,
            outcome=outcome,
            completion_confirm_ms_used=draft.confirm_ms_used,
            error_message=error_message,
            token_count_at_start=draft.token_start,
            token_count_at_end=self._patterns.parse_tokens(self._tail),
        )
        self._last_cycle = record
        if outcome in (CycleOutcome.SUCCESS, CycleOutcome.STUCK_RECOVERY):
            self.timing.record_cycle(idle_detection_ms, duration_ms)
        if self.config.track_cycle_metrics and self._metrics is not None:
            self._metrics.record(record)
        for listener in list(self._cycle_listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("Cycle listener failed", extra={"session_id": self.session_id})
        return record

    def status(self) -> dict:
        return {
            "session_id": self.session_id,
            "state": self._state.value,
            "breaker": self._breaker.value,
            "consecutive_unproductive": self._consecutive_unproductive,
            "cycle_count": self._cycle_count,
            "confirm_delay_ms": self.confirm_delay_ms,
            "timer": self._slot.label,
            "config": self.config.model_dump(),
        }


__all__ = ["ControllerState", "RespawnController"]
