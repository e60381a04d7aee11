"""Per-session cycle metrics retention, aggregates and health scoring."""

from __future__ import annotations

import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Iterable

from ..agent import EventChannel, WorkerEvent, WorkerEventKind
from ..storage import StateStore
from .models import (
    AggregateMetrics,
    BreakerState,
    CycleMetrics,
    CycleOutcome,
    HealthScore,
    HealthStatus,
)

logger = logging.getLogger(__name__)

HEALTH_WEIGHTS = {
    "cycle_success": 0.30,
    "circuit_breaker": 0.25,
    "iteration_progress": 0.20,
    "ai_checker": 0.10,
    "stuck_recovery": 0.15,
}

DEFAULT_STALL_THRESHOLD_MS = 30 * 60 * 1000


def _epoch_ms() -> float:
    return time.time() * 1000.0


def percentile(values: Iterable[float], fraction: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty input."""

    ordered = sorted(values)
    if not ordered:
        return 0.0
    rank = max(1, math.ceil(fraction * len(ordered)))
    return float(ordered[min(rank, len(ordered)) - 1])


def status_from_score(score: int) -> HealthStatus:
    if score >= 90:
        return HealthStatus.EXCELLENT
    if score >= 70:
        return HealthStatus.GOOD
    if score >= 50:
        return HealthStatus.DEGRADED
    return HealthStatus.CRITICAL


def aggregate(records: Iterable[CycleMetrics]) -> AggregateMetrics:
    records = list(records)
    result = AggregateMetrics(total_cycles=len(records))
    if not records:
        return result
    for record in records:
        if record.outcome is CycleOutcome.SUCCESS:
            result.successful_cycles += 1
        elif record.outcome is CycleOutcome.STUCK_RECOVERY:
            result.stuck_recovery_cycles += 1
        elif record.outcome is CycleOutcome.BLOCKED:
            result.blocked_cycles += 1
        elif record.outcome is CycleOutcome.ERROR:
            result.error_cycles += 1
        else:
            result.cancelled_cycles += 1

    durations = [record.duration_ms for record in records]
    result.avg_cycle_duration_ms = sum(durations) / len(durations)
    result.p90_cycle_duration_ms = percentile(durations, 0.90)
    result.avg_idle_detection_ms = sum(record.idle_detection_ms for record in records) / len(records)
    decided = result.total_cycles - result.cancelled_cycles
    result.success_rate = 100.0 * result.successful_cycles / decided if decided else 100.0
    return result


def compute_health_score(
    records: Iterable[CycleMetrics],
    *,
    breaker_state: BreakerState = BreakerState.CLOSED,
    ms_since_progress: float | None = None,
    stall_threshold_ms: float = DEFAULT_STALL_THRESHOLD_MS,
    verifier_calls: int = 0,
    verifier_errors: int = 0,
    now: float = 0.0,
) -> HealthScore:
    """Compute a 0-100 health score from recent history. 100 = fully healthy."""

    stats = aggregate(records)

    progress = 100.0
    if ms_since_progress is not None and ms_since_progress > stall_threshold_ms:
        # Linear decay to zero at three times the threshold.
        overdue = (ms_since_progress - stall_threshold_ms) / (2 * stall_threshold_ms)
        progress = max(0.0, 100.0 * (1 - overdue))

    stuck = stats.stuck_recovery_cycles + stats.blocked_cycles
    stuck_score = 100.0
    if stats.total_cycles:
        stuck_score = max(0.0, 100.0 - 200.0 * stuck / stats.total_cycles)

    components = {
        "cycle_success": stats.success_rate,
        "circuit_breaker": {
            BreakerState.CLOSED: 100.0,
            BreakerState.HALF_OPEN: 50.0,
            BreakerState.OPEN: 0.0,
        }[breaker_state],
        "iteration_progress": progress,
        "ai_checker": 100.0 - 100.0 * verifier_errors / verifier_calls if verifier_calls else 100.0,
        "stuck_recovery": stuck_score,
    }
    score = round(sum(HEALTH_WEIGHTS[name] * value for name, value in components.items()))
    score = max(0, min(100, score))
    status = status_from_score(score)

    recommendations: list[str] = []
    if breaker_state is BreakerState.OPEN:
        recommendations.append("Circuit breaker is open: inspect the session and reset the breaker to resume recovery")
    elif breaker_state is BreakerState.HALF_OPEN:
        recommendations.append("Recent recoveries produced no activity; the next recovery will force a context clear")
    if components["cycle_success"] < 70:
        recommendations.append("Cycle success rate is low; review the update prompt and idle timeout")
    if components["iteration_progress"] < 100:
        recommendations.append("No task progress recently; check the backlog for stalled dependencies")
    if components["ai_checker"] < 70:
        recommendations.append("AI verifier calls are failing; check the verifier binary or disable AI checks")
    if components["stuck_recovery"] < 70:
        recommendations.append("Frequent stuck recoveries; consider a longer idle timeout or a kickstart prompt")

    summary = f"Health {status.value} ({score}/100) over {stats.total_cycles} cycles"
    return HealthScore(
        score=score,
        status=status,
        components={name: round(value, 1) for name, value in components.items()},
        summary=summary,
        recommendations=recommendations,
        calculated_at=now,
    )


@dataclass(slots=True)
class _VerifierCounts:
    calls: int = 0
    errors: int = 0


class MetricsAggregator:
    """Keeps a bounded window of CycleMetrics per session and scores health."""

    def __init__(
        self,
        store: StateStore | None = None,
        *,
        max_records_per_session: int = 100,
        clock: Callable[[], float] = _epoch_ms,
    ) -> None:
        self._store = store
        self._max_records = max_records_per_session
        self._clock = clock
        self._records: dict[str, deque[CycleMetrics]] = defaultdict(
            lambda: deque(maxlen=self._max_records)
        )
        self._verifier: dict[str, _VerifierCounts] = defaultdict(_VerifierCounts)
        self._last_progress_at: dict[str, float] = {}
        if store is not None:
            self._load(store)

    def _load(self, store: StateStore) -> None:
        try:
            persisted = store.list_cycle_metrics()
        except Exception as exc:
            logger.warning("Cycle metrics load failed", extra={"error": str(exc)})
            return
        for payload in persisted:
            try:
                record = CycleMetrics.from_dict(payload)
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping malformed cycle record", extra={"error": str(exc)})
                continue
            self._records[record.session_id].append(record)

    def record(self, metrics: CycleMetrics) -> None:
        self._records[metrics.session_id].append(metrics)
        logger.info(
            "Cycle recorded",
            extra={
                "cycle_id": metrics.cycle_id,
                "outcome": metrics.outcome.value,
                "duration_ms": metrics.duration_ms,
            },
        )
        if self._store is None:
            return
        try:
            self._store.append_cycle_metrics(metrics.to_dict())
        except Exception as exc:
            logger.warning(
                "Cycle metrics write failed",
                extra={"cycle_id": metrics.cycle_id, "error": str(exc)},
            )

    def record_verifier_call(self, session_id: str, *, ok: bool) -> None:
        counts = self._verifier[session_id]
        counts.calls += 1
        if not ok:
            counts.errors += 1

    def record_progress(self, session_id: str, at: float | None = None) -> None:
        self._last_progress_at[session_id] = self._clock() if at is None else at

    def observe(self, channel: EventChannel) -> Callable[[], None]:
        """Treat completion events on ``channel`` as task progress."""

        def _on_event(event: WorkerEvent) -> None:
            if event.kind is WorkerEventKind.COMPLETION:
                self.record_progress(event.worker_id)

        return channel.subscribe(_on_event)

    def cycles(self, session_id: str | None = None) -> list[CycleMetrics]:
        if session_id is not None:
            return list(self._records.get(session_id, ()))
        merged = [record for records in self._records.values() for record in records]
        return sorted(merged, key=lambda record: record.completed_at)

    def aggregate(self, session_id: str | None = None) -> AggregateMetrics:
        return aggregate(self.cycles(session_id))

    def health(
        self,
        session_id: str,
        *,
        breaker_state: BreakerState = BreakerState.CLOSED,
        stall_threshold_ms: float = DEFAULT_STALL_THRESHOLD_MS,
    ) -> HealthScore:
        now = self._clock()
        last_progress = self._last_progress_at.get(session_id)
        counts = self._verifier.get(session_id, _VerifierCounts())
        return compute_health_score(
            self.cycles(session_id),
            breaker_state=breaker_state,
            ms_since_progress=None if last_progress is None else now - last_progress,
            stall_threshold_ms=stall_threshold_ms,
            verifier_calls=counts.calls,
            verifier_errors=counts.errors,
            now=now,
        )

    def forget(self, session_id: str) -> None:
        self._records.pop(session_id, None)
        self._verifier.pop(session_id, None)
        self._last_progress_at.pop(session_id, None)


__all__ = [
    "HEALTH_WEIGHTS",
    "MetricsAggregator",
    "aggregate",
    "compute_health_score",
    "percentile",
    "status_from_score",
]
