from __future__ import annotations

import pytest

from ralph_fleet.agent import EventChannel, WorkerEventKind
from ralph_fleet.metrics import (
    BreakerState,
    CycleMetrics,
    CycleOutcome,
    HealthStatus,
    MetricsAggregator,
    compute_health_score,
)
from ralph_fleet.metrics.aggregator import aggregate, percentile, status_from_score
from ralph_fleet.storage import MemoryStateStore


def _cycle(number: int, outcome: CycleOutcome, *, duration: float = 1000.0, session: str = "s1") -> CycleMetrics:
    return CycleMetrics(
        session_id=session,
        cycle_number=number,
        started_at=number * 10_000.0,
        completed_at=number * 10_000.0 + duration,
        duration_ms=duration,
        idle_reason="completion_message",
        idle_detection_ms=2000.0,
        steps_completed=("clear", "init", "update"),
        clear_skipped=False,
        outcome=outcome,
        completion_confirm_ms_used=500.0,
    )


def test_percentile_nearest_rank() -> None:
    assert percentile([], 0.9) == 0.0
    assert percentile([5, 1, 3], 0.5) == 3
    assert percentile(range(1, 11), 0.9) == 9


def test_aggregate_counts_and_rates() -> None:
    records = [
        _cycle(1, CycleOutcome.SUCCESS, duration=1000),
        _cycle(2, CycleOutcome.SUCCESS, duration=3000),
        _cycle(3, CycleOutcome.STUCK_RECOVERY, duration=2000),
        _cycle(4, CycleOutcome.CANCELLED, duration=0),
    ]

    stats = aggregate(records)

    assert stats.total_cycles == 4
    assert stats.successful_cycles == 2
    assert stats.stuck_recovery_cycles == 1
    assert stats.cancelled_cycles == 1
    assert stats.avg_cycle_duration_ms == 1500
    assert stats.p90_cycle_duration_ms == 3000
    assert stats.success_rate == pytest.approx(200 / 3)


def test_empty_history_is_fully_healthy() -> None:
    health = compute_health_score([])
    assert health.score == 100
    assert health.status is HealthStatus.EXCELLENT
    assert health.recommendations == []


def test_open_breaker_and_stuck_cycles_degrade_health() -> None:
    records = [
        _cycle(1, CycleOutcome.SUCCESS),
        _cycle(2, CycleOutcome.STUCK_RECOVERY),
        _cycle(3, CycleOutcome.BLOCKED),
    ]

    health = compute_health_score(records, breaker_state=BreakerState.OPEN)

    assert health.components["circuit_breaker"] == 0
    assert health.components["stuck_recovery"] == 0
    assert health.components["cycle_success"] == pytest.approx(33.3)
    assert health.score == round(0.30 * 100 / 3 + 0.20 * 100 + 0.10 * 100)
    assert health.status is HealthStatus.CRITICAL
    assert any("Circuit breaker is open" in item for item in health.recommendations)


def test_progress_decays_past_stall_threshold() -> None:
    fresh = compute_health_score([], ms_since_progress=1000, stall_threshold_ms=10_000)
    overdue = compute_health_score([], ms_since_progress=20_000, stall_threshold_ms=10_000)
    dead = compute_health_score([], ms_since_progress=40_000, stall_threshold_ms=10_000)

    assert fresh.components["iteration_progress"] == 100
    assert overdue.components["iteration_progress"] == 50
    assert dead.components["iteration_progress"] == 0


def test_status_bands() -> None:
    assert status_from_score(90) is HealthStatus.EXCELLENT
    assert status_from_score(70) is HealthStatus.GOOD
    assert status_from_score(50) is HealthStatus.DEGRADED
    assert status_from_score(49) is HealthStatus.CRITICAL


def test_aggregator_retention_and_persistence() -> None:
    store = MemoryStateStore()
    aggregator = MetricsAggregator(store, max_records_per_session=2)
    for number in range(1, 4):
        aggregator.record(_cycle(number, CycleOutcome.SUCCESS))
    aggregator.record(_cycle(1, CycleOutcome.ERROR, session="s2"))

    assert [record.cycle_number for record in aggregator.cycles("s1")] == [2, 3]
    assert len(store.cycles) == 4

    reloaded = MetricsAggregator(store, max_records_per_session=10)
    assert [record.cycle_number for record in reloaded.cycles("s1")] == [1, 2, 3]
    assert reloaded.cycles("s2")[0].outcome is CycleOutcome.ERROR
    assert reloaded.aggregate().total_cycles == 4

    reloaded.forget("s1")
    assert reloaded.cycles("s1") == []


def test_failing_store_does_not_break_recording() -> None:
    class BrokenStore(MemoryStateStore):
        def append_cycle_metrics(self, record):
            raise OSError("disk full")

    aggregator = MetricsAggregator(BrokenStore())
    aggregator.record(_cycle(1, CycleOutcome.SUCCESS))

    assert len(aggregator.cycles("s1")) == 1


def test_completion_events_count_as_progress() -> None:
    now = {"value": 100_000.0}
    aggregator = MetricsAggregator(clock=lambda: now["value"])
    channel = EventChannel("s1")
    unsubscribe = aggregator.observe(channel)

    channel.publish(WorkerEventKind.COMPLETION, "DONE")
    now["value"] += 60 * 60 * 1000

    health = aggregator.health("s1", stall_threshold_ms=30 * 60 * 1000)
    assert health.components["iteration_progress"] == 50

    unsubscribe()
    assert channel.subscriber_count == 0


def test_cycle_metrics_dict_round_trip_keeps_cycle_id() -> None:
    record = _cycle(7, CycleOutcome.STUCK_RECOVERY)
    payload = record.to_dict()

    assert payload["cycle_id"] == "s1:7"
    assert payload["outcome"] == "stuck_recovery"
    assert CycleMetrics.from_dict(payload) == record
