"""Cycle metrics and health scoring."""

from .aggregator import MetricsAggregator, compute_health_score
from .models import (
    AggregateMetrics,
    BreakerState,
    CycleMetrics,
    CycleOutcome,
    HealthScore,
    HealthStatus,
)

__all__ = [
    "AggregateMetrics",
    "BreakerState",
    "CycleMetrics",
    "CycleOutcome",
    "HealthScore",
    "HealthStatus",
    "MetricsAggregator",
    "compute_health_score",
]
