"""Rolling timing history that drives the adaptive confirmation delay."""

from __future__ import annotations

from collections import deque
from typing import Any

from ..metrics.aggregator import percentile

MIN_SAMPLES = 3


class TimingHistory:
    def __init__(self, max_samples: int = 20) -> None:
        self.max_samples = max_samples
        self.idle_detection_ms: deque[float] = deque(maxlen=max_samples)
        self.cycle_duration_ms: deque[float] = deque(maxlen=max_samples)
        self.interrupted_confirm_ms: deque[float] = deque(maxlen=max_samples)

    @property
    def sample_count(self) -> int:
        return len(self.idle_detection_ms)

    def record_cycle(self, idle_detection_ms: float, cycle_duration_ms: float) -> None:
        self.idle_detection_ms.append(max(0.0, idle_detection_ms))
        self.cycle_duration_ms.append(max(0.0, cycle_duration_ms))

    def record_interrupted_confirm(self, gap_ms: float) -> None:
        """Remember how long after a completion match the agent resumed output."""

        self.interrupted_confirm_ms.append(max(0.0, gap_ms))

    def confirm_delay(self, configured_ms: float, minimum_ms: float, maximum_ms: float) -> float:
        """Adaptive confirmation delay, always clamped to ``[minimum_ms, maximum_ms]``.

        Half of the 75th percentile of idle-detection time, but never shorter
        than one and a half times the longest recent false-completion gap.
        With fewer than three completed cycles the configured value is used.
        """

        if self.sample_count < MIN_SAMPLES:
            raw = configured_ms
        else:
            raw = percentile(self.idle_detection_ms, 0.75) / 2
            if self.interrupted_confirm_ms:
                raw = max(raw, max(self.interrupted_confirm_ms) * 1.5)
        return float(min(maximum_ms, max(minimum_ms, raw)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "recent_idle_detection_ms": list(self.idle_detection_ms),
            "recent_cycle_duration_ms": list(self.cycle_duration_ms),
            "recent_interrupted_confirm_ms": list(self.interrupted_confirm_ms),
            "sample_count": self.sample_count,
            "max_samples": self.max_samples,
        }


__all__ = ["MIN_SAMPLES", "TimingHistory"]
