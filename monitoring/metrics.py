"""
Metrics & Monitoring
Running counters and sliding windows for one batch run.
"""

import asyncio
import statistics
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, Optional


@dataclass
class Counter:
    """Simple counter metric."""
    value: int = 0

    def inc(self, amount: int = 1):
        self.value += amount

    def reset(self):
        self.value = 0


@dataclass
class SlidingWindow:
    """Bounded window of the most recent observations."""
    size: int = 100
    observations: Deque[float] = field(default_factory=deque)

    def __post_init__(self):
        self.observations = deque(self.observations, maxlen=self.size)

    def observe(self, value: float):
        self.observations.append(value)

    def __len__(self) -> int:
        return len(self.observations)

    def mean(self, last: Optional[int] = None) -> float:
        values = list(self.observations)
        if last is not None:
            values = values[-last:]
        if not values:
            return 0.0
        return statistics.mean(values)

    def p95(self) -> float:
        if not self.observations:
            return 0.0
        sorted_obs = sorted(self.observations)
        idx = int(len(sorted_obs) * 0.95)
        return sorted_obs[min(idx, len(sorted_obs) - 1)]


class BatchMetrics:
    """
    Shared counters for every completed attempt in a run.

    Updated under an asyncio lock by all workers; the concurrency controller
    reads the recent window to adapt its limit.
    """

    def __init__(self, window_size: int = 100):
        self.total_attempts = Counter()
        self.success_count = Counter()
        self.failure_count = Counter()
        self.response_times = SlidingWindow(size=window_size)
        # 1.0 for a failed attempt, 0.0 for a successful one
        self.recent_failures = SlidingWindow(size=window_size)
        self.started_at = datetime.now()
        self._lock = asyncio.Lock()

    async def record_attempt(self, success: bool, duration_seconds: float) -> int:
        """Record an attempt; returns the new total attempt count."""
        async with self._lock:
            self.total_attempts.inc()
            if success:
                self.success_count.inc()
            else:
                self.failure_count.inc()
            self.response_times.observe(duration_seconds)
            self.recent_failures.observe(0.0 if success else 1.0)
            return self.total_attempts.value

    def recent_error_rate(self, last: int) -> float:
        return self.recent_failures.mean(last)

    def recent_avg_latency(self, last: int) -> float:
        return self.response_times.mean(last)

    def get_summary(self) -> Dict:
        """Get current metrics summary."""
        total = self.total_attempts.value
        return {
            "started_at": self.started_at.isoformat(),
            "duration_seconds": (datetime.now() - self.started_at).total_seconds(),
            "total_attempts": total,
            "successful_attempts": self.success_count.value,
            "failed_attempts": self.failure_count.value,
            "success_rate": self.success_count.value / max(1, total),
            "avg_response_seconds": self.response_times.mean(),
            "p95_response_seconds": self.response_times.p95(),
        }
