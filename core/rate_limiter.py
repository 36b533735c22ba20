#!/usr/bin/env python3
"""
Adaptive Concurrency Controller - Bound in-flight items and adapt to the remote's health.

Impact: Keeps the batch from overwhelming (or being blocked by) the form endpoint
"""

import asyncio
import random
import time
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class LimitChange:
    """One adjustment of the concurrency limit."""
    timestamp: float
    old_limit: int
    new_limit: int
    error_rate: float
    avg_latency: float


class AdaptiveConcurrencyController:
    """
    Admit at most K items into active processing; K adapts at runtime.

    Every `window` completed attempts:
    - error rate > error_rate_high or avg latency > latency_high -> K - 1 (floor 1)
    - error rate < error_rate_low and avg latency < latency_low -> K + 1 (up to max_limit)

    Lowering K never pre-empts an in-flight item; admissions simply wait
    until active < K again.
    """

    def __init__(
        self,
        initial_limit: int = 3,
        max_limit: int = 6,
        window: int = 10,
        error_rate_high: float = 0.5,
        error_rate_low: float = 0.1,
        latency_high: float = 10.0,
        latency_low: float = 3.0,
        min_interval: float = 0.0,
        admission_jitter: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        if initial_limit < 1:
            raise ValueError("initial_limit must be >= 1")
        self.max_limit = max(max_limit, initial_limit)
        self.window = max(window, 1)
        self.error_rate_high = error_rate_high
        self.error_rate_low = error_rate_low
        self.latency_high = latency_high
        self.latency_low = latency_low
        self.min_interval = min_interval
        self.admission_jitter = admission_jitter
        self._rng = rng or random.Random()

        self._limit = initial_limit
        self._active = 0
        self._closed = False
        self._completed_since_eval = 0
        self._last_admission = 0.0
        self._cond = asyncio.Condition()
        self._spacing_lock = asyncio.Lock()

        self.history: List[LimitChange] = []
        self.stats = {
            'admitted': 0,
            'waited': 0,
            'peak_active': 0,
            'decreases': 0,
            'increases': 0,
        }

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    async def acquire(self) -> bool:
        """
        Wait for an admission slot.

        Returns:
            True if admitted, False if the controller was closed while waiting
        """
        async with self._cond:
            if self._active >= self._limit and not self._closed:
                self.stats['waited'] += 1
            while self._active >= self._limit and not self._closed:
                await self._cond.wait()
            if self._closed:
                return False
            self._active += 1
            self.stats['admitted'] += 1
            self.stats['peak_active'] = max(self.stats['peak_active'], self._active)

        await self._space_admission()
        return True

    async def release(self):
        """Free a slot held by a finished item."""
        async with self._cond:
            self._active = max(self._active - 1, 0)
            self._cond.notify_all()

    @asynccontextmanager
    async def slot(self):
        """Hold a slot for the duration of the block; yields False if closed."""
        admitted = await self.acquire()
        try:
            yield admitted
        finally:
            if admitted:
                await self.release()

    async def close(self):
        """Stop admitting; wakes every waiter."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    async def _space_admission(self):
        """Keep a minimum gap between consecutive admissions."""
        if self.min_interval <= 0 and self.admission_jitter <= 0:
            return
        async with self._spacing_lock:
            gap = self.min_interval
            if self.admission_jitter > 0:
                gap += self._rng.uniform(0, self.admission_jitter)
            wait = self._last_admission + gap - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_admission = time.monotonic()

    async def on_attempt_completed(self, metrics) -> Optional[int]:
        """
        Count a completed attempt and re-evaluate K at window boundaries.

        Args:
            metrics: BatchMetrics with the recent error/latency windows

        Returns:
            The new limit when it changed, else None
        """
        self._completed_since_eval += 1
        if self._completed_since_eval < self.window:
            return None
        self._completed_since_eval = 0

        error_rate = metrics.recent_error_rate(self.window)
        avg_latency = metrics.recent_avg_latency(self.window)
        return await self.adjust(error_rate, avg_latency)

    async def adjust(self, error_rate: float, avg_latency: float) -> Optional[int]:
        """Apply the adaptation rule to one window's observations."""
        async with self._cond:
            old = self._limit
            if error_rate > self.error_rate_high or avg_latency > self.latency_high:
                self._limit = max(1, self._limit - 1)
            elif error_rate < self.error_rate_low and avg_latency < self.latency_low:
                self._limit = min(self.max_limit, self._limit + 1)

            if self._limit == old:
                return None

            self.history.append(LimitChange(
                timestamp=time.time(),
                old_limit=old,
                new_limit=self._limit,
                error_rate=error_rate,
                avg_latency=avg_latency,
            ))
            if self._limit < old:
                self.stats['decreases'] += 1
                logger.warning(
                    f"[Concurrency] Limit {old} -> {self._limit} "
                    f"(errors {error_rate:.0%}, latency {avg_latency:.2f}s)"
                )
            else:
                self.stats['increases'] += 1
                logger.info(
                    f"[Concurrency] Limit {old} -> {self._limit} "
                    f"(errors {error_rate:.0%}, latency {avg_latency:.2f}s)"
                )
                self._cond.notify_all()
            return self._limit

    def get_stats(self) -> dict:
        return {
            **self.stats,
            'limit': self._limit,
            'active': self._active,
            'max_limit': self.max_limit,
        }


def select_initial_limit(
    initial_limit: int,
    peak_hour: Optional[int] = None,
    peak_minute_range: int = 2,
    peak_hour_limit: int = 2,
    now: Optional[datetime] = None,
) -> int:
    """Lower the starting limit inside the configured busy window."""
    if peak_hour is None:
        return initial_limit
    now = now or datetime.now()
    if now.hour == peak_hour and now.minute < peak_minute_range:
        limit = min(initial_limit, peak_hour_limit)
        logger.info(f"[Concurrency] Peak window {peak_hour:02d}:00, starting limit {limit}")
        return max(limit, 1)
    return initial_limit
