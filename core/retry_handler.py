#!/usr/bin/env python3
"""
Retry Handler - Exponential backoff with jitter for failed submission attempts.

Formula: delay = min(base_delay * factor^(attempt - 1), max_delay) + jitter
"""

import random
import logging
from dataclasses import dataclass
from typing import Optional

from .models import FailureKind

logger = logging.getLogger(__name__)


@dataclass
class RetryDecision:
    """Whether to try again, and after how long."""
    retry: bool
    delay: float = 0.0
    reason: str = ""


class ExponentialBackoffRetry:
    """
    Decide continue-or-stop for an item after a non-successful attempt.

    - Jitter-free delay is non-decreasing in the attempt number, capped at max_delay
    - Server Retry-After hints replace the computed delay (same cap)
    - Expired sessions retry almost immediately since a new token is fetched anyway
    - Validation failures never retry
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        factor: float = 1.5,
        max_delay: float = 10.0,
        jitter: float = 0.5,
        fast_retry_range: tuple = (0.3, 0.8),
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self.jitter = jitter
        self.fast_retry_range = fast_retry_range
        self._rng = rng or random.Random()

        self.stats = {
            'retries_scheduled': 0,
            'fast_retries': 0,
            'server_overrides': 0,
            'stops': 0,
        }

    def base_delay_for(self, attempt: int) -> float:
        """Jitter-free delay after the given (1-based) attempt."""
        exponent = max(attempt - 1, 0)
        return min(self.base_delay * (self.factor ** exponent), self.max_delay)

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay with exponential backoff and jitter."""
        delay = self.base_delay_for(attempt)
        if self.jitter > 0:
            delay += self._rng.uniform(0, self.jitter)
        return delay

    def decide(
        self,
        attempt: int,
        failure_kind: FailureKind = FailureKind.TRANSPORT,
        retry_after: Optional[float] = None,
        last_detail: str = "",
        max_attempts: Optional[int] = None,
    ) -> RetryDecision:
        """
        Decide what to do after a non-successful attempt.

        Args:
            attempt: Number of the attempt that just finished (1-based)
            failure_kind: Category of the failure
            retry_after: Server-provided Retry-After hint in seconds
            last_detail: Detail of the finished attempt, used as the stop reason
            max_attempts: Ceiling override (defaults to the policy's own)
        """
        ceiling = max_attempts or self.max_attempts

        if failure_kind == FailureKind.VALIDATION:
            self.stats['stops'] += 1
            return RetryDecision(retry=False, reason=last_detail or "validation error")

        if attempt >= ceiling:
            self.stats['stops'] += 1
            return RetryDecision(retry=False, reason=last_detail or f"gave up after {attempt} attempts")

        if retry_after is not None and retry_after >= 0:
            self.stats['server_overrides'] += 1
            delay = min(float(retry_after), self.max_delay)
        elif failure_kind == FailureKind.SESSION_EXPIRED:
            self.stats['fast_retries'] += 1
            low, high = self.fast_retry_range
            delay = self._rng.uniform(low, high)
        else:
            delay = self.calculate_delay(attempt)

        self.stats['retries_scheduled'] += 1
        logger.debug(f"[Retry] attempt {attempt}/{ceiling} ({failure_kind.value}) -> wait {delay:.2f}s")
        return RetryDecision(retry=True, delay=delay, reason=failure_kind.value)
