"""
Result Aggregator

Collects terminal SubmissionStates as they happen and flushes them to a
report sink in chunks, so a hard kill only loses the unflushed tail.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Dict, List, Optional

from .models import SubmissionState

logger = logging.getLogger(__name__)


class ResultAggregator:
    """
    Buffered writer for terminal states.

    The sink needs a `write(states)` method (and optionally `close()`);
    see campaigns.records_io.ReportWriter.
    """

    def __init__(self, sink: Optional[Any] = None, flush_threshold: int = 1000):
        if flush_threshold < 1:
            raise ValueError("flush_threshold must be >= 1")
        self.sink = sink
        self.flush_threshold = flush_threshold
        self._buffer: List[SubmissionState] = []
        self._seen = set()
        self._lock = asyncio.Lock()
        self._closed = False

        self.totals: Counter = Counter()
        self.flushes = 0
        self.written = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def add(self, state: SubmissionState):
        """Record a terminal state; flushes when the buffer is full."""
        if not state.is_terminal:
            raise ValueError(f"{state.record.identifier}: only terminal states are aggregated")

        async with self._lock:
            if self._closed:
                raise RuntimeError("aggregator is closed")
            if state.record.identifier in self._seen:
                logger.warning(f"[Aggregator] Ignoring second result for {state.record.identifier}")
                return
            self._seen.add(state.record.identifier)
            self._buffer.append(state)
            self.totals[state.status.value] += 1
            if len(self._buffer) >= self.flush_threshold:
                self._flush_locked()

    async def flush(self):
        async with self._lock:
            self._flush_locked()

    async def close(self):
        """Flush the tail and close the sink."""
        async with self._lock:
            if self._closed:
                return
            self._flush_locked()
            self._closed = True
            close = getattr(self.sink, "close", None)
            if close is not None:
                close()

    def _flush_locked(self):
        if not self._buffer:
            return
        chunk = list(self._buffer)
        if self.sink is not None:
            self.sink.write(chunk)
        self._buffer.clear()
        self.flushes += 1
        self.written += len(chunk)
        logger.info(f"[Aggregator] Flushed {len(chunk)} results ({self.written} total)")

    def summary(self) -> Dict[str, int]:
        """Running totals per final status."""
        return {
            "total": sum(self.totals.values()),
            **{status: count for status, count in sorted(self.totals.items())},
        }
