"""
Submission Orchestrator - Drives every record to a terminal, auditable state.

Usage:
    orchestrator = SubmissionOrchestrator(client, sessions, classifier, retry, controller)
    states = await orchestrator.run(records)

Per item:
    Pending -> InProgress -> attempts (session -> submit -> classify)
            -> Succeeded | Exhausted      (Interrupted on shutdown)
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .aggregator import ResultAggregator
from .classifier import Classification, SuccessClassifier
from .errors import (
    AttemptTimeout,
    SessionExpiredError,
    SubmissionError,
    ThrottledError,
    ValidationError,
    classify_exception,
)
from .logging_config import log_attempt
from .models import (
    AttemptOutcome,
    AttemptRecord,
    FailureKind,
    RawOutput,
    Record,
    SignalSource,
    SubmissionState,
    SubmissionStatus,
)
from .rate_limiter import AdaptiveConcurrencyController
from .retry_handler import ExponentialBackoffRetry
from .session_manager import SessionManager
from .utils import interruptible_sleep
from monitoring.metrics import BatchMetrics

logger = logging.getLogger(__name__)


class SubmissionOrchestrator:
    """
    Runs the per-item state machine over a bounded worker pool.

    One worker task per possible slot pulls items from an asyncio.Queue and
    holds a controller slot for the whole item, so items in flight never
    exceed the controller's current limit. Attempts within an item are
    sequential. Setting `stop_event` stops new attempts; every item that is
    not terminal by then ends Interrupted.
    """

    def __init__(
        self,
        client,
        session_manager: SessionManager,
        classifier: SuccessClassifier,
        retry_policy: ExponentialBackoffRetry,
        controller: AdaptiveConcurrencyController,
        aggregator: Optional[ResultAggregator] = None,
        metrics: Optional[BatchMetrics] = None,
        target: str = "",
        max_attempts: int = 3,
        attempt_timeout: float = 25.0,
        stop_event: Optional[asyncio.Event] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.client = client
        self.session_manager = session_manager
        self.classifier = classifier
        self.retry_policy = retry_policy
        self.controller = controller
        self.aggregator = aggregator
        self.metrics = metrics or BatchMetrics()
        self.target = target
        self.max_attempts = max_attempts
        self.attempt_timeout = attempt_timeout
        self.stop_event = stop_event or asyncio.Event()

        self.stats = {
            'queued': 0,
            'items': 0,
            'succeeded': 0,
            'exhausted': 0,
            'interrupted': 0,
            'attempts': 0,
        }

    # ---------- batch ----------

    async def run(self, records: Iterable[Record], collect: bool = True) -> List[SubmissionState]:
        """
        Process a batch.

        Args:
            records: Records to submit; repeated identifiers are skipped
            collect: Return every terminal state in input order. With False,
                terminal states are only handed to the aggregator and memory
                stays bounded by the in-flight items plus its buffer.

        Returns:
            Terminal states (empty when collect is False)
        """
        queue: asyncio.Queue = asyncio.Queue()
        seen = set()
        for record in records:
            if record.identifier in seen:
                logger.warning(f"[Orchestrator] Skipping duplicate identifier {record.identifier}")
                continue
            seen.add(record.identifier)
            queue.put_nowait((len(seen) - 1, record))

        total = queue.qsize()
        self.stats['queued'] += total
        if not total:
            return []

        results: Optional[List[Optional[SubmissionState]]] = [None] * total if collect else None
        in_flight: Dict[int, SubmissionState] = {}

        worker_count = min(self.controller.max_limit, total)
        logger.info(
            f"[Orchestrator] Starting {total} items with {worker_count} workers "
            f"(limit {self.controller.limit})"
        )

        watcher = asyncio.create_task(self._close_on_stop())
        workers = [
            asyncio.create_task(self._worker(queue, i, results, in_flight))
            for i in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            watcher.cancel()
            for worker in workers:
                worker.cancel()
            await asyncio.gather(watcher, *workers, return_exceptions=True)

        # Items a cancelled worker left behind, or never got to
        leftovers = list(in_flight.values())
        while not queue.empty():
            index, record = queue.get_nowait()
            state = SubmissionState(record=record, max_attempts=self.max_attempts)
            if results is not None:
                results[index] = state
            leftovers.append(state)
        for state in leftovers:
            if not state.is_terminal:
                await self._finalize(state, SubmissionStatus.INTERRUPTED, "interrupted")

        logger.info(
            f"[Orchestrator] Done: {self.stats['succeeded']} succeeded, "
            f"{self.stats['exhausted']} exhausted, {self.stats['interrupted']} interrupted "
            f"in {self.stats['attempts']} attempts"
        )
        return list(results) if results is not None else []

    async def reject(self, record: Record, reason: str) -> SubmissionState:
        """Report a record that failed validation: Exhausted with zero attempts."""
        state = SubmissionState(record=record, max_attempts=self.max_attempts)
        await self._finalize(state, SubmissionStatus.EXHAUSTED, reason)
        return state

    async def _close_on_stop(self):
        await self.stop_event.wait()
        logger.warning("[Orchestrator] Stop requested, no new attempts will start")
        await self.controller.close()

    async def _worker(self, queue: asyncio.Queue, worker_id: int, results, in_flight: Dict[int, SubmissionState]):
        while True:
            try:
                index, record = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            state = SubmissionState(record=record, max_attempts=self.max_attempts)
            if results is not None:
                results[index] = state
            in_flight[index] = state
            try:
                if self.stop_event.is_set():
                    await self._finalize(state, SubmissionStatus.INTERRUPTED, "interrupted before start")
                    continue
                async with self.controller.slot() as admitted:
                    if not admitted or self.stop_event.is_set():
                        await self._finalize(state, SubmissionStatus.INTERRUPTED, "interrupted before start")
                        continue
                    await self.process(state)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[Orchestrator] Worker {worker_id} failed on {state.record.identifier}")
                if not state.is_terminal:
                    await self._finalize(state, SubmissionStatus.EXHAUSTED, f"internal error: {e}")
            finally:
                if state.is_terminal:
                    del in_flight[index]
                queue.task_done()

    # ---------- item ----------

    async def process(self, state: SubmissionState) -> SubmissionState:
        """Drive one admitted item to a terminal state."""
        self.stats['items'] += 1
        record = state.record

        try:
            self.validate(record)
        except ValidationError as e:
            await self._finalize(state, SubmissionStatus.EXHAUSTED, e.message)
            return state

        state.transition(SubmissionStatus.IN_PROGRESS)

        while state.attempts_made < self.max_attempts and state.status == SubmissionStatus.IN_PROGRESS:
            if self.stop_event.is_set():
                break

            attempt_number = state.attempts_made + 1
            attempt, retry_after = await self._attempt(record, attempt_number)
            state.append_attempt(attempt)
            self.stats['attempts'] += 1
            log_attempt(
                record.identifier, attempt_number, self.max_attempts,
                attempt.outcome.value, attempt.detail,
            )

            success = attempt.outcome == AttemptOutcome.SUCCESS
            await self.metrics.record_attempt(success, attempt.duration_seconds)
            await self.controller.on_attempt_completed(self.metrics)

            if success:
                await self._finalize(state, SubmissionStatus.SUCCEEDED, attempt.detail)
                return state

            decision = self.retry_policy.decide(
                attempt_number,
                failure_kind=attempt.failure_kind,
                retry_after=retry_after,
                last_detail=attempt.detail,
                max_attempts=self.max_attempts,
            )
            if not decision.retry:
                await self._finalize(state, SubmissionStatus.EXHAUSTED, decision.reason)
                return state

            logger.debug(f"[Orchestrator] {record.identifier}: retry in {decision.delay:.2f}s")
            if await interruptible_sleep(decision.delay, self.stop_event):
                break

        last = state.last_attempt
        if self.stop_event.is_set():
            detail = last.detail if last else "interrupted"
            await self._finalize(state, SubmissionStatus.INTERRUPTED, detail or "interrupted")
        else:
            await self._finalize(state, SubmissionStatus.EXHAUSTED, last.detail if last else "no attempts")
        return state

    @staticmethod
    def validate(record: Record):
        for name in ("identifier", "name", "phone"):
            if not getattr(record, name):
                raise ValidationError(f"missing {name}", field_name=name)

    async def _attempt(self, record: Record, attempt_number: int) -> Tuple[AttemptRecord, Optional[float]]:
        """
        One session -> submit -> classify cycle. Never raises except on cancellation.

        Returns:
            (AttemptRecord, retry_after hint or None)
        """
        started_at = datetime.now()
        deadline = time.monotonic() + self.attempt_timeout
        ctx = None
        raw: Optional[RawOutput] = None
        expired = False
        retry_after = None

        try:
            try:
                ctx = await asyncio.wait_for(
                    self.session_manager.acquire(record, attempt_number),
                    timeout=self.attempt_timeout,
                )
                remaining = max(deadline - time.monotonic(), 0.0)
                raw = await asyncio.wait_for(
                    self.client.submit(self.target, record.to_form_values(), ctx, remaining),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                raise AttemptTimeout()

            submitted_at = time.monotonic()
            verdict = await self.classifier.classify(raw, record, self.stop_event, submitted_at=submitted_at)
            if not verdict.is_success and (
                verdict.failure_kind == FailureKind.SESSION_EXPIRED
                or self.session_manager.is_expired_response(raw)
            ):
                expired = True
                verdict = Classification(
                    outcome=AttemptOutcome.REMOTE_REJECTED,
                    detail="session expired",
                    source=verdict.source,
                    failure_kind=FailureKind.SESSION_EXPIRED,
                )
            retry_after = raw.retry_after

        except asyncio.CancelledError:
            raise
        except SubmissionError as e:
            if isinstance(e, SessionExpiredError):
                expired = True
            if isinstance(e, ThrottledError):
                retry_after = e.retry_after
            verdict = Classification(
                outcome=e.outcome,
                detail=e.message,
                source=SignalSource.NONE,
                failure_kind=e.kind,
            )
        except Exception as e:
            logger.debug(f"[Orchestrator] {record.identifier}: unexpected {type(e).__name__}: {e}")
            verdict = Classification(
                outcome=AttemptOutcome.TRANSPORT_FAILURE,
                detail=f"{type(e).__name__}: {e}",
                source=SignalSource.NONE,
                failure_kind=classify_exception(e),
            )
        finally:
            await self._cleanup(record, ctx, raw, expired)

        attempt = AttemptRecord(
            attempt_number=attempt_number,
            started_at=started_at,
            ended_at=datetime.now(),
            outcome=verdict.outcome,
            detail=verdict.detail,
            used_session_id=ctx.session_id if ctx else None,
            failure_kind=verdict.failure_kind,
            source=verdict.source,
            confirmation_id=verdict.confirmation_id,
        )
        return attempt, retry_after

    async def _cleanup(self, record: Record, ctx, raw: Optional[RawOutput], expired: bool):
        if raw is not None:
            try:
                await raw.aclose()
            except Exception as e:
                logger.warning(f"[Orchestrator] Could not release output for {record.identifier}: {e}")
        if ctx is not None:
            await self.session_manager.release(record, ctx, expired=expired)

    async def _finalize(self, state: SubmissionState, status: SubmissionStatus, detail: str):
        state.transition(status, final_result=detail or "")
        self.stats[status.value] += 1
        if status == SubmissionStatus.SUCCEEDED:
            logger.info(
                f"[Orchestrator] {state.record.identifier} succeeded after {state.attempts_made} attempt(s)"
                + (f", confirmation {state.confirmation_id}" if state.confirmation_id else "")
            )
        else:
            logger.warning(
                f"[Orchestrator] {state.record.identifier} {status.value} "
                f"after {state.attempts_made} attempt(s): {detail}"
            )
        if self.aggregator is not None:
            await self.aggregator.add(state)
