"""
Resilience tests for the submission orchestrator.

Scripted clients replay flaky remotes: rejections, hangs, expired sessions,
throttling and silent pages. Timings are shrunk so the suite stays fast.
"""

import asyncio

import pytest

from core.aggregator import ResultAggregator
from core.classifier import SuccessClassifier
from core.errors import ThrottledError
from core.models import (
    AttemptOutcome,
    FailureKind,
    Record,
    SignalSource,
    SubmissionStatus,
)
from core.orchestrator import SubmissionOrchestrator
from core.rate_limiter import AdaptiveConcurrencyController
from core.retry_handler import ExponentialBackoffRetry
from core.session_manager import SessionManager


class ListSink:
    def __init__(self):
        self.rows = []

    def write(self, states):
        self.rows.extend(states)


def build_orchestrator(
    client,
    fallback=None,
    max_attempts=3,
    attempt_timeout=2.0,
    limit=2,
    pooled=False,
    aggregator=None,
    stop_event=None,
    base_delay=0.01,
):
    sessions = SessionManager(
        client=client,
        target="https://form.test/",
        fresh_per_item=not pooled,
        cookie_jar_factory=dict,
    )
    classifier = SuccessClassifier(
        fallback_checker=fallback,
        fallback_grace=0.01,
        observe_timeout=0.2,
        poll_interval=0.01,
        fallback_timeout=0.5,
    )
    retry = ExponentialBackoffRetry(
        max_attempts=max_attempts,
        base_delay=base_delay,
        factor=1.0,
        max_delay=10.0,
        jitter=0,
        fast_retry_range=(0.0, 0.01),
    )
    controller = AdaptiveConcurrencyController(initial_limit=limit, max_limit=limit)
    return SubmissionOrchestrator(
        client,
        sessions,
        classifier,
        retry,
        controller,
        aggregator=aggregator,
        target="https://form.test/",
        max_attempts=max_attempts,
        attempt_timeout=attempt_timeout,
        stop_event=stop_event,
    )


@pytest.mark.resilience
class TestRetryScenarios:

    @pytest.mark.asyncio
    async def test_reject_reject_success(self, make_client, pages, record):
        client = make_client({record.identifier: [pages.rejected, pages.rejected, pages.success]})
        orchestrator = build_orchestrator(client)

        [state] = await orchestrator.run([record])

        assert state.status == SubmissionStatus.SUCCEEDED
        assert state.attempts_made == 3
        assert [a.outcome for a in state.attempts] == [
            AttemptOutcome.REMOTE_REJECTED,
            AttemptOutcome.REMOTE_REJECTED,
            AttemptOutcome.SUCCESS,
        ]
        assert state.attempts[0].detail == "Kuota hari ini sudah habis, silakan coba lagi."
        assert state.confirmation_id == "A-012"
        assert [a.attempt_number for a in state.attempts] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_three_timeouts_exhaust(self, make_client, record):
        client = make_client({record.identifier: [("sleep", 5)]})
        orchestrator = build_orchestrator(client, attempt_timeout=0.05)

        [state] = await orchestrator.run([record])

        assert state.status == SubmissionStatus.EXHAUSTED
        assert state.attempts_made == 3
        assert state.final_result == "attempt timeout"
        assert all(a.outcome == AttemptOutcome.TRANSPORT_FAILURE for a in state.attempts)
        assert all(a.failure_kind == FailureKind.TIMEOUT for a in state.attempts)
        assert client.in_flight == 0

    @pytest.mark.asyncio
    async def test_attempts_never_exceed_ceiling(self, make_client, pages, record):
        client = make_client({record.identifier: [pages.rejected]})
        orchestrator = build_orchestrator(client, max_attempts=2)

        [state] = await orchestrator.run([record])

        assert state.status == SubmissionStatus.EXHAUSTED
        assert len(client.calls) == 2
        assert state.final_result == "Kuota hari ini sudah habis, silakan coba lagi."

    @pytest.mark.asyncio
    async def test_unexpected_client_error_is_transport_failure(self, make_client, pages, record):
        client = make_client({record.identifier: [ConnectionResetError("reset by peer"), pages.success]})
        orchestrator = build_orchestrator(client)

        [state] = await orchestrator.run([record])

        assert state.status == SubmissionStatus.SUCCEEDED
        assert state.attempts[0].outcome == AttemptOutcome.TRANSPORT_FAILURE
        assert "reset by peer" in state.attempts[0].detail

    @pytest.mark.asyncio
    async def test_throttle_hint_replaces_backoff(self, make_client, pages, record):
        client = make_client({record.identifier: [ThrottledError("HTTP 429", retry_after=0.02), pages.success]})
        orchestrator = build_orchestrator(client, base_delay=30.0)

        [state] = await asyncio.wait_for(orchestrator.run([record]), timeout=5)

        assert state.status == SubmissionStatus.SUCCEEDED
        assert state.attempts[0].failure_kind == FailureKind.THROTTLED
        assert orchestrator.retry_policy.stats['server_overrides'] == 1


@pytest.mark.resilience
class TestSessionsAndSignals:

    @pytest.mark.asyncio
    async def test_expired_session_discarded_and_fast_retried(self, make_client, pages, record):
        client = make_client({record.identifier: [pages.expired, pages.success]})
        orchestrator = build_orchestrator(client, pooled=True, base_delay=30.0)

        [state] = await asyncio.wait_for(orchestrator.run([record]), timeout=5)

        first, second = state.attempts
        assert state.status == SubmissionStatus.SUCCEEDED
        assert first.failure_kind == FailureKind.SESSION_EXPIRED
        assert first.detail == "session expired"
        assert first.used_session_id != second.used_session_id
        assert orchestrator.session_manager.stats['expired'] == 1
        assert orchestrator.retry_policy.stats['fast_retries'] == 1

    @pytest.mark.asyncio
    async def test_ambiguous_confirmed_by_fallback(self, make_client, pages, record, fallback_success):
        client = make_client({record.identifier: [pages.ambiguous]})
        orchestrator = build_orchestrator(client, fallback=fallback_success)

        [state] = await orchestrator.run([record])

        assert state.status == SubmissionStatus.SUCCEEDED
        assert state.attempts_made == 1
        assert state.attempts[0].source == SignalSource.FALLBACK
        assert state.confirmation_id == "Q-77"
        assert fallback_success.calls == 1

    @pytest.mark.asyncio
    async def test_ambiguous_without_fallback_retries(self, make_client, pages, record):
        client = make_client({record.identifier: [pages.ambiguous]})
        orchestrator = build_orchestrator(client, max_attempts=2)

        [state] = await orchestrator.run([record])

        assert state.status == SubmissionStatus.EXHAUSTED
        assert all(a.outcome == AttemptOutcome.AMBIGUOUS for a in state.attempts)
        assert state.attempts_made == 2

    @pytest.mark.asyncio
    async def test_stop_before_start_interrupts_everything(self, make_client, record):
        client = make_client()
        stop = asyncio.Event()
        stop.set()
        orchestrator = build_orchestrator(client, stop_event=stop)

        states = await orchestrator.run([record, Record("2", "Siti", "0812")])

        assert [s.status for s in states] == [SubmissionStatus.INTERRUPTED] * 2
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_stop_during_backoff_interrupts(self, make_client, pages, record):
        client = make_client({record.identifier: [pages.rejected]})
        stop = asyncio.Event()
        orchestrator = build_orchestrator(client, stop_event=stop, base_delay=30.0)
        asyncio.get_running_loop().call_later(0.1, stop.set)

        [state] = await asyncio.wait_for(orchestrator.run([record]), timeout=5)

        assert state.status == SubmissionStatus.INTERRUPTED
        assert state.attempts_made == 1


@pytest.mark.resilience
class TestBatchInvariants:

    @pytest.mark.asyncio
    async def test_duplicate_identifier_processed_once(self, make_client):
        client = make_client()
        orchestrator = build_orchestrator(client)

        states = await orchestrator.run([
            Record("123456", "Budi", "0811"),
            Record("123456", "Budi Lagi", "0812"),
        ])

        assert len(states) == 1
        assert client.calls == ["123456"]

    @pytest.mark.asyncio
    async def test_run_leaves_no_background_tasks(self, make_client, record):
        orchestrator = build_orchestrator(make_client())

        await orchestrator.run([record, Record("2", "Siti", "0812")])

        pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task() and not t.done()]
        assert pending == []

    @pytest.mark.asyncio
    async def test_in_flight_bounded_by_limit(self, make_client):
        client = make_client(delay=0.02)
        orchestrator = build_orchestrator(client, limit=2)
        records = [Record(str(i), f"Name {i}", "0811") for i in range(8)]

        states = await orchestrator.run(records)

        assert all(s.status == SubmissionStatus.SUCCEEDED for s in states)
        assert client.max_in_flight <= 2
        assert orchestrator.controller.stats['peak_active'] <= 2

    @pytest.mark.asyncio
    async def test_invalid_record_exhausted_without_attempts(self, make_client, record):
        client = make_client()
        orchestrator = build_orchestrator(client)

        states = await orchestrator.run([Record("77", "Tanpa Telepon", ""), record])

        assert states[0].status == SubmissionStatus.EXHAUSTED
        assert states[0].attempts_made == 0
        assert states[0].final_result == "missing phone"
        assert client.calls == [record.identifier]

    @pytest.mark.asyncio
    async def test_every_terminal_state_reaches_aggregator(self, make_client, pages, record):
        sink = ListSink()
        aggregator = ResultAggregator(sink, flush_threshold=100)
        client = make_client({"2": [pages.rejected]})
        orchestrator = build_orchestrator(client, max_attempts=1, aggregator=aggregator)

        await orchestrator.reject(Record("row-3", "", ""), "missing identifier")
        await orchestrator.run([record, Record("2", "Siti", "0812")])
        await aggregator.close()

        assert {s.record.identifier for s in sink.rows} == {"row-3", record.identifier, "2"}
        assert aggregator.summary() == {"total": 3, "exhausted": 2, "succeeded": 1}

    @pytest.mark.asyncio
    async def test_uncollected_run_streams_to_aggregator(self, make_client):
        sink = ListSink()
        aggregator = ResultAggregator(sink, flush_threshold=2)
        orchestrator = build_orchestrator(make_client(), aggregator=aggregator)
        records = [Record(str(i), f"Name {i}", "0811") for i in range(5)]

        states = await orchestrator.run(records, collect=False)

        assert states == []
        assert len(sink.rows) == 4
        await aggregator.close()
        assert sorted(s.record.identifier for s in sink.rows) == ["0", "1", "2", "3", "4"]
        assert orchestrator.stats['queued'] == 5

    @pytest.mark.asyncio
    async def test_uncollected_run_interrupts_leftovers(self, make_client):
        sink = ListSink()
        aggregator = ResultAggregator(sink, flush_threshold=100)
        stop = asyncio.Event()
        stop.set()
        orchestrator = build_orchestrator(make_client(), aggregator=aggregator, stop_event=stop)

        await orchestrator.run([Record(str(i), f"Name {i}", "0811") for i in range(3)], collect=False)
        await aggregator.close()

        assert [s.status for s in sink.rows] == [SubmissionStatus.INTERRUPTED] * 3
