#!/usr/bin/env python3
"""
Batch Runner - Wires configuration into a complete registration run.

Usage:
    runner = BatchRunner(load_config("batch.yaml"))
    summary = await runner.run("records.csv", start_at="15:00:00")

Steps:
    load -> deduplicate -> (wait for start time) -> (wait for target)
    -> orchestrate -> flush report -> summary
"""

import asyncio
import logging
import signal
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from core.aggregator import ResultAggregator
from core.classifier import ClassificationRules, SuccessClassifier
from core.config import AppConfig
from core.deduplicator import RecordDeduplicator, lookup_field
from core.models import Record
from core.orchestrator import SubmissionOrchestrator
from core.rate_limiter import AdaptiveConcurrencyController, select_initial_limit
from core.retry_handler import ExponentialBackoffRetry
from core.session_manager import SessionManager
from core.utils import interruptible_sleep
from clients.fallback_checker import FallbackStatusChecker
from clients.http_form_client import HttpFormClient
from monitoring.metrics import BatchMetrics
from .records_io import ReportWriter, load_records

logger = logging.getLogger(__name__)

# Start slightly after the scheduled second so the remote has switched over
SCHEDULE_OFFSET_SECONDS = 0.1


def parse_start_time(value: str) -> Tuple[int, int, int]:
    """Parse "HH:MM" or "HH:MM:SS"."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid start time {value!r}, expected HH:MM[:SS]")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    if not (0 <= hour < 24 and 0 <= minute < 60 and 0 <= second < 60):
        raise ValueError(f"Invalid start time {value!r}")
    return hour, minute, second


def seconds_until(hour: int, minute: int = 0, second: int = 0, now: Optional[datetime] = None) -> float:
    """Delay until the next occurrence of the wall-clock time (tomorrow if already past)."""
    now = now or datetime.now()
    target = now.replace(hour=hour, minute=minute, second=second, microsecond=0)
    target += timedelta(seconds=SCHEDULE_OFFSET_SECONDS)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class BatchRunner:
    """Builds every component from AppConfig and runs one batch."""

    def __init__(self, config: AppConfig, client=None, fallback_checker=None, sink=None):
        self.config = config
        self.client = client
        self.fallback_checker = fallback_checker
        self.sink = sink
        self.stop_event = asyncio.Event()
        self.metrics: Optional[BatchMetrics] = None
        self.orchestrator: Optional[SubmissionOrchestrator] = None
        self._owns_client = client is None

    def request_stop(self):
        if not self.stop_event.is_set():
            logger.warning("[Runner] Shutdown requested, finishing in-flight attempts...")
            self.stop_event.set()

    def install_signal_handlers(self):
        """SIGINT/SIGTERM set the stop signal instead of killing the process."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

    def _build_client(self):
        if self.config.CLIENT_KIND == "browser":
            from clients.browser_form_client import BrowserFormClient
            return BrowserFormClient(
                headless=self.config.HEADLESS,
                field_map=self.config.FORM_FIELD_MAP,
                consent_fields=self.config.FORM_CONSENT_FIELDS,
                navigation_timeout=self.config.ATTEMPT_TIMEOUT_SECONDS,
            )
        return HttpFormClient(
            field_map=self.config.FORM_FIELD_MAP,
            consent_fields=self.config.FORM_CONSENT_FIELDS,
            request_timeout=self.config.ATTEMPT_TIMEOUT_SECONDS,
        )

    def build(self, now: Optional[datetime] = None) -> SubmissionOrchestrator:
        """Create the orchestrator and its collaborators."""
        cfg = self.config
        if self.client is None:
            self.client = self._build_client()
        if self.fallback_checker is None and cfg.FALLBACK_CHECK_URL:
            self.fallback_checker = FallbackStatusChecker(
                cfg.FALLBACK_CHECK_URL, timeout=cfg.FALLBACK_TIMEOUT_SECONDS
            )
        if self.sink is None:
            self.sink = ReportWriter(cfg.OUTPUT_DIR)

        rules = ClassificationRules.from_dict(cfg.CLASSIFICATION_RULES)
        if "detail_max_length" not in cfg.CLASSIFICATION_RULES:
            rules.detail_max_length = cfg.DETAIL_MAX_LENGTH

        initial = select_initial_limit(
            cfg.INITIAL_CONCURRENCY,
            peak_hour=cfg.PEAK_HOUR,
            peak_minute_range=cfg.PEAK_MINUTE_RANGE,
            peak_hour_limit=cfg.PEAK_HOUR_CONCURRENCY,
            now=now,
        )

        self.metrics = BatchMetrics(window_size=max(100, cfg.ADAPT_WINDOW))
        self.orchestrator = SubmissionOrchestrator(
            client=self.client,
            session_manager=SessionManager(
                client=self.client,
                target=cfg.TARGET_URL,
                fresh_per_item=cfg.FRESH_SESSION_PER_ITEM,
                cache_size=cfg.SESSION_CACHE_SIZE,
                max_age=cfg.SESSION_MAX_AGE_SECONDS,
            ),
            classifier=SuccessClassifier(
                rules,
                fallback_checker=self.fallback_checker,
                fallback_grace=cfg.FALLBACK_GRACE_SECONDS,
                observe_timeout=cfg.OBSERVE_TIMEOUT_SECONDS,
                poll_interval=cfg.OBSERVE_POLL_SECONDS,
                fallback_timeout=cfg.FALLBACK_TIMEOUT_SECONDS,
            ),
            retry_policy=ExponentialBackoffRetry(
                max_attempts=cfg.MAX_ATTEMPTS,
                base_delay=cfg.BACKOFF_BASE_SECONDS,
                factor=cfg.BACKOFF_FACTOR,
                max_delay=cfg.BACKOFF_MAX_SECONDS,
                jitter=cfg.BACKOFF_JITTER_SECONDS,
                fast_retry_range=(cfg.FAST_RETRY_MIN_SECONDS, cfg.FAST_RETRY_MAX_SECONDS),
            ),
            controller=AdaptiveConcurrencyController(
                initial_limit=initial,
                max_limit=cfg.PEAK_CONCURRENCY,
                window=cfg.ADAPT_WINDOW,
                error_rate_high=cfg.ERROR_RATE_HIGH,
                error_rate_low=cfg.ERROR_RATE_LOW,
                latency_high=cfg.LATENCY_HIGH_SECONDS,
                latency_low=cfg.LATENCY_LOW_SECONDS,
                min_interval=cfg.MIN_ADMISSION_INTERVAL,
                admission_jitter=cfg.ADMISSION_JITTER,
            ),
            aggregator=ResultAggregator(self.sink, flush_threshold=cfg.FLUSH_THRESHOLD),
            metrics=self.metrics,
            target=cfg.TARGET_URL,
            max_attempts=cfg.MAX_ATTEMPTS,
            attempt_timeout=cfg.ATTEMPT_TIMEOUT_SECONDS,
            stop_event=self.stop_event,
        )
        return self.orchestrator

    async def wait_for_start(self, start_at: str) -> bool:
        """Sleep until the scheduled time; False if stopped first."""
        hour, minute, second = parse_start_time(start_at)
        delay = seconds_until(hour, minute, second)
        logger.info(f"[Runner] Batch scheduled at {hour:02d}:{minute:02d}:{second:02d} (in {delay:.0f}s)")
        return not await interruptible_sleep(delay, self.stop_event)

    async def run(self, input_path: str, start_at: Optional[str] = None) -> Dict[str, Any]:
        """
        Execute one batch end to end.

        Raises:
            SchemaError / ValueError / OSError for unusable input (batch-level faults)
        """
        raw_rows = load_records(input_path)
        dedup = RecordDeduplicator(
            identifier_max_digits=self.config.IDENTIFIER_MAX_DIGITS,
            phone_max_digits=self.config.PHONE_MAX_DIGITS,
        ).deduplicate(raw_rows)

        if start_at and not await self.wait_for_start(start_at):
            logger.warning("[Runner] Stopped before the scheduled start")

        orchestrator = self.build()
        aggregator = orchestrator.aggregator

        try:
            reported = {record.identifier for record in dedup.accepted}
            for rejected in dedup.rejected:
                identifier = rejected.identifier or f"row-{rejected.index + 1}"
                # One state per identifier: a valid row with the same identifier owns it
                if identifier in reported:
                    logger.info(
                        f"[Runner] Row {rejected.index + 1} ({identifier}) not reported separately: "
                        f"{rejected.reason}"
                    )
                    continue
                reported.add(identifier)
                record = Record(
                    identifier=identifier,
                    name=str(lookup_field(rejected.raw, "name") or "").strip(),
                    phone="",
                )
                await orchestrator.reject(record, rejected.reason)

            if (
                self.config.PREFLIGHT_ENABLED
                and not self.stop_event.is_set()
                and hasattr(self.client, "wait_until_reachable")
            ):
                await self.client.wait_until_reachable(
                    self.config.TARGET_URL,
                    retry_seconds=self.config.PREFLIGHT_RETRY_SECONDS,
                    stop_event=self.stop_event,
                )

            if dedup.accepted and not self.stop_event.is_set() and hasattr(self.client, "start"):
                await self.client.start()

            await orchestrator.run(dedup.accepted, collect=False)
        finally:
            await aggregator.close()
            if self._owns_client and hasattr(self.client, "close"):
                await self.client.close()

        summary = {
            "input_rows": len(raw_rows),
            "unique_records": len(dedup.accepted),
            "rejected": len(dedup.rejected),
            "duplicates": len(dedup.duplicates),
            "results": aggregator.summary(),
            "metrics": self.metrics.get_summary(),
            "concurrency": orchestrator.controller.get_stats(),
            "interrupted": self.stop_event.is_set(),
            "processed": orchestrator.stats['queued'],
        }
        self.log_summary(summary)
        return summary

    @staticmethod
    def log_summary(summary: Dict[str, Any]):
        results = summary["results"]
        metrics = summary["metrics"]
        logger.info("=" * 60)
        logger.info("BATCH SUMMARY")
        logger.info("=" * 60)
        logger.info(
            f"Input rows: {summary['input_rows']} | unique: {summary['unique_records']} | "
            f"rejected: {summary['rejected']} | duplicates: {summary['duplicates']}"
        )
        for status, count in results.items():
            if status != "total":
                logger.info(f"  {status}: {count}")
        logger.info(
            f"Attempts: {metrics['total_attempts']} | success rate {metrics['success_rate']:.1%} | "
            f"avg {metrics['avg_response_seconds']:.2f}s | p95 {metrics['p95_response_seconds']:.2f}s"
        )
        logger.info(
            f"Concurrency: final limit {summary['concurrency']['limit']}, "
            f"peak in flight {summary['concurrency']['peak_active']}"
        )
