"""
Core components for resilient batch registration.

Modules:
- models: Records, attempts and per-item state machine
- deduplicator: Normalize input and keep one record per identifier
- session_manager: Fresh or pooled cookie/token sessions
- classifier: Page-text and fallback success classification
- retry_handler: Exponential backoff with jitter
- rate_limiter: Adaptive concurrency controller
- orchestrator: Ties everything together
- aggregator: Buffered terminal-result reporting
"""

from .models import (
    AttemptOutcome,
    AttemptRecord,
    FailureKind,
    Record,
    SessionContext,
    SubmissionState,
    SubmissionStatus,
)
from .deduplicator import RecordDeduplicator, DeduplicationResult
from .session_manager import SessionManager
from .classifier import ClassificationRules, Classification, SuccessClassifier
from .retry_handler import ExponentialBackoffRetry, RetryDecision
from .rate_limiter import AdaptiveConcurrencyController, select_initial_limit
from .orchestrator import SubmissionOrchestrator
from .aggregator import ResultAggregator

__all__ = [
    "AttemptOutcome",
    "AttemptRecord",
    "FailureKind",
    "Record",
    "SessionContext",
    "SubmissionState",
    "SubmissionStatus",
    "RecordDeduplicator",
    "DeduplicationResult",
    "SessionManager",
    "ClassificationRules",
    "Classification",
    "SuccessClassifier",
    "ExponentialBackoffRetry",
    "RetryDecision",
    "AdaptiveConcurrencyController",
    "select_initial_limit",
    "SubmissionOrchestrator",
    "ResultAggregator",
]
