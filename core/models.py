#!/usr/bin/env python3
"""
Data Models for Batch Registration

Records, attempt history and per-item submission state shared by the
orchestrator, the session manager and the result aggregator.
"""

import time
import uuid
from typing import List, Optional, Dict, Any, Tuple
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime


# ============== Enums ==============

class SubmissionStatus(str, Enum):
    """Lifecycle of one record's submission."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    SubmissionStatus.SUCCEEDED,
    SubmissionStatus.EXHAUSTED,
    SubmissionStatus.INTERRUPTED,
})

# Allowed status moves; anything else is a programming error
ALLOWED_TRANSITIONS: Dict[SubmissionStatus, Tuple[SubmissionStatus, ...]] = {
    SubmissionStatus.PENDING: (
        SubmissionStatus.IN_PROGRESS,
        SubmissionStatus.EXHAUSTED,
        SubmissionStatus.INTERRUPTED,
    ),
    SubmissionStatus.IN_PROGRESS: (
        SubmissionStatus.SUCCEEDED,
        SubmissionStatus.EXHAUSTED,
        SubmissionStatus.INTERRUPTED,
    ),
    SubmissionStatus.SUCCEEDED: (),
    SubmissionStatus.EXHAUSTED: (),
    SubmissionStatus.INTERRUPTED: (),
}


class AttemptOutcome(str, Enum):
    """Outcome of one submit-and-classify cycle."""
    SUCCESS = "success"
    REMOTE_REJECTED = "remote_rejected"
    AMBIGUOUS = "ambiguous"
    TRANSPORT_FAILURE = "transport_failure"


class FailureKind(str, Enum):
    """Finer failure categories used by the retry policy."""
    NONE = "none"
    VALIDATION = "validation"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    THROTTLED = "throttled"
    SESSION_EXPIRED = "session_expired"
    REMOTE_REJECTED = "remote_rejected"
    AMBIGUOUS = "ambiguous"


class SignalSource(str, Enum):
    """Channel that decided an attempt's outcome."""
    PRIMARY = "primary"
    FALLBACK = "fallback"
    NONE = "none"


# ============== Data Models ==============

@dataclass(frozen=True)
class Record:
    """One applicant to register. Identity is the identifier."""
    identifier: str
    name: str
    phone: str

    def to_form_values(self) -> Dict[str, str]:
        return {
            "identifier": self.identifier,
            "name": self.name,
            "phone": self.phone,
        }


@dataclass(frozen=True)
class AttemptRecord:
    """Immutable audit entry for one attempt."""
    attempt_number: int
    started_at: datetime
    ended_at: datetime
    outcome: AttemptOutcome
    detail: str = ""
    used_session_id: Optional[str] = None
    failure_kind: FailureKind = FailureKind.NONE
    source: SignalSource = SignalSource.NONE
    confirmation_id: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "outcome": self.outcome.value,
            "detail": self.detail,
            "used_session_id": self.used_session_id,
            "failure_kind": self.failure_kind.value,
            "source": self.source.value,
            "confirmation_id": self.confirmation_id,
        }


class InvalidTransition(RuntimeError):
    """Raised when a submission state is moved backwards or re-opened."""


@dataclass
class SubmissionState:
    """
    Per-record state owned by exactly one orchestrator task.

    Status only moves forward (see ALLOWED_TRANSITIONS) and the attempt
    list is frozen once a terminal status is reached.
    """
    record: Record
    max_attempts: int
    attempts: List[AttemptRecord] = field(default_factory=list)
    status: SubmissionStatus = SubmissionStatus.PENDING
    final_result: str = ""
    completed_at: Optional[datetime] = None

    @property
    def attempts_made(self) -> int:
        return len(self.attempts)

    @property
    def last_attempt(self) -> Optional[AttemptRecord]:
        return self.attempts[-1] if self.attempts else None

    @property
    def confirmation_id(self) -> Optional[str]:
        last = self.last_attempt
        if last and last.outcome == AttemptOutcome.SUCCESS:
            return last.confirmation_id
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, new_status: SubmissionStatus, final_result: Optional[str] = None):
        """Move to a new status, refusing back-transitions."""
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"{self.record.identifier}: {self.status.value} -> {new_status.value} not allowed"
            )
        self.status = new_status
        if final_result is not None:
            self.final_result = final_result
        if new_status.is_terminal:
            self.completed_at = datetime.now()

    def append_attempt(self, attempt: AttemptRecord):
        """Add an attempt to the history."""
        if self.is_terminal:
            raise InvalidTransition(f"{self.record.identifier}: state is final")
        if self.status != SubmissionStatus.IN_PROGRESS:
            raise InvalidTransition(f"{self.record.identifier}: attempts require in_progress")
        if len(self.attempts) >= self.max_attempts:
            raise InvalidTransition(
                f"{self.record.identifier}: attempt limit {self.max_attempts} reached"
            )
        self.attempts.append(attempt)

    def to_report_row(self) -> Dict[str, Any]:
        """Flat row for the output report."""
        return {
            "identifier": self.record.identifier,
            "final_status": self.status.value,
            "attempts_made": self.attempts_made,
            "last_detail": self.final_result,
            "confirmation_id": self.confirmation_id or "",
            "completed_at": self.completed_at.isoformat() if self.completed_at else "",
        }

    def to_audit_dict(self) -> Dict[str, Any]:
        """Full history for the audit trail."""
        return {
            **self.to_report_row(),
            "name": self.record.name,
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass
class SessionContext:
    """
    Credentials needed for one valid submission.

    Exclusive to one in-flight attempt; `in_use` guards against a pooled
    context being handed out twice.
    """
    cookie_store: Any
    user_agent_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    anti_forgery_token: Optional[str] = None
    captured_challenge_text: Optional[str] = None
    created_at: float = field(default_factory=time.monotonic)
    uses: int = 0
    in_use: bool = False
    expired: bool = False

    def age_seconds(self) -> float:
        return time.monotonic() - self.created_at

    @property
    def is_primed(self) -> bool:
        return self.anti_forgery_token is not None


@dataclass
class RawOutput:
    """
    Observable output of one submit call.

    `refresh` re-reads the live page (browser clients); `release` frees
    whatever the client kept open for observation.
    """
    text: str
    status_code: Optional[int] = None
    retry_after: Optional[float] = None
    url: Optional[str] = None
    refresh: Optional[Any] = None
    release: Optional[Any] = None

    @property
    def can_refresh(self) -> bool:
        return self.refresh is not None

    async def aclose(self):
        if self.release is not None:
            await self.release()


class FallbackStatus(str, Enum):
    """Verdict of the independent status-check channel."""
    SUCCESS = "success"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class FallbackResult:
    """Structured answer from a fallback checker."""
    status: FallbackStatus
    detail: str = ""
    confirmation_id: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None

    @classmethod
    def unavailable(cls, detail: str) -> "FallbackResult":
        return cls(status=FallbackStatus.UNAVAILABLE, detail=detail)
