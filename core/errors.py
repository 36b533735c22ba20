"""
Submission Error Taxonomy
Categorized exceptions raised by clients, the session manager and the input layer.
"""

from typing import Optional

from .models import AttemptOutcome, FailureKind


class SubmissionError(Exception):
    """Base exception carrying the failure category and attempt outcome."""

    kind: FailureKind = FailureKind.TRANSPORT
    outcome: AttemptOutcome = AttemptOutcome.TRANSPORT_FAILURE
    retryable: bool = True

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"[{self.kind.value}] {message}")


class ValidationError(SubmissionError):
    """Bad input. Never retried."""
    kind = FailureKind.VALIDATION
    outcome = AttemptOutcome.REMOTE_REJECTED
    retryable = False

    def __init__(self, message: str, field_name: Optional[str] = None):
        self.field_name = field_name
        super().__init__(message)


class SchemaError(ValidationError):
    """The batch as a whole is unusable (e.g. first record lacks a column)."""


class TransportError(SubmissionError):
    """Network failure, timeout or server-side error."""
    kind = FailureKind.TRANSPORT


class AttemptTimeout(TransportError):
    """The client did not return before the per-attempt deadline."""
    kind = FailureKind.TIMEOUT

    def __init__(self, message: str = "attempt timeout"):
        super().__init__(message)


class ThrottledError(TransportError):
    """The remote asked us to slow down, optionally with a Retry-After hint."""
    kind = FailureKind.THROTTLED

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class SessionExpiredError(SubmissionError):
    """Anti-forgery token or cookies rejected (HTTP 419, TokenMismatch)."""
    kind = FailureKind.SESSION_EXPIRED
    outcome = AttemptOutcome.REMOTE_REJECTED


class RemoteRejectedError(SubmissionError):
    """The remote explicitly refused the submission."""
    kind = FailureKind.REMOTE_REJECTED
    outcome = AttemptOutcome.REMOTE_REJECTED


class RegistrationClosedError(RemoteRejectedError):
    """The form page reports registration is closed right now."""

    def __init__(self, message: str = "registration closed"):
        super().__init__(message)


def classify_exception(error: BaseException) -> FailureKind:
    """Map an arbitrary exception onto a failure kind."""
    if isinstance(error, SubmissionError):
        return error.kind

    error_str = str(error).lower()
    if 'timeout' in error_str or 'timed out' in error_str:
        return FailureKind.TIMEOUT
    if '429' in error_str or 'rate limit' in error_str:
        return FailureKind.THROTTLED
    return FailureKind.TRANSPORT
