#!/usr/bin/env python3
"""
Success Classifier - Decide what one submit call actually achieved.

The remote only reports its verdict through page wording, so the primary
channel is pattern matching on the response text. An optional fallback
status-check endpoint confirms ambiguous (or rejected) submissions.

Precedence:
    1. success / already-registered phrase in the primary text -> SUCCESS
    2. session-expired or rejection text in the primary -> REMOTE_REJECTED,
       unless the fallback (consulted once, after the grace delay) reports success
    3. nothing recognisable -> observe the primary until observe_timeout,
       fallback consulted once after the grace delay -> first decisive verdict
    4. still nothing -> AMBIGUOUS
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import (
    AttemptOutcome,
    FailureKind,
    FallbackResult,
    FallbackStatus,
    RawOutput,
    Record,
    SignalSource,
)
from .utils import html_to_text, interruptible_sleep, truncate

logger = logging.getLogger(__name__)


DEFAULT_SUCCESS_PATTERNS = [
    r"Pendaftaran\s+Berhasil",
    r"Berhasil\s+mendaftar",
    r"Pendaftaran\s+Anda\s+berhasil",
]
DEFAULT_ALREADY_REGISTERED_PATTERNS = [
    r"sudah\s+terdaftar",
    r"sudah\s+melakukan\s+pendaftaran",
]
DEFAULT_REJECTION_BLOCK_PATTERNS = [
    r'<div[^>]*class="[^"]*alert-danger[^"]*"[^>]*>([\s\S]*?)</div>',
]
DEFAULT_REJECTION_PATTERNS = [
    r"\bgagal\b",
    r"tidak\s+valid",
    r"terjadi\s+kesalahan",
    r"captcha\s+salah",
    r"submission\s+failed",
    r"something\s+went\s+wrong",
]
DEFAULT_SESSION_EXPIRED_PATTERNS = [
    r"\b419\b",
    r"Page\s+Expired",
    r"TokenMismatch",
]
DEFAULT_CLOSED_PATTERNS = [
    r"\bTUTUP\b",
    r"Pendaftaran\s+Ditutup",
]
DEFAULT_CONFIRMATION_PATTERNS = [
    r"Nomor\s+Antrian\s*:?\s*([A-Z0-9]+\s*[A-Z]?-\d+)",
    r"\bRef(?:erence)?\s*:\s*([A-Z0-9-]{4,})",
]


@dataclass
class ClassificationRules:
    """Pattern sets driving the classifier. All matching is case-insensitive."""
    success_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_SUCCESS_PATTERNS))
    already_registered_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_ALREADY_REGISTERED_PATTERNS)
    )
    already_registered_is_success: bool = True
    rejection_block_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_REJECTION_BLOCK_PATTERNS)
    )
    rejection_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_REJECTION_PATTERNS))
    session_expired_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_SESSION_EXPIRED_PATTERNS)
    )
    closed_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_CLOSED_PATTERNS))
    confirmation_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_CONFIRMATION_PATTERNS)
    )
    detail_max_length: int = 400

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClassificationRules":
        """Build rules from a (YAML) mapping; missing keys keep their defaults."""
        rules = cls()
        for key, value in (data or {}).items():
            if not hasattr(rules, key):
                raise KeyError(f"Unknown classification rule: {key}")
            if isinstance(getattr(rules, key), list) and isinstance(value, str):
                value = [value]
            setattr(rules, key, value)
        return rules


def _compile(patterns: List[str]) -> List[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


@dataclass
class Classification:
    """Verdict for one attempt."""
    outcome: AttemptOutcome
    detail: str = ""
    confirmation_id: Optional[str] = None
    source: SignalSource = SignalSource.PRIMARY
    failure_kind: FailureKind = FailureKind.NONE

    @property
    def is_success(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS


class SuccessClassifier:
    """
    Turns RawOutput into a Classification.

    Usage:
        classifier = SuccessClassifier(rules, fallback_checker=checker)
        verdict = await classifier.classify(raw, record, stop_event)
    """

    def __init__(
        self,
        rules: Optional[ClassificationRules] = None,
        fallback_checker=None,
        fallback_grace: float = 3.0,
        observe_timeout: float = 20.0,
        poll_interval: float = 0.4,
        fallback_timeout: float = 8.0,
        consult_fallback_on_rejection: bool = True,
    ):
        self.rules = rules or ClassificationRules()
        self.fallback_checker = fallback_checker
        self.fallback_grace = fallback_grace
        self.observe_timeout = observe_timeout
        self.poll_interval = poll_interval
        self.fallback_timeout = fallback_timeout
        self.consult_fallback_on_rejection = consult_fallback_on_rejection

        self._success = _compile(self.rules.success_patterns)
        self._already = _compile(self.rules.already_registered_patterns)
        self._blocks = _compile(self.rules.rejection_block_patterns)
        self._rejections = _compile(self.rules.rejection_patterns)
        self._expired = _compile(self.rules.session_expired_patterns)
        self._closed = _compile(self.rules.closed_patterns)
        self._confirmation = _compile(self.rules.confirmation_patterns)

        self.stats = {
            'primary_success': 0,
            'primary_rejected': 0,
            'fallback_success': 0,
            'fallback_rejected': 0,
            'ambiguous': 0,
        }

    # ---------- primary channel ----------

    def extract_confirmation(self, text: str) -> Optional[str]:
        plain = html_to_text(text)
        for pattern in self._confirmation:
            match = pattern.search(plain)
            if match:
                return re.sub(r"\s+", " ", match.group(1)).strip()
        return None

    def is_session_expired(self, text: str, status_code: Optional[int] = None) -> bool:
        if status_code == 419:
            return True
        return any(p.search(text or "") for p in self._expired)

    def is_closed(self, text: str) -> bool:
        plain = html_to_text(text)
        return any(p.search(plain) for p in self._closed)

    def rejection_text(self, text: str) -> Optional[str]:
        """Rejection message if the page carries one, else None."""
        for pattern in self._blocks:
            match = pattern.search(text or "")
            if match:
                body = html_to_text(match.group(1) if match.groups() else match.group(0))
                if body:
                    return truncate(body, self.rules.detail_max_length)

        plain = html_to_text(text)
        for pattern in self._rejections:
            match = pattern.search(plain)
            if match:
                start = max(match.start() - 80, 0)
                return truncate(plain[start:match.end() + 160], self.rules.detail_max_length)
        return None

    def scan(self, text: str, status_code: Optional[int] = None) -> Optional[Classification]:
        """
        Classify primary text alone.

        Returns:
            A decisive Classification, or None when the text is ambiguous
        """
        plain = html_to_text(text)

        if any(p.search(plain) for p in self._success):
            return Classification(
                outcome=AttemptOutcome.SUCCESS,
                detail="",
                confirmation_id=self.extract_confirmation(text),
            )

        if any(p.search(plain) for p in self._already):
            if self.rules.already_registered_is_success:
                return Classification(
                    outcome=AttemptOutcome.SUCCESS,
                    detail="already registered",
                    confirmation_id=self.extract_confirmation(text),
                )
            return Classification(
                outcome=AttemptOutcome.REMOTE_REJECTED,
                detail="already registered",
                failure_kind=FailureKind.REMOTE_REJECTED,
            )

        if self.is_session_expired(text, status_code):
            return Classification(
                outcome=AttemptOutcome.REMOTE_REJECTED,
                detail="session expired",
                failure_kind=FailureKind.SESSION_EXPIRED,
            )

        rejection = self.rejection_text(text)
        if rejection:
            return Classification(
                outcome=AttemptOutcome.REMOTE_REJECTED,
                detail=rejection,
                failure_kind=FailureKind.REMOTE_REJECTED,
            )

        if any(p.search(plain) for p in self._closed):
            return Classification(
                outcome=AttemptOutcome.REMOTE_REJECTED,
                detail="registration closed",
                failure_kind=FailureKind.REMOTE_REJECTED,
            )

        return None

    # ---------- fallback channel ----------

    async def _check_fallback(self, record: Record) -> FallbackResult:
        try:
            return await asyncio.wait_for(
                self.fallback_checker.check(record), timeout=self.fallback_timeout
            )
        except asyncio.TimeoutError:
            return FallbackResult.unavailable("fallback timeout")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[Classifier] Fallback check failed for {record.identifier}: {e}")
            return FallbackResult.unavailable(str(e))

    def _from_fallback(self, result: FallbackResult) -> Optional[Classification]:
        if result.status == FallbackStatus.SUCCESS:
            self.stats['fallback_success'] += 1
            return Classification(
                outcome=AttemptOutcome.SUCCESS,
                detail=truncate(result.detail, self.rules.detail_max_length),
                confirmation_id=result.confirmation_id,
                source=SignalSource.FALLBACK,
            )
        if result.status == FallbackStatus.REJECTED:
            self.stats['fallback_rejected'] += 1
            return Classification(
                outcome=AttemptOutcome.REMOTE_REJECTED,
                detail=truncate(result.detail or "rejected by status check", self.rules.detail_max_length),
                confirmation_id=result.confirmation_id,
                source=SignalSource.FALLBACK,
                failure_kind=FailureKind.REMOTE_REJECTED,
            )
        return None

    # ---------- full decision ----------

    async def classify(
        self,
        raw: RawOutput,
        record: Record,
        stop_event: Optional[asyncio.Event] = None,
        submitted_at: Optional[float] = None,
    ) -> Classification:
        """
        Decide the outcome of one attempt.

        Args:
            raw: Output of the form client's submit call
            record: The record that was submitted (fallback lookup key)
            stop_event: Global stop signal; ends any observation early
            submitted_at: time.monotonic() of the submit; grace is measured from it
        """
        submitted_at = submitted_at if submitted_at is not None else time.monotonic()

        verdict = self.scan(raw.text, raw.status_code)
        if verdict is not None and verdict.is_success:
            self.stats['primary_success'] += 1
            return verdict

        if verdict is not None:
            self.stats['primary_rejected'] += 1
            if (
                self.fallback_checker is None
                or not self.consult_fallback_on_rejection
                or verdict.failure_kind == FailureKind.SESSION_EXPIRED
            ):
                return verdict
            if await self._wait_grace(submitted_at, stop_event):
                return verdict
            confirmed = self._from_fallback(await self._check_fallback(record))
            if confirmed is not None and confirmed.is_success:
                logger.info(f"[Classifier] {record.identifier}: fallback overrides primary rejection")
                return confirmed
            return verdict

        return await self._observe(raw, record, stop_event, submitted_at)

    async def _wait_grace(self, submitted_at: float, stop_event: Optional[asyncio.Event]) -> bool:
        remaining = self.fallback_grace - (time.monotonic() - submitted_at)
        return await interruptible_sleep(remaining, stop_event)

    async def _observe(
        self,
        raw: RawOutput,
        record: Record,
        stop_event: Optional[asyncio.Event],
        submitted_at: float,
    ) -> Classification:
        """Poll the primary and consult the fallback once until something decides."""
        deadline = submitted_at + self.observe_timeout
        fallback_used = self.fallback_checker is None
        rejection: Optional[Classification] = None

        while True:
            if stop_event is not None and stop_event.is_set():
                break

            now = time.monotonic()
            if not fallback_used and now - submitted_at >= self.fallback_grace:
                fallback_used = True
                decided = self._from_fallback(await self._check_fallback(record))
                if decided is not None and decided.is_success:
                    return decided
                if decided is not None:
                    rejection = decided
                if not raw.can_refresh:
                    break

            if raw.can_refresh:
                try:
                    text = await raw.refresh()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.debug(f"[Classifier] Refresh failed for {record.identifier}: {e}")
                    text = None
                if text:
                    verdict = self.scan(text)
                    if verdict is not None and verdict.is_success:
                        self.stats['primary_success'] += 1
                        return verdict
                    if verdict is not None and fallback_used:
                        self.stats['primary_rejected'] += 1
                        return verdict
                    if verdict is not None and rejection is None:
                        # Primary rejection still waits for the fallback's one look
                        rejection = verdict
            elif fallback_used:
                break

            now = time.monotonic()
            if now >= deadline:
                break

            if raw.can_refresh:
                wait = self.poll_interval
            else:
                wait = self.fallback_grace - (now - submitted_at)
            wait = min(max(wait, 0.0), deadline - now)
            if await interruptible_sleep(wait, stop_event):
                break

        if rejection is not None:
            return rejection

        self.stats['ambiguous'] += 1
        return Classification(
            outcome=AttemptOutcome.AMBIGUOUS,
            detail="no recognisable confirmation or rejection",
            source=SignalSource.NONE,
            failure_kind=FailureKind.AMBIGUOUS,
        )
