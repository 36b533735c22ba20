#!/usr/bin/env python3
"""
HTTP Form Client - Plain aiohttp implementation of the form session protocol.

Flow per attempt:
    prime():  GET form page -> closed check, _token + challenge text into the session
    submit(): POST form-urlencoded payload with the session's cookies and token
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, List, Optional

import aiohttp

from core.errors import RegistrationClosedError, ThrottledError, TransportError
from core.models import RawOutput, SessionContext
from core.utils import html_to_text, interruptible_sleep

logger = logging.getLogger(__name__)


TOKEN_PATTERN = re.compile(r'name="_token"\s+value="([^"]+)"', re.IGNORECASE)
TOKEN_PATTERN_REVERSED = re.compile(r'value="([^"]+)"\s+name="_token"', re.IGNORECASE)
CHALLENGE_PATTERN = re.compile(
    r"""<div[^>]+id=["']captcha-box["'][^>]*>([\s\S]*?)</div>""", re.IGNORECASE
)
CLOSED_PATTERN = re.compile(r"\bTUTUP\b|\bMAAF\b|Pendaftaran\s+Ditutup", re.IGNORECASE)

THROTTLE_STATUSES = (429, 503)

DEFAULT_FIELD_MAP = {
    "name": "name",
    "identifier": "ktp",
    "phone": "phone_number",
    "challenge": "captcha_input",
    "token": "_token",
}
DEFAULT_CONSENT_FIELDS = ["check", "check_2"]

BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "id-ID,id;q=0.9,en-US;q=0.8,en;q=0.7",
    "DNT": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "same-origin",
    "Upgrade-Insecure-Requests": "1",
}


def extract_token(html: str) -> Optional[str]:
    """Anti-forgery token from the form's hidden `_token` input."""
    match = TOKEN_PATTERN.search(html or "") or TOKEN_PATTERN_REVERSED.search(html or "")
    return match.group(1) if match else None


def extract_challenge(html: str) -> str:
    """Text the page shows in its challenge box, whitespace removed."""
    match = CHALLENGE_PATTERN.search(html or "")
    if not match:
        return ""
    return re.sub(r"\s+", "", html_to_text(match.group(1)))


def is_closed_page(html: str) -> bool:
    return bool(CLOSED_PATTERN.search(html_to_text(html)))


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header as seconds (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class HttpFormClient:
    """
    Submits the registration form with aiohttp.

    Each call opens a short-lived ClientSession around the SessionContext's
    cookie jar, so cookies from prime() carry into submit().
    """

    def __init__(
        self,
        field_map: Optional[Dict[str, str]] = None,
        consent_fields: Optional[List[str]] = None,
        request_timeout: float = 20.0,
        verify_ssl: bool = True,
    ):
        self.field_map = {**DEFAULT_FIELD_MAP, **(field_map or {})}
        self.consent_fields = list(consent_fields if consent_fields is not None else DEFAULT_CONSENT_FIELDS)
        self.request_timeout = request_timeout
        self.verify_ssl = verify_ssl

        self.stats = {
            'primed': 0,
            'submitted': 0,
            'throttled': 0,
            'errors': 0,
        }

    def _session(self, ctx: SessionContext, timeout: Optional[float] = None) -> aiohttp.ClientSession:
        kwargs = {}
        if not self.verify_ssl:
            kwargs["connector"] = aiohttp.TCPConnector(ssl=False)
        return aiohttp.ClientSession(
            cookie_jar=ctx.cookie_store,
            headers={**BASE_HEADERS, "User-Agent": ctx.user_agent_id},
            timeout=aiohttp.ClientTimeout(total=timeout or self.request_timeout),
            **kwargs,
        )

    def _check_status(self, status: int, headers, text: str):
        if status in THROTTLE_STATUSES:
            self.stats['throttled'] += 1
            raise ThrottledError(f"HTTP {status}", retry_after=parse_retry_after(headers.get("Retry-After")))
        if status >= 500:
            raise TransportError(f"HTTP {status}: {html_to_text(text)[:120]}")

    async def prime(self, target: str, ctx: SessionContext):
        """
        Load the form page into the session.

        Raises:
            RegistrationClosedError: page says registration is closed
            TransportError / ThrottledError: network or server trouble
        """
        try:
            async with self._session(ctx) as session:
                async with session.get(target) as resp:
                    html = await resp.text(errors="replace")
                    self._check_status(resp.status, resp.headers, html)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats['errors'] += 1
            raise TransportError(f"{type(e).__name__}: {e}")

        if is_closed_page(html):
            raise RegistrationClosedError()

        token = extract_token(html)
        if not token:
            raise TransportError("form token not found")

        ctx.anti_forgery_token = token
        ctx.captured_challenge_text = extract_challenge(html)
        self.stats['primed'] += 1
        logger.debug(f"[HttpForm] Primed session {ctx.session_id}")

    def build_payload(self, values: Dict[str, str], ctx: SessionContext) -> Dict[str, str]:
        """Form-urlencoded body for one record."""
        payload = {
            self.field_map["name"]: values["name"],
            self.field_map["identifier"]: values["identifier"],
            self.field_map["phone"]: values["phone"],
            self.field_map["challenge"]: ctx.captured_challenge_text or "",
        }
        for name in self.consent_fields:
            payload[name] = "on"
        if ctx.anti_forgery_token:
            payload[self.field_map["token"]] = ctx.anti_forgery_token
        return payload

    async def submit(
        self,
        target: str,
        values: Dict[str, str],
        ctx: SessionContext,
        timeout: Optional[float] = None,
    ) -> RawOutput:
        """
        POST the form.

        Args:
            target: Form URL
            values: Logical values (identifier, name, phone)
            ctx: Primed session
            timeout: Seconds left before the attempt deadline
        """
        payload = self.build_payload(values, ctx)
        try:
            async with self._session(ctx, timeout) as session:
                async with session.post(
                    target,
                    data=payload,
                    headers={"Referer": target, "Origin": _origin(target)},
                ) as resp:
                    html = await resp.text(errors="replace")
                    self._check_status(resp.status, resp.headers, html)
                    self.stats['submitted'] += 1
                    return RawOutput(
                        text=html,
                        status_code=resp.status,
                        retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                        url=str(resp.url),
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats['errors'] += 1
            raise TransportError(f"{type(e).__name__}: {e}")

    async def wait_until_reachable(
        self,
        target: str,
        retry_seconds: float = 5.0,
        stop_event: Optional[asyncio.Event] = None,
        max_wait: Optional[float] = None,
    ) -> bool:
        """
        Pre-flight: HEAD the target until it answers without a server error.

        Returns:
            True once reachable, False if stopped or max_wait elapsed
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        checks = 0
        while True:
            checks += 1
            try:
                timeout = aiohttp.ClientTimeout(total=self.request_timeout)
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.head(target, allow_redirects=True) as resp:
                        if resp.status < 500:
                            logger.info(f"[HttpForm] {target} reachable (HTTP {resp.status})")
                            return True
                        logger.warning(f"[HttpForm] {target} answered HTTP {resp.status}, waiting...")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"[HttpForm] {target} not reachable ({type(e).__name__}), check {checks}")

            if max_wait is not None and loop.time() - started >= max_wait:
                return False
            if await interruptible_sleep(retry_seconds, stop_event):
                return False


def _origin(url: str) -> str:
    match = re.match(r"^(https?://[^/]+)", url)
    return match.group(1) if match else url
