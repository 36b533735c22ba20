"""
Fallback Checker - Independent status endpoint that confirms a registration.

Answers are normalized into FallbackResult; the endpoint being down is
"unavailable", never an exception.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from core.models import FallbackResult, FallbackStatus, Record

logger = logging.getLogger(__name__)

CONFIRMATION_KEYS = ("noAntrian", "no_antrian", "queue_number", "ref", "reference")
MESSAGE_KEYS = ("message", "error", "msg")


def parse_status_payload(data: Any) -> FallbackResult:
    """
    Normalize a status-check JSON body.

    Success when `success` is true, `status` is "success" or `code` is 200;
    explicit failure flags mean rejected; anything else is unavailable.
    """
    if not isinstance(data, dict):
        return FallbackResult.unavailable("unexpected status payload")

    message = ""
    for key in MESSAGE_KEYS:
        if data.get(key):
            message = str(data[key])
            break

    success = (
        data.get("success") is True
        or str(data.get("status", "")).lower() == "success"
        or data.get("code") == 200
    )
    if success:
        body = data.get("data") or data.get("result") or {}
        confirmation = None
        if isinstance(body, dict):
            for key in CONFIRMATION_KEYS:
                if body.get(key):
                    confirmation = str(body[key])
                    break
        return FallbackResult(
            status=FallbackStatus.SUCCESS,
            detail=message,
            confirmation_id=confirmation,
            raw=data,
        )

    failed = (
        data.get("success") is False
        or str(data.get("status", "")).lower() in ("error", "failed", "fail")
        or (isinstance(data.get("code"), int) and 400 <= data["code"] < 500)
    )
    if failed:
        return FallbackResult(
            status=FallbackStatus.REJECTED,
            detail=message or "rejected by status check",
            raw=data,
        )

    return FallbackResult.unavailable(message or "inconclusive status payload")


class FallbackStatusChecker:
    """POSTs {ktp, phone, name} as JSON to the status endpoint."""

    def __init__(self, url: str, timeout: float = 8.0, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self.stats = {
            'checks': 0,
            'success': 0,
            'rejected': 0,
            'unavailable': 0,
        }

    async def check(self, record: Record) -> FallbackResult:
        self.stats['checks'] += 1
        payload = {"ktp": record.identifier, "phone": record.phone, "name": record.name}
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload, headers=self.headers) as resp:
                    if resp.status != 200:
                        text = await resp.text(errors="replace")
                        logger.debug(f"[Fallback] HTTP {resp.status}: {text[:200]}")
                        result = FallbackResult.unavailable(f"status check HTTP {resp.status}")
                    else:
                        data = await resp.json(content_type=None)
                        result = parse_status_payload(data)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"[Fallback] Status check failed for {record.identifier}: {e}")
            result = FallbackResult.unavailable(f"{type(e).__name__}: {e}")

        self.stats[result.status.value] += 1
        logger.debug(f"[Fallback] {record.identifier}: {result.status.value} {result.detail}")
        return result
