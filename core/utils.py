"""
Shared helpers: stop-aware sleeping and page text cleanup.
"""

import asyncio
import html
import re
from typing import Optional

_SCRIPT_STYLE = re.compile(r"<(script|style)[^>]*>[\s\S]*?</\1>", re.IGNORECASE)
_TAGS = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


async def interruptible_sleep(seconds: float, stop_event: Optional[asyncio.Event] = None) -> bool:
    """
    Sleep, waking early if the stop event is set.

    Returns:
        True if the stop event fired, False if the full delay elapsed
    """
    if seconds <= 0:
        return bool(stop_event and stop_event.is_set())
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


def html_to_text(markup: str) -> str:
    """Visible text of an HTML page with whitespace collapsed."""
    if not markup:
        return ""
    text = _SCRIPT_STYLE.sub(" ", markup)
    text = _TAGS.sub(" ", text)
    text = html.unescape(text)
    return _WHITESPACE.sub(" ", text).strip()


def truncate(text: str, limit: int) -> str:
    text = _WHITESPACE.sub(" ", text or "").strip()
    if len(text) <= limit:
        return text
    return text[:max(limit - 3, 0)] + "..."
