"""
Session/Token Manager

Hands each attempt a SessionContext (cookie jar, user agent, anti-forgery
token, challenge text). Fresh per item by default; optionally pooled per
identifier in a bounded LRU cache.
"""

import asyncio
import logging
import random
import re
from collections import OrderedDict
from typing import Any, Callable, List, Optional, Union

import aiohttp

from .config import USER_AGENTS
from .models import RawOutput, Record, SessionContext

logger = logging.getLogger(__name__)


EXPIRED_RESPONSE_PATTERNS = [
    r"\b419\b",
    r"Page\s+Expired",
    r"TokenMismatch",
]


class SessionManager:
    """
    Provides SessionContexts to the orchestrator.

    A context is exclusive to one in-flight attempt: pooled contexts that are
    in use are never handed out again until released.

    Args:
        client: Form client; its optional `prime(target, ctx)` fills token/challenge
        target: Form URL passed to prime()
        fresh_per_item: True -> new context every attempt, never cached
        cache_size: LRU capacity in pooled mode
        max_age: Seconds a pooled context stays reusable
    """

    def __init__(
        self,
        client: Any = None,
        target: str = "",
        fresh_per_item: bool = True,
        cache_size: int = 50,
        max_age: float = 600.0,
        user_agents: Optional[List[str]] = None,
        cookie_jar_factory: Optional[Callable[[], Any]] = None,
        expired_patterns: Optional[List[str]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.target = target
        self.fresh_per_item = fresh_per_item
        self.cache_size = max(cache_size, 1)
        self.max_age = max_age
        self.user_agents = user_agents or USER_AGENTS
        self._cookie_jar_factory = cookie_jar_factory or (lambda: aiohttp.CookieJar(unsafe=True))
        self._expired = [
            re.compile(p, re.IGNORECASE) for p in (expired_patterns or EXPIRED_RESPONSE_PATTERNS)
        ]
        self._rng = rng or random.Random()

        self._cache: "OrderedDict[str, SessionContext]" = OrderedDict()
        self._lock = asyncio.Lock()

        self.stats = {
            'created': 0,
            'reused': 0,
            'expired': 0,
            'evicted': 0,
        }

    async def acquire(self, record: Record, attempt_number: int = 1) -> SessionContext:
        """
        Get a context for one attempt.

        Raises:
            Whatever the client's prime() raises (TransportError, RegistrationClosedError)
        """
        if not self.fresh_per_item:
            async with self._lock:
                cached = self._cache.get(record.identifier)
                if cached is not None and self._reusable(cached):
                    cached.in_use = True
                    cached.uses += 1
                    self._cache.move_to_end(record.identifier)
                    self.stats['reused'] += 1
                    logger.debug(
                        f"[Session] Reusing {cached.session_id} for {record.identifier} "
                        f"(attempt {attempt_number})"
                    )
                    return cached
                if cached is not None and not cached.in_use:
                    self._cache.pop(record.identifier, None)

        ctx = await self._create(record)

        if not self.fresh_per_item:
            async with self._lock:
                current = self._cache.get(record.identifier)
                # Only replace an idle entry; a busy one stays owned by its attempt
                if current is None or not current.in_use:
                    self._cache[record.identifier] = ctx
                    self._cache.move_to_end(record.identifier)
                    self._evict()
        return ctx

    async def release(self, record: Record, ctx: SessionContext, expired: bool = False):
        """Return a context after its attempt; expired contexts are discarded."""
        ctx.in_use = False
        if expired:
            ctx.expired = True
            self.stats['expired'] += 1
            logger.info(f"[Session] Discarding expired session {ctx.session_id} ({record.identifier})")

        if self.fresh_per_item:
            return

        async with self._lock:
            cached = self._cache.get(record.identifier)
            if cached is ctx and (expired or not self._reusable(ctx)):
                self._cache.pop(record.identifier, None)
            self._evict()

    def is_expired_response(self, response: Union[RawOutput, str], status_code: Optional[int] = None) -> bool:
        """True for '419 / Page Expired / TokenMismatch' responses."""
        if isinstance(response, RawOutput):
            text, status_code = response.text, response.status_code
        else:
            text = response
        if status_code == 419:
            return True
        return any(p.search(text or "") for p in self._expired)

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    def _reusable(self, ctx: SessionContext) -> bool:
        return not ctx.in_use and not ctx.expired and ctx.age_seconds() < self.max_age

    def _evict(self):
        """Drop least-recently-used idle entries beyond capacity."""
        for identifier in list(self._cache.keys()):
            if len(self._cache) <= self.cache_size:
                break
            if not self._cache[identifier].in_use:
                self._cache.pop(identifier)
                self.stats['evicted'] += 1

    async def _create(self, record: Record) -> SessionContext:
        ctx = SessionContext(
            cookie_store=self._cookie_jar_factory(),
            user_agent_id=self._rng.choice(self.user_agents),
            in_use=True,
        )
        ctx.uses = 1
        prime = getattr(self.client, "prime", None)
        if prime is not None:
            await prime(self.target, ctx)
        self.stats['created'] += 1
        logger.debug(f"[Session] New session {ctx.session_id} for {record.identifier}")
        return ctx
