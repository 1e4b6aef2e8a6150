# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixed-window rate limiter for enqueue requests.

Each key owns a counter that lives for one window. ``allow`` counts the hit
first and then compares the post-increment value with the threshold, so a
rejected attempt still consumes a slot in the current window. Callers
should not retry within the same window.

The limiter is a safeguard, not a correctness mechanism: when the counter
backend fails it logs and lets the request through.

Example:
    limiter = RateLimiter(SqlCounterStore(db.rate_counters), window_seconds=60,
                          per_recipient=3, per_origin=20)
    if not await limiter.check_recipient("alice@example.com"):
        raise RateLimitExceeded("recipient:alice@example.com")
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .entities import RateCountersTable
    from .prometheus import QueueMetrics

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    """Key-value store with atomic increment-with-TTL."""

    async def incr(self, key: str, ttl: int) -> int:
        """Count one hit for ``key`` and return the post-increment value."""
        ...


class MemoryCounterStore:
    """Process-local counters. Suitable for a single process and for tests."""

    def __init__(self) -> None:
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def incr(self, key: str, ttl: int) -> int:
        now = time.time()
        async with self._lock:
            count, expires = self._counters.get(key, (0, 0.0))
            if expires <= now:
                count, expires = 0, now + ttl
            count += 1
            self._counters[key] = (count, expires)
            return count

    def clear(self) -> None:
        self._counters.clear()


class SqlCounterStore:
    """Counters persisted in the ``rate_counters`` table, shared by every process."""

    def __init__(self, table: RateCountersTable):
        self.table = table

    async def incr(self, key: str, ttl: int) -> int:
        return await self.table.incr(key, ttl=ttl, now_ts=int(time.time()))


class RateLimiter:
    """Per-recipient and per-origin limiter over a :class:`CounterStore`.

    The two key classes have independent thresholds; a request carrying both
    must pass both checks. A threshold of 0 disables its class.

    Attributes:
        store: Counter backend.
        window_seconds: Window length (counter TTL).
        per_recipient: Maximum hits per recipient address per window.
        per_origin: Maximum hits per origin key per window.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        window_seconds: int = 60,
        per_recipient: int = 3,
        per_origin: int = 20,
        metrics: QueueMetrics | None = None,
    ):
        self.store = store
        self.window_seconds = window_seconds
        self.per_recipient = per_recipient
        self.per_origin = per_origin
        self.metrics = metrics

    async def allow(self, key: str, limit: int, *, window_seconds: int | None = None) -> bool:
        """Count a hit for ``key``; False when the post-increment value exceeds ``limit``."""
        if limit <= 0:
            return True
        ttl = window_seconds or self.window_seconds
        try:
            count = await self.store.incr(key, ttl)
        except Exception as exc:
            logger.warning("Rate limit backend unavailable for %s, allowing: %s", key, exc)
            return True
        if count > limit:
            logger.info("Rate limit exceeded for %s (%d > %d)", key, count, limit)
            if self.metrics is not None:
                self.metrics.inc_rate_limited(key.split(":", 1)[0])
            return False
        return True

    async def check_recipient(self, email: str) -> bool:
        return await self.allow(f"recipient:{email.strip().lower()}", self.per_recipient)

    async def check_origin(self, origin: str) -> bool:
        return await self.allow(f"origin:{origin}", self.per_origin)

    async def check(self, recipient: str, origin: str | None = None) -> str | None:
        """Run every applicable check; return the rejected key, or None if allowed.

        Both checks are always counted so that a burst against one key class
        cannot hide behind the other.
        """
        rejected = None
        if not await self.check_recipient(recipient):
            rejected = f"recipient:{recipient.strip().lower()}"
        if origin and not await self.check_origin(origin):
            rejected = rejected or f"origin:{origin}"
        return rejected


__all__ = ["CounterStore", "MemoryCounterStore", "RateLimiter", "SqlCounterStore"]
