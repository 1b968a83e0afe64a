"""Fixed-window rate limiting shared by the dispatch engine and the cache routes.

A window opens on the first hit for a key and closes ``window_seconds``
later; it is not aligned to the calendar minute. Every hit counts, including
the ones that end up rejected.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import structlog

from partysnap.cache.kv import KeyValueCache
from partysnap.errors import RateLimitExceeded

logger = structlog.get_logger()

# Per-(user, type) ceilings for push dispatch, per 60s window.
DISPATCH_LIMITS: dict[str, int] = {
    "photo_liked": 10,
    "event_live": 1,
    "event_starting": 1,
    "community_milestone": 3,
    "peak_activity": 2,
}
DISPATCH_DEFAULT_LIMIT = 5

# Per-client ceilings for the cached read/write routes, per 60s window.
CACHE_LIMITS: dict[str, int] = {
    "participants": 100,
    "photo_urls": 200,
    "album:load": 30,
    "album:update": 10,
}
CACHE_DEFAULT_LIMIT = 60


@dataclass(frozen=True)
class RateLimitStatus:
    key: str
    count: int
    limit: int

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class CounterStore(ABC):
    """Window counter storage."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> int:
        """Increment and return the count in the current window."""

    @abstractmethod
    async def current(self, key: str) -> int:
        """Return the count in the current window without incrementing."""


class MemoryCounterStore(CounterStore):
    """Per-process counters. Suitable for the dispatch engine, which runs in one process."""

    PRUNE_THRESHOLD = 10_000

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}

    async def increment(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        count, reset_at = self._windows.get(key, (0, now + window_seconds))
        if now > reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        self._windows[key] = (count, reset_at)
        if len(self._windows) > self.PRUNE_THRESHOLD:
            self.prune()
        return count

    async def current(self, key: str) -> int:
        count, reset_at = self._windows.get(key, (0, 0.0))
        return 0 if self._clock() > reset_at else count

    def prune(self) -> int:
        """Drop windows that have already closed."""
        now = self._clock()
        expired = [key for key, (_, reset_at) in self._windows.items() if now > reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)


class KVCounterStore(CounterStore):
    """Counters in the shared key-value store (atomic INCR + EXPIRE on first use).

    When the store is unavailable the count reads as 0 and requests pass.
    """

    def __init__(self, kv: KeyValueCache) -> None:
        self._kv = kv

    async def increment(self, key: str, window_seconds: int) -> int:
        return await self._kv.incr_with_expire(key, window_seconds)

    async def current(self, key: str) -> int:
        value = await self._kv.get(key)
        try:
            return int(value or 0)
        except (TypeError, ValueError):
            return 0


class RateLimiter:
    """Fixed-window limiter with a ceiling per purpose."""

    def __init__(
        self,
        store: CounterStore,
        limits: Mapping[str, int],
        default_limit: int,
        window_seconds: int = 60,
        prefix: str = "rate_limit",
    ) -> None:
        self.store = store
        self.limits = dict(limits)
        self.default_limit = default_limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    def limit_for(self, purpose: str) -> int:
        return self.limits.get(purpose, self.default_limit)

    def key_for(self, purpose: str, identifier: str) -> str:
        return f"{self.prefix}:{purpose}:{identifier}"

    async def check(self, key: str) -> int:
        return await self.store.current(key)

    async def increment(self, key: str) -> int:
        return await self.store.increment(key, self.window_seconds)

    async def acquire(self, purpose: str, identifier: str) -> RateLimitStatus:
        """Count one hit and report whether it fits under the ceiling."""
        key = self.key_for(purpose, identifier)
        count = await self.increment(key)
        status = RateLimitStatus(key=key, count=count, limit=self.limit_for(purpose))
        if not status.allowed:
            logger.info("rate_limited", key=key, count=count, limit=status.limit)
        return status

    async def hit(self, purpose: str, identifier: str) -> RateLimitStatus:
        """Like :meth:`acquire`, but raise :class:`RateLimitExceeded` over the ceiling."""
        status = await self.acquire(purpose, identifier)
        if not status.allowed:
            raise RateLimitExceeded(status.key, status.limit, status.count, self.window_seconds)
        return status
