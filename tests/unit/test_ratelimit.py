"""Fixed-window rate limiter over in-process and KV-backed counters."""

import pytest

from partysnap.errors import RateLimitExceeded
from partysnap.ratelimit import (
    CACHE_DEFAULT_LIMIT,
    CACHE_LIMITS,
    DISPATCH_DEFAULT_LIMIT,
    DISPATCH_LIMITS,
    KVCounterStore,
    MemoryCounterStore,
    RateLimiter,
)


class TestDispatchLimits:
    async def test_event_live_allows_one_per_window(self, dispatch_limiter):
        first = await dispatch_limiter.acquire("event_live", "u1")
        second = await dispatch_limiter.acquire("event_live", "u1")
        assert first.allowed is True
        assert second.allowed is False
        assert second.remaining == 0

    async def test_photo_liked_ceiling(self, dispatch_limiter):
        limit = DISPATCH_LIMITS["photo_liked"]
        statuses = [await dispatch_limiter.acquire("photo_liked", "u1") for _ in range(limit + 1)]
        assert all(s.allowed for s in statuses[:-1])
        assert statuses[-1].allowed is False

    async def test_unknown_type_uses_default(self, dispatch_limiter):
        assert dispatch_limiter.limit_for("gallery_unlocked") == DISPATCH_DEFAULT_LIMIT

    async def test_counts_are_per_user(self, dispatch_limiter):
        await dispatch_limiter.acquire("event_live", "u1")
        status = await dispatch_limiter.acquire("event_live", "u2")
        assert status.allowed is True

    async def test_window_resets(self, dispatch_limiter, clock):
        await dispatch_limiter.acquire("event_live", "u1")
        clock.advance(61)
        status = await dispatch_limiter.acquire("event_live", "u1")
        assert status.allowed is True
        assert status.count == 1

    async def test_rejected_hits_still_count(self, dispatch_limiter):
        for _ in range(3):
            await dispatch_limiter.acquire("event_live", "u1")
        assert await dispatch_limiter.check(dispatch_limiter.key_for("event_live", "u1")) == 3


class TestMemoryCounterStore:
    async def test_prune_drops_closed_windows(self, clock):
        store = MemoryCounterStore(clock.monotonic)
        await store.increment("a", 10)
        clock.advance(5)
        await store.increment("b", 10)
        clock.advance(6)
        assert store.prune() == 1
        assert await store.current("a") == 0
        assert await store.current("b") == 1


class TestKVLimiter:
    async def test_hit_raises_over_ceiling(self, kv):
        limiter = RateLimiter(KVCounterStore(kv), CACHE_LIMITS, CACHE_DEFAULT_LIMIT)
        for _ in range(CACHE_LIMITS["album:update"]):
            await limiter.hit("album:update", "1.2.3.4")
        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.hit("album:update", "1.2.3.4")
        assert exc_info.value.limit == 10
        assert exc_info.value.retry_after == 60

    async def test_window_key_expires(self, kv, kv_backend, clock):
        limiter = RateLimiter(KVCounterStore(kv), CACHE_LIMITS, CACHE_DEFAULT_LIMIT)
        await limiter.hit("participants", "ip")
        assert kv_backend.ttl("rate_limit:participants:ip") == 60
        clock.advance(60)
        status = await limiter.hit("participants", "ip")
        assert status.count == 1

    async def test_store_outage_lets_requests_through(self, kv, kv_backend):
        kv_backend.fail = True
        limiter = RateLimiter(KVCounterStore(kv), CACHE_LIMITS, CACHE_DEFAULT_LIMIT)
        for _ in range(CACHE_LIMITS["album:update"] + 5):
            status = await limiter.hit("album:update", "ip")
        assert status.allowed is True
