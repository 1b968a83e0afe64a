"""Read-through cache: hits, misses, TTL policies and the stale fallback."""

import pytest

from partysnap.cache.read_through import STALE_WARNING, ReadThroughCache
from partysnap.errors import NotFoundError, StoreError


class CountingLoader:
    def __init__(self, payload=None, error=None):
        self.payload = payload if payload is not None else {"items": [1, 2]}
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return dict(self.payload)


@pytest.fixture
def reader(kv):
    return ReadThroughCache(kv, namespace="test")


class TestReadThrough:
    async def test_miss_then_hit(self, reader):
        loader = CountingLoader()
        first = await reader.read("k", loader, 60, kind="items")
        second = await reader.read("k", loader, 60, kind="items")
        assert first.cached is False
        assert first.source == "database"
        assert second.cached is True
        assert second.source == "cache"
        assert second.payload["items"] == [1, 2]
        assert loader.calls == 1

    async def test_hit_reports_age(self, reader, clock):
        loader = CountingLoader()
        await reader.read("k", loader, 60, kind="items")
        clock.advance(15)
        result = await reader.read("k", loader, 60, kind="items")
        assert result.cache_age == 15
        assert "cache_age" in result.as_response()
        assert "cache_ttl" not in result.payload

    async def test_expired_entry_regenerates(self, reader, clock):
        loader = CountingLoader()
        await reader.read("k", loader, 60, kind="items")
        clock.advance(61)
        result = await reader.read("k", loader, 60, kind="items")
        assert result.cached is False
        assert loader.calls == 2

    async def test_force_refresh_bypasses_cache(self, reader):
        loader = CountingLoader()
        await reader.read("k", loader, 60, kind="items")
        result = await reader.read("k", loader, 60, kind="items", force_refresh=True)
        assert result.cached is False
        assert loader.calls == 2

    async def test_zero_ttl_is_not_written(self, reader, kv):
        await reader.read("k", CountingLoader(), lambda payload: 0, kind="items")
        assert await kv.get("k") is None

    async def test_callable_ttl_sees_payload(self, reader, kv_backend):
        seen = []

        def ttl(payload):
            seen.append(payload)
            return 120

        await reader.read("k", CountingLoader(), ttl, kind="items")
        assert seen[0]["items"] == [1, 2]
        assert kv_backend.ttl("k") == 120 + 86_400

    async def test_hits_and_misses_are_counted(self, reader, kv):
        loader = CountingLoader()
        await reader.read("k", loader, 60, kind="items")
        await reader.read("k", loader, 60, kind="items")
        await reader.read("k", loader, 60, kind="items")
        assert await kv.get("cache_stats:test:items:misses") == 1
        assert await kv.get("cache_stats:test:items:hits") == 2


class TestStaleFallback:
    async def test_store_failure_serves_expired_entry(self, reader, clock):
        await reader.read("k", CountingLoader(), 60, kind="items")
        clock.advance(3600)
        result = await reader.read("k", CountingLoader(error=StoreError("db down")), 60, kind="items")
        assert result.stale is True
        assert result.cached is True
        assert result.source == "stale_cache"
        body = result.as_response()
        assert body["warning"] == STALE_WARNING
        assert body["items"] == [1, 2]

    async def test_store_failure_without_entry_propagates(self, reader):
        with pytest.raises(StoreError):
            await reader.read("k", CountingLoader(error=StoreError("db down")), 60, kind="items")

    async def test_other_errors_propagate_even_with_entry(self, reader, clock):
        await reader.read("k", CountingLoader(), 60, kind="items")
        clock.advance(3600)
        with pytest.raises(NotFoundError):
            await reader.read("k", CountingLoader(error=NotFoundError("gone")), 60, kind="items")

    async def test_kv_outage_reads_through_to_loader(self, reader, kv_backend):
        kv_backend.fail = True
        loader = CountingLoader()
        result = await reader.read("k", loader, 60, kind="items")
        assert result.cached is False
        assert loader.calls == 1
