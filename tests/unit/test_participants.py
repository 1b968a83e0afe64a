"""Participants cache: pages, metadata, invalidation and preload."""

from datetime import timedelta

import pytest
from fakes import START

from partysnap.cache.keys import participants_metadata_key, participants_page_key
from partysnap.errors import CacheRequestError, StoreError
from partysnap.gallery import participants as participants_module
from partysnap.gallery.participants import ParticipantsCache, build_metadata


@pytest.fixture
def cache(kv, gallery_store):
    return ParticipantsCache(kv, gallery_store)


@pytest.fixture
def seeded(gallery_store):
    gallery_store.add_event("e1")
    for i in range(25):
        gallery_store.participants.append(
            {
                "id": f"participant-{i}",
                "event_id": "e1",
                "user_id": f"u{i}",
                "status": "accepted",
                "photo_count": i,
                "joined_at": (START - timedelta(days=3, minutes=i)).isoformat(),
                "last_activity": (START - timedelta(hours=i)).isoformat(),
            }
        )
    return gallery_store


class TestPages:
    async def test_miss_then_hit(self, cache, seeded):
        first = await cache.get_participants("e1", page=1, limit=20)
        second = await cache.get_participants("e1", page=1, limit=20)

        assert first.cached is False
        assert first.payload["total_count"] == 25
        assert first.payload["total_pages"] == 2
        assert first.payload["has_more"] is True
        assert second.cached is True
        assert seeded.calls["participants_page"] == 1

    async def test_last_page(self, cache, seeded):
        result = await cache.get_participants("e1", page=2, limit=20)
        assert len(result.payload["participants"]) == 5
        assert result.payload["has_more"] is False

    async def test_pages_are_cached_independently(self, cache, seeded, kv_backend):
        await cache.get_participants("e1", page=1, limit=20)
        await cache.get_participants("e1", page=2, limit=20)
        assert participants_page_key("e1", 1, 20) in kv_backend.data
        assert participants_page_key("e1", 2, 20) in kv_backend.data

    @pytest.mark.parametrize(("page", "limit"), [(0, 20), (1, 0), (1, 101)])
    async def test_bad_bounds(self, cache, page, limit):
        with pytest.raises(CacheRequestError):
            await cache.get_participants("e1", page=page, limit=limit)

    async def test_stale_page_served_when_store_is_down(self, cache, seeded, clock):
        await cache.get_participants("e1")
        clock.advance(31 * 60)
        seeded.fail = True

        result = await cache.get_participants("e1")

        assert result.stale is True
        assert result.source == "stale_cache"
        assert result.payload["total_count"] == 25

    async def test_store_down_without_cache_raises(self, cache, seeded):
        seeded.fail = True
        with pytest.raises(StoreError):
            await cache.get_participants("e1")


class TestMutations:
    async def test_add_invalidates(self, cache, seeded):
        await cache.get_participants("e1")
        response = await cache.add_participant("e1", "new-user", added_by="u0")

        assert response["data"]["user_id"] == "new-user"
        result = await cache.get_participants("e1")
        assert result.cached is False
        assert result.payload["total_count"] == 26

    async def test_duplicate_add_is_idempotent(self, cache, seeded, kv_backend):
        await cache.get_participants("e1")
        response = await cache.add_participant("e1", "u3")

        assert response["success"] is True
        assert response["data"] is None
        assert response["message"] == "User already a participant"
        assert participants_page_key("e1", 1, 20) in kv_backend.data

    async def test_remove_invalidates_only_that_event(self, cache, seeded, kv_backend):
        seeded.add_event("e10")
        await cache.get_participants("e1")
        await cache.get_participants("e10")

        response = await cache.remove_participant("e1", "u0")

        assert response["removed"] is True
        assert participants_page_key("e1", 1, 20) not in kv_backend.data
        assert participants_page_key("e10", 1, 20) in kv_backend.data


class TestMetadata:
    async def test_aggregates(self, cache, seeded):
        result = await cache.get_metadata("e1")
        meta = result.payload
        assert meta["total_count"] == 25
        assert meta["total_photos"] == sum(range(25))
        assert meta["active_today"] == 24
        assert meta["active_this_week"] == 25
        assert meta["participation_rate"] == 100
        assert [c["user_id"] for c in meta["top_contributors"]] == ["u24", "u23", "u22", "u21", "u20"]

    async def test_page_miss_refreshes_cached_total(self, cache, seeded, kv):
        await cache.get_metadata("e1")
        await seeded.add_participant("e1", "late-joiner")
        await cache.get_participants("e1", limit=10)

        cached = await kv.get(participants_metadata_key("e1"))
        assert cached["total_count"] == 26

    def test_empty_event(self):
        meta = build_metadata("e1", [], START)
        assert meta["total_count"] == 0
        assert meta["avg_photos_per_participant"] == 0
        assert meta["last_participant_joined"] is None


class TestPreload:
    async def test_loads_only_uncached_events(self, cache, seeded, monkeypatch):
        monkeypatch.setattr(participants_module, "PRELOAD_DELAY_SECONDS", 0)
        seeded.add_event("e2")
        await cache.get_participants("e1")

        loaded = await cache.preload(["e1", "e2"])

        assert loaded == 1
        assert seeded.calls["participants_page"] == 2

    async def test_failures_do_not_stop_the_batch(self, cache, seeded, monkeypatch):
        monkeypatch.setattr(participants_module, "PRELOAD_DELAY_SECONDS", 0)
        seeded.fail = True
        assert await cache.preload(["e1", "e2"]) == 0
