"""Album cache: signed photo URLs, page TTLs and invalidation."""

import pytest
from fakes import START, FakeStorage

from partysnap.cache.keys import album_key, album_page_key
from partysnap.errors import CacheRequestError, NotFoundError
from partysnap.gallery.albums import EMPTY_ALBUM_PAGE_TTL, AlbumCache

PUBLIC = "https://project.test/storage/v1/object/public/photos/e1/a.jpg"
EXTERNAL = "https://images.example.com/b.jpg"


@pytest.fixture
def cache(kv, gallery_store, storage):
    return AlbumCache(kv, gallery_store, storage)


@pytest.fixture
def albums(gallery_store):
    gallery_store.albums["a1"] = {
        "id": "a1",
        "event_id": "e1",
        "title": "Dance floor",
        "description": None,
        "created_at": START.isoformat(),
        "photos": [
            {"url": PUBLIC, "caption": "first"},
            {"url": "e1/relative.jpg", "display_order": 5},
            {"url": EXTERNAL},
        ],
    }
    gallery_store.albums["a2"] = {"id": "a2", "event_id": "e1", "title": "Empty", "photos": []}
    return gallery_store


class TestAlbum:
    async def test_photos_are_signed(self, cache, albums):
        result = await cache.get_album("a1")

        photos = result.payload["processed_photos"]
        assert result.payload["photo_count"] == 3
        assert photos[0]["photo_url"].startswith("https://cdn.test/storage/v1/object/sign/photos/e1/a.jpg")
        assert photos[0]["url_converted"] is True
        assert photos[0]["caption"] == "first"
        assert photos[1]["display_order"] == 5
        assert photos[2]["photo_url"] == EXTERNAL
        assert photos[2]["url_converted"] is False
        assert photos[2]["crop_data"] == {"scale": 1, "x": 0, "y": 0}
        assert result.payload["url_stats"]["generated"] == 2

    async def test_signed_for_a_day(self, cache, albums):
        result = await cache.get_album("a1")
        assert result.payload["processed_photos"][0]["photo_url"].endswith("expires=86400")

    async def test_second_read_is_cached(self, cache, albums, storage):
        await cache.get_album("a1")
        signed = len(storage.signed)
        result = await cache.get_album("a1")
        assert result.cached is True
        assert len(storage.signed) == signed

    async def test_without_photos(self, cache, albums, storage):
        result = await cache.get_album("a1", include_photos=False)
        assert result.payload["processed_photos"] == []
        assert storage.signed == []

    async def test_signing_failure_keeps_original_urls(self, kv, albums):
        cache = AlbumCache(kv, albums, FakeStorage(failing=["e1/a.jpg"]))
        result = await cache.get_album("a1")
        photos = result.payload["processed_photos"]
        assert photos[0]["photo_url"] == PUBLIC
        assert photos[1]["url_converted"] is True
        assert result.payload["url_stats"]["errors"] == 1

    async def test_expired_album_is_served_stale_while_store_is_down(self, cache, albums, clock):
        await cache.get_album("a1")
        albums.fail = True
        clock.advance(2 * 3600)

        result = await cache.get_album("a1")

        assert result.stale is True
        assert result.payload["photo_count"] == 3

    async def test_missing(self, cache, albums):
        with pytest.raises(NotFoundError):
            await cache.get_album("nope")


class TestEventAlbums:
    async def test_page(self, cache, albums):
        result = await cache.get_event_albums("e1", page=1, limit=10)
        assert result.payload["total_count"] == 2
        assert result.payload["has_next"] is False
        assert result.payload["has_previous"] is False
        assert {a["id"] for a in result.payload["albums"]} == {"a1", "a2"}

    async def test_empty_page_gets_short_ttl(self, cache, gallery_store, kv_backend):
        await cache.get_event_albums("none", page=1, limit=10)
        assert kv_backend.ttl(album_page_key("none", 1, 10)) == EMPTY_ALBUM_PAGE_TTL + 86_400

    async def test_bare_pages_are_keyed_separately(self, cache, albums, kv_backend):
        await cache.get_event_albums("e1", include_photos=False)
        assert album_page_key("e1", 1, 50, include_photos=False) in kv_backend.data
        assert album_page_key("e1", 1, 50) not in kv_backend.data

    @pytest.mark.parametrize(("page", "limit"), [(0, 10), (1, 0), (1, 101)])
    async def test_bad_bounds(self, cache, page, limit):
        with pytest.raises(CacheRequestError):
            await cache.get_event_albums("e1", page=page, limit=limit)


class TestMutations:
    async def test_update_invalidates_album_and_event_pages(self, cache, albums, kv_backend):
        await cache.get_album("a1")
        await cache.get_album("a1", include_photos=False)
        await cache.get_event_albums("e1")

        updated = await cache.update_album("a1", {"title": "Dance floor 2"})

        assert updated["title"] == "Dance floor 2"
        assert updated["cache_invalidated"] is True
        assert album_key("a1") not in kv_backend.data
        assert album_key("a1", include_photos=False) not in kv_backend.data
        assert album_page_key("e1", 1, 50) not in kv_backend.data
        assert not any(key.startswith("photo:url:album:a1:") for key in kv_backend.data)

    async def test_update_leaves_other_albums_cached(self, cache, albums, kv_backend):
        await cache.get_album("a2")
        await cache.update_album("a1", {"title": "x"})
        assert album_key("a2") in kv_backend.data

    async def test_delete(self, cache, albums, kv_backend):
        await cache.get_event_albums("e1")
        response = await cache.delete_album("a1")
        assert response == {"deleted": True, "album_id": "a1", "event_id": "e1", "cache_invalidated": True}
        assert "a1" not in albums.albums
        result = await cache.get_event_albums("e1")
        assert result.payload["total_count"] == 1

    async def test_update_missing(self, cache, albums):
        with pytest.raises(NotFoundError):
            await cache.update_album("nope", {"title": "x"})

    async def test_delete_missing(self, cache, albums):
        with pytest.raises(NotFoundError):
            await cache.delete_album("nope")
