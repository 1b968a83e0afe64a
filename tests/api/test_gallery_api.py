"""Gallery cache routes and their error mapping."""

from httpx import AsyncClient


class TestParticipants:
    async def test_list_then_cached(self, client: AsyncClient, gallery_store) -> None:
        """The second read of a page is served from the cache."""
        gallery_store.add_event("e1")
        await gallery_store.add_participant("e1", "u1")

        first = await client.get("/api/v1/participants/e1")
        second = await client.get("/api/v1/participants/e1")

        assert first.status_code == 200
        assert first.json()["cached"] is False
        assert first.json()["total_count"] == 1
        assert second.json()["cached"] is True
        assert second.json()["source"] == "cache"
        assert "cache_age" in second.json()

    async def test_bad_limit_is_400(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/participants/e1", params={"limit": 500})
        assert response.status_code == 400

    async def test_store_down_without_cache_is_503(self, client: AsyncClient, gallery_store) -> None:
        gallery_store.fail = True
        response = await client.get("/api/v1/participants/e1")
        assert response.status_code == 503

    async def test_add_and_remove(self, client: AsyncClient, gallery_store) -> None:
        gallery_store.add_event("e1")
        added = await client.post("/api/v1/participants/e1", json={"userId": "u1", "addedBy": "owner"})
        again = await client.post("/api/v1/participants/e1", json={"userId": "u1"})
        removed = await client.delete("/api/v1/participants/e1", params={"userId": "u1"})

        assert added.json()["data"]["added_by"] == "owner"
        assert again.json()["message"] == "User already a participant"
        assert removed.json()["removed"] is True

    async def test_metadata(self, client: AsyncClient, gallery_store) -> None:
        gallery_store.add_event("e1")
        await gallery_store.add_participant("e1", "u1")
        response = await client.get("/api/v1/participants/e1/metadata")
        assert response.json()["total_count"] == 1

    async def test_preload(self, client: AsyncClient, gallery_store) -> None:
        gallery_store.add_event("e1")
        response = await client.post("/api/v1/participants/preload", json={"eventIds": ["e1"]})
        assert response.json() == {"success": True, "preloaded": 1, "requested": 1}


class TestPhotoUrls:
    async def test_event_photo_urls(self, client: AsyncClient, gallery_store) -> None:
        """Photos come back with signed URLs and paging info."""
        gallery_store.add_event("e1", created_by="owner", require_moderation=True)
        gallery_store.add_photo("e1", "photos/e1/a.jpg")
        gallery_store.add_photo("e1", "photos/e1/b.jpg", moderation_status="pending")

        anonymous = await client.get("/api/v1/photos/e1/urls")
        organizer = await client.get("/api/v1/photos/e1/urls", params={"userId": "owner", "sortBy": "newest"})

        assert anonymous.json()["total_count"] == 1
        assert anonymous.json()["photos"][0]["photo_url"].startswith("https://cdn.test/")
        assert organizer.json()["total_count"] == 2
        assert organizer.json()["sort_by"] == "newest"

    async def test_unknown_event_is_404(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/photos/missing/urls")
        assert response.status_code == 404

    async def test_expiry_ceiling_is_400(self, client: AsyncClient, gallery_store) -> None:
        gallery_store.add_event("e1")
        response = await client.get("/api/v1/photos/e1/urls", params={"expiresIn": 90_000})
        assert response.status_code == 400

    async def test_batch_urls(self, client: AsyncClient, storage) -> None:
        response = await client.post(
            "/api/v1/photos/batch-urls", json={"paths": ["e1/a.jpg", "e1/a.jpg", "e1/b.jpg"], "eventId": "e1"}
        )
        assert response.status_code == 200
        assert set(response.json()["urls"]) == {"e1/a.jpg", "e1/b.jpg"}
        assert sorted(storage.signed) == ["e1/a.jpg", "e1/b.jpg"]

    async def test_empty_batch_is_400(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/photos/batch-urls", json={"paths": []})
        assert response.status_code == 400


class TestAlbums:
    async def test_event_albums_and_album(self, client: AsyncClient, gallery_store) -> None:
        gallery_store.albums["a1"] = {"id": "a1", "event_id": "e1", "title": "Dance", "photos": [{"url": "e1/a.jpg"}]}

        page = await client.get("/api/v1/albums/e1")
        album = await client.get("/api/v1/albums/id/a1")

        assert page.json()["total_count"] == 1
        assert album.json()["processed_photos"][0]["url_converted"] is True

    async def test_update_and_delete(self, client: AsyncClient, gallery_store) -> None:
        gallery_store.albums["a1"] = {"id": "a1", "event_id": "e1", "title": "Dance", "photos": []}

        updated = await client.patch("/api/v1/albums/id/a1", json={"title": "Dance floor"})
        deleted = await client.delete("/api/v1/albums/id/a1")

        assert updated.json()["title"] == "Dance floor"
        assert updated.json()["cache_invalidated"] is True
        assert deleted.json()["deleted"] is True

    async def test_missing_album_is_404(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/albums/id/missing")
        assert response.status_code == 404

    async def test_update_rate_limit(self, client: AsyncClient) -> None:
        """The eleventh album write in a window is refused with Retry-After."""
        for _ in range(10):
            response = await client.patch("/api/v1/albums/id/missing", json={"title": "x"})
            assert response.status_code == 404

        response = await client.patch("/api/v1/albums/id/missing", json={"title": "x"})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Limit"] == "10"

    async def test_limits_are_per_route_family(self, client: AsyncClient) -> None:
        for _ in range(11):
            await client.patch("/api/v1/albums/id/missing", json={"title": "x"})
        response = await client.get("/api/v1/albums/id/missing")
        assert response.status_code == 404
