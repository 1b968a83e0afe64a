"""Album pages and single albums with their photos signed for 24 hours."""

from __future__ import annotations

import asyncio
from functools import partial
from math import ceil
from typing import Any

import structlog

from partysnap.cache.keys import (
    album_key,
    album_page_key,
    album_pages_pattern,
    album_photo_url_key,
    album_photo_url_prefix,
)
from partysnap.cache.kv import KeyValueCache
from partysnap.cache.read_through import CacheRead, ReadThroughCache
from partysnap.cache.signed_urls import MAX_PATHS_PER_REQUEST, SignedUrlBatcher
from partysnap.errors import CacheRequestError, NotFoundError, PartySnapError
from partysnap.gallery.paths import extract_storage_path, needs_url_conversion
from partysnap.gallery.store import GalleryStore
from partysnap.storage import BaseStorage

logger = structlog.get_logger()

ALBUM_TTL = 3600
EMPTY_ALBUM_PAGE_TTL = 300
ALBUM_PHOTO_URL_EXPIRY = 86_400
MAX_PAGE_SIZE = 100


class AlbumCache:
    def __init__(self, kv: KeyValueCache, store: GalleryStore, storage: BaseStorage) -> None:
        self.kv = kv
        self.store = store
        self.storage = storage
        self.reader = ReadThroughCache(kv, namespace="albums")

    def _batcher(self, album_id: str) -> SignedUrlBatcher:
        return SignedUrlBatcher(
            self.kv,
            self.storage,
            key_fn=partial(album_photo_url_key, album_id),
            aggregate_key_fn=None,
            stats_namespace="albums",
        )

    async def get_event_albums(
        self,
        event_id: str,
        page: int = 1,
        limit: int = 50,
        include_photos: bool = True,
        force_refresh: bool = False,
    ) -> CacheRead:
        if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            msg = "Invalid pagination parameters"
            raise CacheRequestError(msg)

        async def load() -> dict[str, Any]:
            albums, total = await self.store.albums_page(event_id, (page - 1) * limit, limit)
            processed = await asyncio.gather(*(self._process(album, include_photos) for album in albums))
            total_pages = ceil(total / limit)
            return {
                "event_id": event_id,
                "albums": list(processed),
                "total_count": total,
                "page": page,
                "limit": limit,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_previous": page > 1,
            }

        def ttl(payload: dict[str, Any]) -> int:
            return ALBUM_TTL if payload["albums"] else EMPTY_ALBUM_PAGE_TTL

        return await self.reader.read(
            album_page_key(event_id, page, limit, include_photos),
            load,
            ttl,
            kind="event_albums",
            freshness="albums",
            force_refresh=force_refresh,
        )

    async def get_album(self, album_id: str, include_photos: bool = True, force_refresh: bool = False) -> CacheRead:
        async def load() -> dict[str, Any]:
            album = await self.store.get_album(album_id)
            if album is None:
                msg = f"Album not found: {album_id}"
                raise NotFoundError(msg)
            return await self._process(album, include_photos)

        return await self.reader.read(
            album_key(album_id, include_photos),
            load,
            ALBUM_TTL,
            kind="album",
            freshness="albums",
            force_refresh=force_refresh,
        )

    async def update_album(self, album_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        album = await self.store.update_album(album_id, updates)
        if album is None:
            msg = f"Album not found: {album_id}"
            raise NotFoundError(msg)
        await self.invalidate(album_id, album["event_id"])
        return {**album, "cache_invalidated": True}

    async def delete_album(self, album_id: str) -> dict[str, Any]:
        event_id = await self.store.delete_album(album_id)
        if event_id is None:
            msg = f"Album not found: {album_id}"
            raise NotFoundError(msg)
        await self.invalidate(album_id, event_id)
        return {"deleted": True, "album_id": album_id, "event_id": event_id, "cache_invalidated": True}

    async def invalidate(self, album_id: str, event_id: str) -> int:
        counts = await asyncio.gather(
            self.kv.delete_pattern(album_key(album_id)),
            self.kv.delete_pattern(album_key(album_id, include_photos=False)),
            self.kv.delete_pattern(album_pages_pattern(event_id)),
            self.kv.delete_pattern(f"{album_photo_url_prefix(album_id)}*"),
        )
        logger.info("album_cache_invalidated", album_id=album_id, event_id=event_id, deleted=sum(counts))
        return sum(counts)

    async def _process(self, album: dict[str, Any], include_photos: bool) -> dict[str, Any]:
        """Attach ``processed_photos`` with signed URLs. A signing failure degrades only this album."""
        photos = album.get("photos") or []
        url_stats = {"cached": 0, "generated": 0, "errors": 0}
        if not include_photos or not photos:
            return {**album, "processed_photos": [], "photo_count": 0, "url_stats": url_stats}

        now = self.kv.clock()
        paths = [
            path
            for photo in photos
            if needs_url_conversion(photo.get("url"), now) and (path := extract_storage_path(photo.get("url")))
        ]
        urls: dict[str, str] = {}
        if paths:
            try:
                result = await self._batcher(album["id"]).generate(
                    paths[:MAX_PATHS_PER_REQUEST], ALBUM_PHOTO_URL_EXPIRY
                )
            except PartySnapError as exc:
                logger.warning("album_photo_urls_failed", album_id=album["id"], error=str(exc))
                url_stats["errors"] = len(paths)
            else:
                urls = result["urls"]
                url_stats = {
                    "cached": result["cached_count"],
                    "generated": result["generated_count"],
                    "errors": len(paths) - len(urls),
                }

        processed = []
        for index, photo in enumerate(photos):
            original = photo.get("url")
            final = original
            if original and needs_url_conversion(original, now):
                path = extract_storage_path(original)
                final = urls.get(path, original) if path else original
            processed.append(
                {
                    "id": f"{album['id']}-{index}",
                    "photo_url": final,
                    "original_url": original,
                    "caption": photo.get("caption") or "",
                    "display_order": photo.get("display_order", index),
                    "crop_data": photo.get("crop_data") or {"scale": 1, "x": 0, "y": 0},
                    "created_at": album.get("created_at"),
                    "url_converted": final != original,
                }
            )
        return {**album, "processed_photos": processed, "photo_count": len(processed), "url_stats": url_stats}
