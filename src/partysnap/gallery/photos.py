"""Signed photo URLs for event galleries, cached per (event, sort, role, moderation, page).

The requester's role and the event's moderation mode are part of every
page key: an organizer sees pending photos that anonymous visitors must
never be served from cache.
"""

from __future__ import annotations

from enum import StrEnum
from math import ceil
from typing import Any

import structlog

from partysnap.cache.keys import (
    event_access_key,
    event_photos_key,
    event_photos_pattern,
    photo_batch_key,
    photo_url_key,
)
from partysnap.cache.kv import KeyValueCache
from partysnap.cache.read_through import CacheRead, ReadThroughCache
from partysnap.cache.signed_urls import DEFAULT_EXPIRY_SECONDS, MAX_EXPIRY_SECONDS, SignedUrlBatcher
from partysnap.errors import CacheRequestError, StoreError
from partysnap.gallery.paths import extract_storage_path
from partysnap.gallery.store import EventAccess, GalleryStore, PhotoFilter
from partysnap.storage import BaseStorage

logger = structlog.get_logger()

MOST_LIKED_CEILING = 200
EVENT_CACHE_TTL_CEILING = 30 * 60
EVENT_ACCESS_TTL = 24 * 60 * 60
MAX_PAGE_SIZE = 100


class SortMode(StrEnum):
    MOST_LIKED = "most_liked"
    NEWEST = "newest"


class ActorRole(StrEnum):
    ANONYMOUS = "anonymous"
    PARTICIPANT = "participant"
    ORGANIZER = "organizer"


class ModerationMode(StrEnum):
    MODERATED = "moderated"
    UNMODERATED = "unmoderated"


def clean_user_id(user_id: str | None) -> str | None:
    if not user_id or not isinstance(user_id, str) or not user_id.strip() or user_id == "undefined":
        return None
    return user_id


def resolve_role(event: EventAccess, user_id: str | None) -> ActorRole:
    user_id = clean_user_id(user_id)
    if user_id is None:
        return ActorRole.ANONYMOUS
    return ActorRole.ORGANIZER if event.is_organizer(user_id) else ActorRole.PARTICIPANT


def moderation_filter(mode: ModerationMode, role: ActorRole) -> PhotoFilter:
    if mode is ModerationMode.UNMODERATED:
        return PhotoFilter(excluded=("deleted",))
    if role is ActorRole.ORGANIZER:
        return PhotoFilter(statuses=("approved", "pending", "pending_approval"))
    return PhotoFilter(statuses=("approved",))


def parse_sort(sort_by: str | None) -> SortMode:
    try:
        return SortMode(sort_by or SortMode.MOST_LIKED)
    except ValueError:
        return SortMode.MOST_LIKED


class PhotoUrlCache:
    def __init__(self, kv: KeyValueCache, store: GalleryStore, storage: BaseStorage) -> None:
        self.kv = kv
        self.store = store
        self.reader = ReadThroughCache(kv, namespace="photo_urls")
        self.batcher = SignedUrlBatcher(kv, storage)

    async def batch_generate(
        self,
        paths: list[str],
        expires_in: int = DEFAULT_EXPIRY_SECONDS,
        event_id: str | None = None,
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        return await self.batcher.generate(paths, expires_in, event_id=event_id, force_refresh=force_refresh)

    async def get_event_photo_urls(
        self,
        event_id: str,
        actor_user_id: str | None = None,
        page: int = 1,
        limit: int = 50,
        sort_by: str | None = SortMode.MOST_LIKED,
        expires_in: int = DEFAULT_EXPIRY_SECONDS,
        force_refresh: bool = False,
    ) -> CacheRead:
        if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            msg = "Invalid pagination parameters"
            raise CacheRequestError(msg)
        if expires_in <= 0 or expires_in > MAX_EXPIRY_SECONDS:
            msg = f"Expiry must be between 1 and {MAX_EXPIRY_SECONDS} seconds"
            raise CacheRequestError(msg)

        sort = parse_sort(sort_by)
        event = await self._event_access(event_id)
        role = resolve_role(event, actor_user_id)
        mode = ModerationMode.MODERATED if event.require_moderation else ModerationMode.UNMODERATED
        key = event_photos_key(event_id, sort, role, mode, page, limit)
        logger.debug("event_photos_key", event_id=event_id, sort=sort, role=role, moderation=mode)

        async def load() -> dict[str, Any]:
            return await self._load_page(event_id, page, limit, sort, moderation_filter(mode, role), expires_in)

        def ttl(payload: dict[str, Any]) -> int:
            return min(expires_in, EVENT_CACHE_TTL_CEILING) if payload["photos"] else 0

        return await self.reader.read(
            key, load, ttl, kind="event_photo_urls", freshness="photo_urls", force_refresh=force_refresh
        )

    async def _event_access(self, event_id: str) -> EventAccess:
        """Key segmentation data from the store, or its last cached copy while the store is down."""
        key = event_access_key(event_id)
        try:
            event = await self.store.get_event_access(event_id)
        except StoreError:
            cached = await self.kv.get(key)
            if not isinstance(cached, dict):
                raise
            logger.warning("event_access_from_cache", event_id=event_id)
            return EventAccess(
                id=cached["id"],
                created_by=cached.get("created_by"),
                require_moderation=bool(cached.get("require_moderation")),
                organizer_ids=frozenset(cached.get("organizer_ids") or ()),
            )
        snapshot = {
            "id": event.id,
            "created_by": event.created_by,
            "require_moderation": event.require_moderation,
            "organizer_ids": sorted(event.organizer_ids),
        }
        await self.kv.set(key, snapshot, EVENT_ACCESS_TTL)
        return event

    async def _load_page(
        self,
        event_id: str,
        page: int,
        limit: int,
        sort: SortMode,
        photo_filter: PhotoFilter,
        expires_in: int,
    ) -> dict[str, Any]:
        offset = (page - 1) * limit
        if sort is SortMode.MOST_LIKED:
            if offset >= MOST_LIKED_CEILING:
                photos, total = [], MOST_LIKED_CEILING
            else:
                window = min(limit, MOST_LIKED_CEILING - offset)
                photos, total = await self.store.event_photos(event_id, photo_filter, sort, offset, window)
                total = min(total, MOST_LIKED_CEILING)
        else:
            photos, total = await self.store.event_photos(event_id, photo_filter, sort, offset, limit)

        page_info = {
            "event_id": event_id,
            "total_count": total,
            "page": page,
            "limit": limit,
            "total_pages": ceil(total / limit),
            "sort_by": str(sort),
        }
        if not photos:
            return {**page_info, "photos": [], "urls": {}}

        paths = [p for p in (extract_storage_path(photo.get("photo_url")) for photo in photos) if p and p.strip()]
        if not paths:
            logger.warning("no_valid_photo_paths", event_id=event_id)
            return {**page_info, "photos": photos, "urls": {}}

        url_result = await self.batcher.generate(paths, expires_in, event_id=event_id)
        urls = url_result["urls"]
        enriched = []
        for photo in photos:
            path = extract_storage_path(photo.get("photo_url"))
            signed = urls.get(path) if path else None
            enriched.append(
                {
                    **photo,
                    "photo_url": signed or photo.get("photo_url"),
                    "url_cached": bool(signed),
                    "url_generated_at": url_result["generated_at"],
                }
            )
        return {
            **page_info,
            "photos": enriched,
            "urls": urls,
            "url_stats": {
                "cached_count": url_result["cached_count"],
                "generated_count": url_result["generated_count"],
                "failed_count": url_result["failed_count"],
                "cache_hit_rate": url_result["cache_hit_rate"],
            },
            "generated_at": self.kv.clock().isoformat(),
        }

    async def invalidate_event(self, event_id: str, paths: list[str] | None = None) -> int:
        """Drop cached pages for an event, or only the given per-path URL entries."""
        if paths:
            deleted = 0
            for path in paths:
                deleted += await self.kv.delete_pattern(photo_url_key(path))
            return deleted
        deleted = await self.kv.delete_pattern(event_photos_pattern(event_id))
        deleted += await self.kv.delete_pattern(photo_batch_key(event_id))
        logger.info("event_photo_cache_invalidated", event_id=event_id, deleted=deleted)
        return deleted
