"""Participants list and metadata, cached per event page."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from math import ceil
from typing import Any

import structlog

from partysnap.cache.keys import participants_metadata_key, participants_page_key, participants_pattern
from partysnap.cache.kv import KeyValueCache, parse_timestamp
from partysnap.cache.read_through import CacheRead, ReadThroughCache
from partysnap.errors import CacheRequestError
from partysnap.gallery.store import GalleryStore

logger = structlog.get_logger()

PARTICIPANTS_TTL = 30 * 60
METADATA_TTL = 15 * 60
MAX_PAGE_SIZE = 100
PRELOAD_DELAY_SECONDS = 0.1


class ParticipantsCache:
    def __init__(self, kv: KeyValueCache, store: GalleryStore) -> None:
        self.kv = kv
        self.store = store
        self.reader = ReadThroughCache(kv, namespace="participants")

    async def get_participants(
        self,
        event_id: str,
        page: int = 1,
        limit: int = 20,
        force_refresh: bool = False,
    ) -> CacheRead:
        if not event_id or page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            msg = "Invalid parameters"
            raise CacheRequestError(msg)

        async def load() -> dict[str, Any]:
            offset = (page - 1) * limit
            participants, total = await self.store.participants_page(event_id, offset, limit)
            return {
                "event_id": event_id,
                "participants": participants,
                "total_count": total,
                "page": page,
                "limit": limit,
                "total_pages": ceil(total / limit),
                "has_more": total > offset + limit,
                "generated_at": self.kv.clock().isoformat(),
            }

        result = await self.reader.read(
            participants_page_key(event_id, page, limit),
            load,
            PARTICIPANTS_TTL,
            kind="participants",
            force_refresh=force_refresh,
        )
        if not result.cached:
            await self._touch_metadata(event_id, result.payload["total_count"])
        return result

    async def get_metadata(self, event_id: str, force_refresh: bool = False) -> CacheRead:
        async def load() -> dict[str, Any]:
            participants = await self.store.all_participants(event_id)
            return build_metadata(event_id, participants, self.kv.clock())

        return await self.reader.read(
            participants_metadata_key(event_id),
            load,
            METADATA_TTL,
            kind="metadata",
            force_refresh=force_refresh,
        )

    async def add_participant(self, event_id: str, user_id: str, added_by: str | None = None) -> dict[str, Any]:
        row = await self.store.add_participant(event_id, user_id, added_by)
        if row is None:
            logger.info("participant_already_present", event_id=event_id, user_id=user_id)
            return {"success": True, "data": None, "message": "User already a participant"}
        await self.invalidate(event_id)
        logger.info("participant_added", event_id=event_id, user_id=user_id, added_by=added_by)
        return {"success": True, "data": row, "message": "Participant added successfully"}

    async def remove_participant(self, event_id: str, user_id: str, removed_by: str | None = None) -> dict[str, Any]:
        removed = await self.store.remove_participant(event_id, user_id)
        await self.invalidate(event_id)
        logger.info("participant_removed", event_id=event_id, user_id=user_id, removed_by=removed_by, removed=removed)
        return {"success": True, "removed": removed, "message": "Participant removed successfully"}

    async def invalidate(self, event_id: str) -> int:
        return await self.kv.delete_pattern(participants_pattern(event_id))

    async def preload(self, event_ids: list[str], limit: int = 20) -> int:
        """Warm page 1 for events that have nothing cached. Returns how many were loaded."""
        keys = {event_id: participants_page_key(event_id, 1, limit) for event_id in event_ids}
        cached = await self.kv.get_many(list(keys.values()))
        to_load = [event_id for event_id, key in keys.items() if not cached.get(key)]
        loaded = 0
        for event_id in to_load:
            try:
                await self.get_participants(event_id, page=1, limit=limit)
                loaded += 1
            except Exception as exc:
                logger.warning("participants_preload_failed", event_id=event_id, error=str(exc))
            await asyncio.sleep(PRELOAD_DELAY_SECONDS)
        return loaded

    async def _touch_metadata(self, event_id: str, total: int) -> None:
        key = participants_metadata_key(event_id)
        existing = await self.kv.get(key)
        if isinstance(existing, dict) and "top_contributors" in existing:
            existing = {k: v for k, v in existing.items() if k not in ("cached_at", "expires_at")}
            existing["total_count"] = total
            await self.kv.set_with_expiry(key, existing, METADATA_TTL)


def build_metadata(event_id: str, participants: list[dict[str, Any]], now: datetime) -> dict[str, Any]:
    """Aggregate participation stats for an event."""
    one_day_ago = now - timedelta(days=1)
    one_week_ago = now - timedelta(days=7)

    def after(value: Any, threshold: datetime) -> bool:  # noqa: ANN401
        ts = parse_timestamp(value)
        return ts is not None and ts > threshold

    total = len(participants)
    total_photos = sum(p.get("photo_count") or 0 for p in participants)
    active_week = sum(1 for p in participants if after(p.get("last_activity"), one_week_ago))
    joined = [ts for p in participants if (ts := parse_timestamp(p.get("joined_at")))]
    top = sorted((p for p in participants if (p.get("photo_count") or 0) > 0), key=lambda p: -p["photo_count"])[:5]

    return {
        "event_id": event_id,
        "total_count": total,
        "total_photos": total_photos,
        "active_today": sum(1 for p in participants if after(p.get("last_activity"), one_day_ago)),
        "active_this_week": active_week,
        "new_participants_today": sum(1 for p in participants if after(p.get("joined_at"), one_day_ago)),
        "avg_photos_per_participant": round(total_photos / total, 1) if total else 0,
        "participation_rate": round(active_week / total * 100) if total else 0,
        "top_contributors": [
            {"user_id": p["user_id"], "photo_count": p["photo_count"], "last_activity": p.get("last_activity")}
            for p in top
        ],
        "last_participant_joined": max(joined).isoformat() if joined else None,
        "generated_at": now.isoformat(),
    }
