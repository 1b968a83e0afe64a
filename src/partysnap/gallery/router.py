"""Cached gallery reads: participants, event photo URLs and albums."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from partysnap.cache.signed_urls import DEFAULT_EXPIRY_SECONDS
from partysnap.container import ServiceContainer
from partysnap.dependencies import get_container, rate_limited
from partysnap.gallery.photos import SortMode
from partysnap.gallery.schemas import AddParticipantRequest, AlbumUpdateRequest, BatchUrlsRequest, PreloadRequest

router = APIRouter(prefix="/api/v1", tags=["Gallery"])


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------


@router.get("/participants/{event_id}", dependencies=[Depends(rate_limited("participants"))])
async def list_participants(
    event_id: str,
    page: int = 1,
    limit: int = 20,
    refresh: bool = False,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    result = await container.participants.get_participants(event_id, page, limit, force_refresh=refresh)
    return result.as_response()


@router.get("/participants/{event_id}/metadata", dependencies=[Depends(rate_limited("participants"))])
async def participants_metadata(
    event_id: str,
    refresh: bool = False,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    result = await container.participants.get_metadata(event_id, force_refresh=refresh)
    return result.as_response()


@router.post("/participants/preload", dependencies=[Depends(rate_limited("participants"))])
async def preload_participants(
    body: PreloadRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    loaded = await container.participants.preload(body.event_ids, body.limit)
    return {"success": True, "preloaded": loaded, "requested": len(body.event_ids)}


@router.post("/participants/{event_id}", dependencies=[Depends(rate_limited("participants"))])
async def add_participant(
    event_id: str,
    body: AddParticipantRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    return await container.participants.add_participant(event_id, body.user_id, body.added_by)


@router.delete("/participants/{event_id}", dependencies=[Depends(rate_limited("participants"))])
async def remove_participant(
    event_id: str,
    user_id: str = Query(..., alias="userId"),
    removed_by: str | None = Query(None, alias="removedBy"),
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    return await container.participants.remove_participant(event_id, user_id, removed_by)


# ---------------------------------------------------------------------------
# Photo URLs
# ---------------------------------------------------------------------------


@router.get("/photos/{event_id}/urls", dependencies=[Depends(rate_limited("photo_urls"))])
async def event_photo_urls(
    event_id: str,
    user_id: str | None = Query(None, alias="userId"),
    page: int = 1,
    limit: int = 50,
    sort_by: str = Query(SortMode.MOST_LIKED, alias="sortBy"),
    expires_in: int = Query(DEFAULT_EXPIRY_SECONDS, alias="expiresIn"),
    refresh: bool = False,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    result = await container.photos.get_event_photo_urls(
        event_id,
        actor_user_id=user_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
        expires_in=expires_in,
        force_refresh=refresh,
    )
    return result.as_response()


@router.post("/photos/batch-urls", dependencies=[Depends(rate_limited("photo_urls"))])
async def batch_photo_urls(
    body: BatchUrlsRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    return await container.photos.batch_generate(
        body.paths, body.expires_in, event_id=body.event_id, force_refresh=body.force_refresh
    )


# ---------------------------------------------------------------------------
# Albums
# ---------------------------------------------------------------------------


@router.get("/albums/id/{album_id}", dependencies=[Depends(rate_limited("album:load"))])
async def get_album(
    album_id: str,
    include_photos: bool = Query(True, alias="includePhotos"),
    refresh: bool = False,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    result = await container.albums.get_album(album_id, include_photos=include_photos, force_refresh=refresh)
    return result.as_response()


@router.patch("/albums/id/{album_id}", dependencies=[Depends(rate_limited("album:update"))])
async def update_album(
    album_id: str,
    body: AlbumUpdateRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    return await container.albums.update_album(album_id, body.model_dump(exclude_none=True))


@router.delete("/albums/id/{album_id}", dependencies=[Depends(rate_limited("album:update"))])
async def delete_album(
    album_id: str,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    return await container.albums.delete_album(album_id)


@router.get("/albums/{event_id}", dependencies=[Depends(rate_limited("album:load"))])
async def event_albums(
    event_id: str,
    page: int = 1,
    limit: int = 50,
    include_photos: bool = Query(True, alias="includePhotos"),
    refresh: bool = False,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    result = await container.albums.get_event_albums(
        event_id, page, limit, include_photos=include_photos, force_refresh=refresh
    )
    return result.as_response()
