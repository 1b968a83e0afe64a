"""Request schemas for the gallery cache endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from partysnap.cache.signed_urls import DEFAULT_EXPIRY_SECONDS


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddParticipantRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    added_by: str | None = None


class PreloadRequest(CamelModel):
    event_ids: list[str] = Field(..., min_length=1, max_length=50)
    limit: int = Field(20, ge=1, le=100)


class BatchUrlsRequest(CamelModel):
    """Bounds are enforced by the batcher so oversized requests get a 400."""

    paths: list[str]
    expires_in: int = DEFAULT_EXPIRY_SECONDS
    event_id: str | None = None
    force_refresh: bool = False


class AlbumUpdateRequest(BaseModel):
    title: str | None = Field(None, max_length=200)
    description: str | None = None
    photos: list[Any] | None = None
