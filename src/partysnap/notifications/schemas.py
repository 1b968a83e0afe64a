"""Request/response schemas for notification endpoints.

Clients send camelCase; both spellings are accepted.
"""

from __future__ import annotations

from datetime import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

MAX_BULK_USERS = 1000


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class NotifyRequest(CamelModel):
    """Send to one user (``user_id``) or many (``user_ids``), never both."""

    type: str = Field(..., min_length=1)
    user_id: str | None = None
    user_ids: list[str] | None = Field(None, min_length=1, max_length=MAX_BULK_USERS)
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def one_target(self) -> NotifyRequest:
        if self.user_id and self.user_ids:
            msg = "Provide either userId or userIds, not both"
            raise ValueError(msg)
        if not self.user_id and not self.user_ids:
            msg = "Either userId or userIds is required"
            raise ValueError(msg)
        return self


class NotificationStatusRequest(CamelModel):
    status: Literal["delivered", "opened"]


# ---------------------------------------------------------------------------
# Push tokens
# ---------------------------------------------------------------------------


class TokenRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=4096)
    platform: Literal["ios", "android"]
    token_type: Literal["expo", "fcm_legacy", "fcm_v1", "apns"] | None = None
    device_token: str | None = Field(None, max_length=4096)


class RegisterTokenRequest(TokenRequest):
    user_id: str = Field(..., min_length=1)
    device_id: str | None = Field(None, max_length=200)


class ValidateTokenRequest(TokenRequest):
    user_id: str | None = None


class TokenResponse(BaseModel):
    id: str
    user_id: str
    token: str
    platform: str
    token_type: str


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


class PreferencesUpdateRequest(CamelModel):
    push_enabled: bool | None = None
    photo_likes: bool | None = None
    community_activity: bool | None = None
    event_updates: bool | None = None
    peak_activity: bool | None = None
    batch_mode: bool | None = None
    quiet_hours_enabled: bool | None = None
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    timezone: str | None = Field(None, max_length=64)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class DatabaseChange(BaseModel):
    """Row-change payload posted by the database webhook."""

    type: Literal["INSERT", "UPDATE", "DELETE"]
    table: str
    record: dict[str, Any] = Field(default_factory=dict)
    old_record: dict[str, Any] | None = None
