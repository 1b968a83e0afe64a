"""Notification domain types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class NotificationType(StrEnum):
    PHOTO_LIKED = "photo_liked"
    GALLERY_UNLOCKED = "gallery_unlocked"
    COMMUNITY_MILESTONE = "community_milestone"
    EVENT_LIVE = "event_live"
    EVENT_STARTING = "event_starting"
    EVENT_REMINDER = "event_reminder"
    PEAK_ACTIVITY = "peak_activity"


class Priority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ProviderKind(StrEnum):
    EXPO = "expo"
    FCM_LEGACY = "fcm_legacy"
    FCM_V1 = "fcm_v1"
    APNS = "apns"


@dataclass(frozen=True)
class RenderedNotification:
    """Provider-agnostic notification content, ready to be sent."""

    type: str
    title: str
    body: str
    priority: Priority
    channel: str
    category: str
    thread_id: str
    sound: str
    vibration: bool
    data: dict[str, Any] = field(default_factory=dict)
    image_url: str | None = None

    @property
    def is_high_priority(self) -> bool:
        return self.priority is Priority.HIGH

    def string_data(self) -> dict[str, str]:
        """``data`` with every value stringified, as FCM requires."""
        return {key: "" if value is None else str(value) for key, value in self.data.items()}
