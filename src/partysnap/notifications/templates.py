"""Notification copy, per-type delivery settings and batching rules.

Everything here is pure: no I/O, no clock except the ``timestamp`` stamped
into rendered data.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from partysnap.errors import NotificationValidationError
from partysnap.notifications.types import NotificationType, Priority, RenderedNotification

Data = dict[str, Any]


def _count(data: Data, field: str, default: int) -> int:
    try:
        return int(data.get(field) or default)
    except (TypeError, ValueError):
        return default


def _event(data: Data, default: str = "your event") -> str:
    return data.get("eventName") or default


def _photo_liked_title(data: Data) -> str:
    count = _count(data, "likeCount", 1)
    if count >= 100:
        return "Your photo is on fire! 🔥"
    if count >= 50:
        return "Your photo is trending! ⭐"
    if count >= 20:
        return "Your photo is popular! 👏"
    if count >= 10:
        return "People love your photo! ❤️"
    return "Someone liked your photo! 👍"


def _photo_liked_body(data: Data) -> str:
    count = _count(data, "likeCount", 1)
    event = _event(data)
    if count >= 100:
        return f"{count} likes and counting at {event}!"
    if count >= 50:
        return f"{count} people have liked your photo from {event}"
    if count >= 20:
        return f"{count} likes on your photo from {event}"
    if count >= 10:
        return f"{count} people liked your photo from {event}"
    return f"Your photo from {event} got a new like"


def _event_reminder_body(data: Data) -> str:
    hours = _count(data, "hoursUntilStart", 1)
    unit = "hour" if hours == 1 else "hours"
    return f"{_event(data, 'Your event')} is in {hours} {unit}. Make sure you're ready!"


@dataclass(frozen=True)
class Template:
    title: Callable[[Data], str]
    body: Callable[[Data], str]
    priority: Priority
    channel: str
    category: str
    thread_id: str
    sound: str
    vibration: bool
    required: tuple[str, ...]


TEMPLATES: dict[NotificationType, Template] = {
    NotificationType.PHOTO_LIKED: Template(
        title=_photo_liked_title,
        body=_photo_liked_body,
        priority=Priority.HIGH,
        channel="photo-likes",
        category="PHOTO_INTERACTION",
        thread_id="photo-interactions",
        sound="default",
        vibration=True,
        required=("eventName", "likeCount"),
    ),
    NotificationType.GALLERY_UNLOCKED: Template(
        title=lambda _data: "Gallery unlocked! 📸",
        body=lambda data: f"Photos from {_event(data)} are now available to view and download",
        priority=Priority.HIGH,
        channel="community",
        category="COMMUNITY_UPDATE",
        thread_id="community-updates",
        sound="default",
        vibration=True,
        required=("eventName",),
    ),
    NotificationType.COMMUNITY_MILESTONE: Template(
        title=lambda data: f"{_count(data, 'milestone', 100)} photos milestone! 🎉",
        body=lambda data: (
            f"{_event(data)} just reached {_count(data, 'milestone', 100)} amazing photos shared by the community"
        ),
        priority=Priority.MEDIUM,
        channel="community",
        category="COMMUNITY_UPDATE",
        thread_id="community-updates",
        sound="default",
        vibration=False,
        required=("eventName", "milestone"),
    ),
    NotificationType.EVENT_LIVE: Template(
        title=lambda _data: "Event is live! 🎉",
        body=lambda data: f"{_event(data, 'Your event')} has started! Start capturing and sharing memories",
        priority=Priority.HIGH,
        channel="event-updates",
        category="EVENT_UPDATE",
        thread_id="event-updates",
        sound="event_start",
        vibration=True,
        required=("eventName",),
    ),
    NotificationType.EVENT_STARTING: Template(
        title=lambda _data: "Event starting soon! ⏰",
        body=lambda data: (
            f"{_event(data, 'Your event')} starts in {_count(data, 'minutesUntilStart', 15)} minutes. "
            "Get ready to capture memories!"
        ),
        priority=Priority.HIGH,
        channel="event-updates",
        category="EVENT_UPDATE",
        thread_id="event-updates",
        sound="default",
        vibration=True,
        required=("eventName", "minutesUntilStart"),
    ),
    NotificationType.EVENT_REMINDER: Template(
        title=lambda _data: "Don't forget your event! 📅",
        body=_event_reminder_body,
        priority=Priority.MEDIUM,
        channel="event-updates",
        category="EVENT_REMINDER",
        thread_id="event-reminders",
        sound="gentle_reminder",
        vibration=False,
        required=("eventName", "hoursUntilStart"),
    ),
    NotificationType.PEAK_ACTIVITY: Template(
        title=lambda _data: "Peak activity happening! ⚡",
        body=lambda data: (
            f"{data.get('recentPhotoCount') or 'Many'} photos shared in the last hour at {_event(data)}. "
            "Join the action!"
        ),
        priority=Priority.LOW,
        channel="peak-activity",
        category="ACTIVITY_UPDATE",
        thread_id="activity-updates",
        sound="subtle",
        vibration=False,
        required=("eventName", "recentPhotoCount"),
    ),
}


def parse_type(notification_type: str) -> NotificationType:
    try:
        return NotificationType(notification_type)
    except ValueError:
        raise NotificationValidationError(notification_type) from None


def _is_missing(value: Any) -> bool:  # noqa: ANN401
    return value is None or (isinstance(value, str) and not value.strip())


def validate_data(notification_type: str, data: Data) -> NotificationType:
    """Check required fields. Zero counts as present.

    Raises:
        NotificationValidationError: Unknown type or a required field is missing.
    """
    parsed = parse_type(notification_type)
    missing = [name for name in TEMPLATES[parsed].required if _is_missing(data.get(name))]
    if missing:
        raise NotificationValidationError(parsed, missing)
    return parsed


def _stamp(data: Data, notification_type: str) -> Data:
    return {**data, "notificationType": notification_type, "timestamp": datetime.now(UTC).isoformat()}


def render(notification_type: str, data: Data) -> RenderedNotification:
    """Validate ``data`` and render the notification for ``notification_type``."""
    parsed = validate_data(notification_type, data)
    template = TEMPLATES[parsed]
    return RenderedNotification(
        type=parsed,
        title=template.title(data),
        body=template.body(data),
        priority=template.priority,
        channel=template.channel,
        category=template.category,
        thread_id=template.thread_id,
        sound=template.sound,
        vibration=template.vibration,
        data=_stamp(data, parsed),
        image_url=data.get("imageUrl"),
    )


TEST_NOTIFICATION = RenderedNotification(
    type="test",
    title="PartySnap Test 🎉",
    body="This is a test notification from PartySnap!",
    priority=Priority.HIGH,
    channel="default",
    category="GENERAL",
    thread_id="general",
    sound="default",
    vibration=True,
    data={"test": True},
)


# ---------------------------------------------------------------------------
# Per-type delivery settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TypeSettings:
    enabled: bool = True
    batch_enabled: bool = False
    respects_quiet_hours: bool = True


DEFAULT_TYPE_SETTINGS: dict[NotificationType, TypeSettings] = {
    NotificationType.PHOTO_LIKED: TypeSettings(batch_enabled=True),
    NotificationType.GALLERY_UNLOCKED: TypeSettings(respects_quiet_hours=False),
    NotificationType.COMMUNITY_MILESTONE: TypeSettings(batch_enabled=True),
    NotificationType.EVENT_LIVE: TypeSettings(respects_quiet_hours=False),
    NotificationType.EVENT_STARTING: TypeSettings(respects_quiet_hours=False),
    NotificationType.EVENT_REMINDER: TypeSettings(),
    NotificationType.PEAK_ACTIVITY: TypeSettings(batch_enabled=True),
}

# Notification type -> notification_preferences column that gates it.
PREFERENCE_COLUMNS: dict[NotificationType, str] = {
    NotificationType.PHOTO_LIKED: "photo_likes",
    NotificationType.GALLERY_UNLOCKED: "community_activity",
    NotificationType.COMMUNITY_MILESTONE: "community_activity",
    NotificationType.EVENT_LIVE: "event_updates",
    NotificationType.EVENT_STARTING: "event_updates",
    NotificationType.EVENT_REMINDER: "event_updates",
    NotificationType.PEAK_ACTIVITY: "peak_activity",
}


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchingRule:
    window_minutes: int
    max_count: int


BATCHING_RULES: dict[NotificationType, BatchingRule] = {
    NotificationType.PHOTO_LIKED: BatchingRule(window_minutes=30, max_count=5),
    NotificationType.COMMUNITY_MILESTONE: BatchingRule(window_minutes=60, max_count=3),
    NotificationType.PEAK_ACTIVITY: BatchingRule(window_minutes=120, max_count=2),
}


class BatchDecision(StrEnum):
    STANDALONE = "standalone"
    MERGE = "merge"
    ABSORB = "absorb"


def batching_decision(notification_type: NotificationType, recent_count: int) -> BatchDecision:
    """Decide how a new occurrence is delivered given same-type sends already in the window.

    The first occurrence goes out as is; occurrences up to ``max_count`` are
    re-rendered as an aggregate summary; anything beyond is absorbed.
    """
    rule = BATCHING_RULES.get(notification_type)
    if rule is None or recent_count <= 0:
        return BatchDecision.STANDALONE
    if recent_count < rule.max_count:
        return BatchDecision.MERGE
    return BatchDecision.ABSORB


def _unique_events(items: list[Data]) -> list[str]:
    return list(dict.fromkeys(item.get("eventName") for item in items if item.get("eventName")))


def render_batch_summary(
    notification_type: NotificationType,
    previous: list[Data],
    new_data: Data,
) -> RenderedNotification:
    """Render the aggregate that replaces a standalone notification inside a batching window."""
    items = [*previous, new_data]
    events = _unique_events(items)
    if notification_type is NotificationType.PHOTO_LIKED:
        total_likes = sum(_count(item, "likeCount", 1) for item in items)
        event_text = events[0] if len(events) == 1 else f"{len(events)} events"
        title = f"{total_likes} total likes! 🔥"
        body = f"Your photos from {event_text} are getting lots of love"
        extra: Data = {"totalLikes": total_likes}
    elif notification_type is NotificationType.COMMUNITY_MILESTONE:
        title = "Multiple milestones reached! 🎉"
        body = f"{len(events)} {'event has' if len(events) == 1 else 'events have'} hit photo milestones"
        extra = {"milestones": [_count(item, "milestone", 100) for item in items]}
    elif notification_type is NotificationType.PEAK_ACTIVITY:
        title = "High activity across events! ⚡"
        body = f"{len(events)} {'event is' if len(events) == 1 else 'events are'} buzzing with activity"
        extra = {}
    else:
        msg = f"No batching template for type: {notification_type}"
        raise ValueError(msg)

    template = TEMPLATES[notification_type]
    batch_type = f"{notification_type}_batch"
    return RenderedNotification(
        type=batch_type,
        title=title,
        body=body,
        priority=template.priority,
        channel=template.channel,
        category=template.category,
        thread_id=template.thread_id,
        sound=template.sound,
        vibration=template.vibration,
        data=_stamp({**new_data, "batchedCount": len(items), "events": events[:3], **extra}, batch_type),
    )
