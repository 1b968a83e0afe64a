"""Per-user preference gating: master switch, per-type switches and quiet hours."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from enum import StrEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from partysnap.notifications.templates import DEFAULT_TYPE_SETTINGS, PREFERENCE_COLUMNS, TypeSettings
from partysnap.notifications.types import NotificationType

logger = structlog.get_logger()


@dataclass(frozen=True)
class UserPreferences:
    """A user's notification preferences. Defaults are what a freshly created row holds."""

    user_id: str
    push_enabled: bool = True
    photo_likes: bool = True
    community_activity: bool = True
    event_updates: bool = True
    peak_activity: bool = True
    batch_mode: bool = False
    quiet_hours_enabled: bool = False
    quiet_hours_start: time = time(22, 0)
    quiet_hours_end: time = time(7, 0)
    timezone: str = "UTC"

    def allows(self, notification_type: NotificationType) -> bool:
        column = PREFERENCE_COLUMNS.get(notification_type)
        return column is None or bool(getattr(self, column))


UPDATABLE_FIELDS = frozenset(
    {
        "push_enabled",
        "photo_likes",
        "community_activity",
        "event_updates",
        "peak_activity",
        "batch_mode",
        "quiet_hours_enabled",
        "quiet_hours_start",
        "quiet_hours_end",
        "timezone",
    }
)


class PreferenceDecision(StrEnum):
    ALLOW = "allow"
    USER_PREFERENCES = "user_preferences"
    TYPE_DISABLED = "type_disabled"
    QUIET_HOURS = "quiet_hours"


def local_time(now: datetime, timezone: str) -> time:
    """Wall-clock minute in ``timezone``; unknown zones fall back to UTC."""
    try:
        zone = ZoneInfo(timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone", timezone=timezone)
        zone = ZoneInfo("UTC")
    return now.astimezone(zone).time().replace(second=0, microsecond=0)


def in_quiet_window(current: time, start: time, end: time) -> bool:
    """Inclusive window; ``start > end`` means it crosses midnight."""
    if start > end:
        return current >= start or current <= end
    return start <= current <= end


def in_quiet_hours(prefs: UserPreferences, now: datetime) -> bool:
    if not prefs.quiet_hours_enabled:
        return False
    return in_quiet_window(local_time(now, prefs.timezone), prefs.quiet_hours_start, prefs.quiet_hours_end)


def evaluate(
    prefs: UserPreferences,
    notification_type: NotificationType,
    now: datetime,
    type_settings: TypeSettings | None = None,
) -> PreferenceDecision:
    settings = type_settings or DEFAULT_TYPE_SETTINGS.get(notification_type, TypeSettings())
    if not prefs.push_enabled:
        return PreferenceDecision.USER_PREFERENCES
    if not settings.enabled or not prefs.allows(notification_type):
        return PreferenceDecision.TYPE_DISABLED
    if settings.respects_quiet_hours and in_quiet_hours(prefs, now):
        return PreferenceDecision.QUIET_HOURS
    return PreferenceDecision.ALLOW
