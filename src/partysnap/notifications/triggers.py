"""Turn database changes and the clock into notifications."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from partysnap.cache.kv import Clock, utcnow
from partysnap.gallery.photos import PhotoUrlCache
from partysnap.gallery.store import GalleryStore
from partysnap.notifications.dispatch import BulkDispatchResult, DispatchEngine, DispatchResult
from partysnap.notifications.store import NotificationStore
from partysnap.notifications.types import NotificationType

logger = structlog.get_logger()

PHOTO_MILESTONES = (50, 100, 250, 500, 1000)
PEAK_ACTIVITY_STEP = 10
PEAK_ACTIVITY_WINDOW = timedelta(hours=1)

REMINDER_LEAD = timedelta(minutes=60)
REMINDER_TOLERANCE = timedelta(minutes=5)
STARTING_LEAD = timedelta(minutes=15)
# Each window must be wider than the 5-minute cron cadence; history dedupes the overlap.
STARTING_TOLERANCE = timedelta(minutes=3)


@dataclass
class ReminderReport:
    events_checked: int = 0
    reminders_sent: int = 0
    already_sent: int = 0
    errors: int = 0


class EventTriggers:
    def __init__(
        self,
        engine: DispatchEngine,
        gallery: GalleryStore,
        notifications: NotificationStore,
        photo_cache: PhotoUrlCache | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.engine = engine
        self.gallery = gallery
        self.notifications = notifications
        self.photo_cache = photo_cache
        self.clock = clock

    async def handle_change(
        self,
        table: str,
        change_type: str,
        record: dict[str, Any],
        old_record: dict[str, Any] | None = None,
    ) -> bool:
        """Route a row-change webhook. Returns whether any handler ran."""
        if table == "photo_likes" and change_type == "INSERT":
            await self.on_photo_liked(record["photo_id"])
            return True
        if table == "events" and change_type == "UPDATE":
            await self.on_event_status_changed(record, (old_record or {}).get("status"))
            return True
        if table == "photos" and change_type == "INSERT":
            await self.on_photo_added(record)
            return True
        logger.debug("webhook_ignored", table=table, change_type=change_type)
        return False

    async def on_photo_liked(self, photo_id: str) -> DispatchResult | None:
        photo = await self.gallery.photo_details(photo_id)
        if not photo or not photo.get("uploaded_by_id"):
            logger.info("liked_photo_missing", photo_id=photo_id)
            return None
        like_count = await self.gallery.like_count(photo_id)
        event_name = await self.gallery.get_event_name(photo["event_id"])
        data: dict[str, Any] = {
            "photoId": photo_id,
            "eventId": photo["event_id"],
            "likeCount": like_count,
            "eventName": event_name or "your event",
        }
        return await self.engine.send(photo["uploaded_by_id"], NotificationType.PHOTO_LIKED, data)

    async def on_event_status_changed(
        self,
        event: dict[str, Any],
        old_status: str | None,
    ) -> BulkDispatchResult | None:
        if event.get("status") != "live" or old_status == "live":
            return None
        user_ids = await self.gallery.accepted_participant_ids(event["id"])
        if not user_ids:
            return None
        return await self.engine.send_bulk(
            user_ids,
            NotificationType.EVENT_LIVE,
            {"eventId": event["id"], "eventName": event.get("name") or "Your event"},
        )

    async def on_photo_added(self, photo: dict[str, Any]) -> list[BulkDispatchResult]:
        """Invalidate the event's photo URLs, then check milestones and peak activity."""
        event_id = photo["event_id"]
        if self.photo_cache is not None:
            await self.photo_cache.invalidate_event(event_id)

        sent: list[BulkDispatchResult] = []
        total = await self.gallery.photo_count(event_id)
        recent = await self.gallery.photo_count(event_id, since=self.clock() - PEAK_ACTIVITY_WINDOW)
        is_milestone = total in PHOTO_MILESTONES
        is_peak = recent >= PEAK_ACTIVITY_STEP and recent % PEAK_ACTIVITY_STEP == 0
        if not (is_milestone or is_peak):
            return sent

        user_ids = await self.gallery.accepted_participant_ids(event_id)
        if not user_ids:
            return sent
        event_name = await self.gallery.get_event_name(event_id) or "Event"

        if is_milestone:
            logger.info("photo_milestone_reached", event_id=event_id, milestone=total)
            sent.append(
                await self.engine.send_bulk(
                    user_ids,
                    NotificationType.COMMUNITY_MILESTONE,
                    {"eventId": event_id, "eventName": event_name, "milestone": total},
                )
            )
        if is_peak:
            sent.append(
                await self.engine.send_bulk(
                    user_ids,
                    NotificationType.PEAK_ACTIVITY,
                    {"eventId": event_id, "eventName": event_name, "recentPhotoCount": recent},
                )
            )
        return sent

    async def send_event_reminders(self, now: datetime | None = None) -> ReminderReport:
        """One-hour reminders and fifteen-minute "starting" notices, each sent once per event."""
        now = now or self.clock()
        report = ReminderReport()
        rounds = (
            (REMINDER_LEAD, REMINDER_TOLERANCE, NotificationType.EVENT_REMINDER, {"hoursUntilStart": 1}),
            (STARTING_LEAD, STARTING_TOLERANCE, NotificationType.EVENT_STARTING, {"minutesUntilStart": 15}),
        )
        for lead, tolerance, notification_type, extra in rounds:
            target = now + lead
            events = await self.gallery.events_starting_between(target - tolerance, target + tolerance)
            report.events_checked += len(events)
            for event in events:
                try:
                    if await self.notifications.history_exists(event["id"], notification_type):
                        report.already_sent += 1
                        continue
                    user_ids = await self.gallery.accepted_participant_ids(event["id"])
                    if not user_ids:
                        continue
                    await self.engine.send_bulk(
                        user_ids,
                        notification_type,
                        {"eventId": event["id"], "eventName": event.get("name") or "Your event", **extra},
                    )
                    report.reminders_sent += 1
                except Exception:
                    logger.exception("event_reminder_failed", event_id=event.get("id"))
                    report.errors += 1
        logger.info("event_reminders_complete", **asdict(report))
        return report
