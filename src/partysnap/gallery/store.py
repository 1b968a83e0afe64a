"""Relational queries behind the gallery caches and the event triggers."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partysnap.db.models import Album, Event, EventOrganizer, EventParticipant, Photo, PhotoLike, User
from partysnap.errors import NotFoundError, StoreError


@dataclass(frozen=True)
class EventAccess:
    """What the photo cache needs to know about an event to segment its keys."""

    id: str
    created_by: str | None
    require_moderation: bool
    organizer_ids: frozenset[str] = field(default_factory=frozenset)

    def is_organizer(self, user_id: str | None) -> bool:
        return bool(user_id) and (user_id == self.created_by or user_id in self.organizer_ids)


@dataclass(frozen=True)
class PhotoFilter:
    """Moderation filter: ``statuses`` whitelists, ``excluded`` blacklists."""

    statuses: tuple[str, ...] | None = None
    excluded: tuple[str, ...] = ()


def serialize(row: Any) -> dict[str, Any]:  # noqa: ANN401
    """ORM row -> JSON-safe dict."""
    data: dict[str, Any] = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        data[column.key] = value.isoformat() if isinstance(value, datetime) else value
    return data


class GalleryStore:
    """One session per operation so concurrent cache reads never share a session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            raise StoreError(str(exc)) from exc

    # --- Events ---

    async def get_event_access(self, event_id: str) -> EventAccess:
        async with self._session() as session:
            event = await session.get(Event, event_id)
            if event is None:
                msg = f"Event not found: {event_id}"
                raise NotFoundError(msg)
            organizer_ids = (
                await session.scalars(
                    select(EventOrganizer.user_id).where(
                        EventOrganizer.event_id == event_id,
                        EventOrganizer.status == "active",
                    )
                )
            ).all()
        return EventAccess(
            id=event.id,
            created_by=event.created_by,
            require_moderation=bool(event.require_moderation),
            organizer_ids=frozenset(organizer_ids),
        )

    async def get_event_name(self, event_id: str) -> str | None:
        async with self._session() as session:
            return await session.scalar(select(Event.name).where(Event.id == event_id))

    async def events_starting_between(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        async with self._session() as session:
            rows = await session.scalars(
                select(Event).where(
                    Event.start_time >= start,
                    Event.start_time <= end,
                    Event.status.in_(REMINDABLE_STATUSES),
                )
            )
            return [serialize(row) for row in rows]

    # --- Participants ---

    async def participants_page(self, event_id: str, offset: int, limit: int) -> tuple[list[dict[str, Any]], int]:
        async with self._session() as session:
            total = await session.scalar(
                select(func.count()).select_from(EventParticipant).where(EventParticipant.event_id == event_id)
            )
            rows = await session.execute(
                select(EventParticipant, User)
                .outerjoin(User, User.id == EventParticipant.user_id)
                .where(EventParticipant.event_id == event_id)
                .order_by(EventParticipant.joined_at.asc())
                .offset(offset)
                .limit(limit)
            )
            participants = []
            for participant, user in rows.all():
                item = serialize(participant)
                item["users"] = (
                    {k: v for k, v in serialize(user).items() if k in USER_FIELDS}
                    if user
                    else None
                )
                participants.append(item)
        return participants, int(total or 0)

    async def all_participants(self, event_id: str) -> list[dict[str, Any]]:
        async with self._session() as session:
            rows = await session.scalars(select(EventParticipant).where(EventParticipant.event_id == event_id))
            return [serialize(row) for row in rows]

    async def accepted_participant_ids(self, event_id: str) -> list[str]:
        async with self._session() as session:
            rows = await session.scalars(
                select(EventParticipant.user_id).where(
                    EventParticipant.event_id == event_id,
                    EventParticipant.status == "accepted",
                )
            )
            return list(rows)

    async def add_participant(self, event_id: str, user_id: str, added_by: str | None = None) -> dict[str, Any] | None:
        """Insert a participation row. Returns None if the user already participates."""
        async with self._session() as session:
            participant = EventParticipant(event_id=event_id, user_id=user_id, added_by=added_by, status="accepted")
            session.add(participant)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            await session.refresh(participant)
            return serialize(participant)

    async def remove_participant(self, event_id: str, user_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(EventParticipant).where(
                    EventParticipant.event_id == event_id,
                    EventParticipant.user_id == user_id,
                )
            )
            await session.commit()
            return bool(result.rowcount)

    # --- Photos ---

    async def event_photos(
        self,
        event_id: str,
        photo_filter: PhotoFilter,
        sort_by: str,
        offset: int,
        limit: int,
    ) -> tuple[list[dict[str, Any]], int]:
        conditions = [Photo.event_id == event_id, Photo.photo_type == "event"]
        if photo_filter.statuses is not None:
            conditions.append(Photo.moderation_status.in_(photo_filter.statuses))
        if photo_filter.excluded:
            conditions.append(Photo.moderation_status.not_in(photo_filter.excluded))

        if sort_by == "most_liked":
            ordering = (Photo.like_count_computed.desc().nulls_last(), Photo.created_at.desc())
        else:
            ordering = (Photo.created_at.desc(),)

        async with self._session() as session:
            total = await session.scalar(select(func.count()).select_from(Photo).where(*conditions))
            rows = await session.scalars(
                select(Photo).where(*conditions).order_by(*ordering).offset(offset).limit(limit)
            )
            return [serialize(row) for row in rows], int(total or 0)

    async def photo_details(self, photo_id: str) -> dict[str, Any] | None:
        async with self._session() as session:
            photo = await session.get(Photo, photo_id)
            return serialize(photo) if photo else None

    async def like_count(self, photo_id: str) -> int:
        async with self._session() as session:
            count = await session.scalar(
                select(func.count()).select_from(PhotoLike).where(PhotoLike.photo_id == photo_id)
            )
            return int(count or 0)

    async def photo_count(self, event_id: str, since: datetime | None = None) -> int:
        conditions = [Photo.event_id == event_id]
        if since is not None:
            conditions.append(Photo.created_at >= since)
        async with self._session() as session:
            count = await session.scalar(select(func.count()).select_from(Photo).where(*conditions))
            return int(count or 0)

    # --- Albums ---

    async def albums_page(self, event_id: str, offset: int, limit: int) -> tuple[list[dict[str, Any]], int]:
        async with self._session() as session:
            total = await session.scalar(select(func.count()).select_from(Album).where(Album.event_id == event_id))
            rows = await session.scalars(
                select(Album)
                .where(Album.event_id == event_id)
                .order_by(Album.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return [serialize(row) for row in rows], int(total or 0)

    async def get_album(self, album_id: str) -> dict[str, Any] | None:
        async with self._session() as session:
            album = await session.get(Album, album_id)
            return serialize(album) if album else None

    async def update_album(self, album_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        allowed = {k: v for k, v in updates.items() if k in _ALBUM_UPDATABLE}
        async with self._session() as session:
            album = await session.get(Album, album_id)
            if album is None:
                return None
            if allowed:
                await session.execute(
                    update(Album).where(Album.id == album_id).values(**allowed, updated_at=func.now())
                )
                await session.commit()
                await session.refresh(album)
            return serialize(album)

    async def delete_album(self, album_id: str) -> str | None:
        """Delete an album and return its event id, or None if it did not exist."""
        async with self._session() as session:
            event_id = await session.scalar(select(Album.event_id).where(Album.id == album_id))
            if event_id is None:
                return None
            await session.execute(delete(Album).where(Album.id == album_id))
            await session.commit()
            return event_id


_ALBUM_UPDATABLE: Sequence[str] = ("title", "description", "photos")
REMINDABLE_STATUSES = ("upcoming", "confirmed")
USER_FIELDS = ("id", "name", "email", "profile_pic", "created_at")
