"""Tokens, preferences and history in the relational store."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partysnap.db.models import NotificationHistory, NotificationPreferences, PushToken
from partysnap.errors import StoreError
from partysnap.notifications.preferences import UPDATABLE_FIELDS, UserPreferences
from partysnap.notifications.routing import looks_like_expo
from partysnap.notifications.types import ProviderKind, RenderedNotification

HISTORY_STATUSES = ("delivered", "opened")


@dataclass(frozen=True)
class TokenRecord:
    id: str
    user_id: str
    token: str
    platform: str
    token_type: str = ProviderKind.EXPO
    device_token: str | None = None
    device_id: str | None = None

    @classmethod
    def from_row(cls, row: PushToken) -> TokenRecord:
        return cls(
            id=row.id,
            user_id=row.user_id,
            token=row.token,
            platform=row.platform,
            token_type=row.token_type,
            device_token=row.device_token,
            device_id=row.device_id,
        )


def infer_token_type(token: str, platform: str, device_token: str | None = None) -> str:
    if looks_like_expo(token):
        return ProviderKind.EXPO
    if platform == "android":
        return ProviderKind.FCM_V1 if device_token else ProviderKind.FCM_LEGACY
    return ProviderKind.APNS


def _preferences(row: NotificationPreferences) -> UserPreferences:
    return UserPreferences(user_id=row.user_id, **{name: getattr(row, name) for name in UPDATABLE_FIELDS})


class NotificationStore:
    """One session per operation so concurrent dispatches never share a session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            raise StoreError(str(exc)) from exc

    # --- Tokens ---

    async def get_active_tokens(self, user_id: str) -> list[TokenRecord]:
        async with self._session() as session:
            rows = await session.scalars(
                select(PushToken).where(PushToken.user_id == user_id, PushToken.is_active.is_(True))
            )
            return [TokenRecord.from_row(row) for row in rows]

    async def register_token(
        self,
        user_id: str,
        token: str,
        platform: str,
        *,
        device_id: str | None = None,
        token_type: str | None = None,
        device_token: str | None = None,
    ) -> TokenRecord:
        """Upsert by token. Re-registering reactivates the row and reassigns it to ``user_id``."""
        token_type = token_type or infer_token_type(token, platform, device_token)
        values: dict[str, Any] = {
            "user_id": user_id,
            "platform": platform,
            "device_id": device_id,
            "token_type": token_type,
            "device_token": device_token,
            "expo_token": token if token_type == ProviderKind.EXPO else None,
            "is_active": True,
            "failure_count": 0,
            "deactivated_at": None,
            "deactivation_reason": None,
            "updated_at": func.now(),
            "last_used_at": func.now(),
        }
        stmt = (
            insert(PushToken)
            .values(token=token, **values)
            .on_conflict_do_update(index_elements=[PushToken.token], set_=values)
            .returning(PushToken)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one()
            record = TokenRecord.from_row(row)
            await session.commit()
            return record

    async def deactivate_tokens(self, tokens: Sequence[str], reason: str) -> int:
        """Deactivate still-active rows; returns how many changed. Safe to repeat."""
        if not tokens:
            return 0
        async with self._session() as session:
            result = await session.execute(
                update(PushToken)
                .where(PushToken.token.in_(list(tokens)), PushToken.is_active.is_(True))
                .values(
                    is_active=False,
                    deactivated_at=func.now(),
                    deactivation_reason=reason,
                    failure_count=PushToken.failure_count + 1,
                    updated_at=func.now(),
                )
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def mark_tokens_used(self, tokens: Sequence[str]) -> None:
        if not tokens:
            return
        async with self._session() as session:
            await session.execute(
                update(PushToken).where(PushToken.token.in_(list(tokens))).values(last_used_at=func.now())
            )
            await session.commit()

    async def tokens_due_for_validation(self, validated_before: datetime, limit: int) -> list[TokenRecord]:
        async with self._session() as session:
            rows = await session.scalars(
                select(PushToken)
                .where(
                    PushToken.is_active.is_(True),
                    or_(PushToken.last_validated_at.is_(None), PushToken.last_validated_at < validated_before),
                )
                .order_by(PushToken.last_validated_at.asc().nulls_first())
                .limit(limit)
            )
            return [TokenRecord.from_row(row) for row in rows]

    async def mark_tokens_validated(self, tokens: Sequence[str]) -> None:
        if not tokens:
            return
        async with self._session() as session:
            await session.execute(
                update(PushToken).where(PushToken.token.in_(list(tokens))).values(last_validated_at=func.now())
            )
            await session.commit()

    async def deactivate_idle_tokens(self, used_before: datetime) -> int:
        last_seen = func.coalesce(PushToken.last_used_at, PushToken.created_at)
        async with self._session() as session:
            result = await session.execute(
                update(PushToken)
                .where(PushToken.is_active.is_(True), last_seen < used_before)
                .values(is_active=False, deactivated_at=func.now(), deactivation_reason="inactive")
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def delete_inactive_tokens(self, deactivated_before: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(PushToken).where(
                    PushToken.is_active.is_(False),
                    PushToken.deactivated_at < deactivated_before,
                )
            )
            await session.commit()
            return int(result.rowcount or 0)

    # --- Preferences ---

    async def get_or_create_preferences(self, user_id: str) -> UserPreferences:
        """Missing rows are created with defaults."""
        async with self._session() as session:
            row = await session.scalar(
                select(NotificationPreferences).where(NotificationPreferences.user_id == user_id)
            )
            if row is not None:
                return _preferences(row)
            await session.execute(
                insert(NotificationPreferences)
                .values(user_id=user_id)
                .on_conflict_do_nothing(index_elements=[NotificationPreferences.user_id])
            )
            await session.commit()
        return UserPreferences(user_id=user_id)

    async def update_preferences(self, user_id: str, updates: dict[str, Any]) -> UserPreferences:
        values = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        stmt = (
            insert(NotificationPreferences)
            .values(user_id=user_id, **values)
            .on_conflict_do_update(
                index_elements=[NotificationPreferences.user_id],
                set_={**values, "updated_at": func.now()},
            )
            .returning(NotificationPreferences)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one()
            prefs = _preferences(row)
            await session.commit()
            return prefs

    # --- History ---

    async def record_history(
        self,
        user_id: str,
        notification: RenderedNotification,
        *,
        event_id: str | None = None,
        photo_id: str | None = None,
        status: str = "sent",
    ) -> str:
        entry = NotificationHistory(
            user_id=user_id,
            notification_type=notification.type,
            title=notification.title,
            body=notification.body,
            data=notification.data,
            event_id=event_id,
            photo_id=photo_id,
            status=status,
        )
        async with self._session() as session:
            session.add(entry)
            await session.commit()
            return entry.id

    async def update_history_status(self, history_id: str, status: str) -> bool:
        if status not in HISTORY_STATUSES:
            msg = f"Unsupported notification status: {status}"
            raise ValueError(msg)
        column = "delivered_at" if status == "delivered" else "opened_at"
        async with self._session() as session:
            result = await session.execute(
                update(NotificationHistory)
                .where(NotificationHistory.id == history_id)
                .values(status=status, **{column: datetime.now(UTC)})
            )
            await session.commit()
            return bool(result.rowcount)

    async def recent_history(self, user_id: str, types: Sequence[str], since: datetime) -> list[dict[str, Any]]:
        """``data`` of the user's notifications of ``types`` sent at or after ``since``, oldest first."""
        async with self._session() as session:
            rows = await session.scalars(
                select(NotificationHistory.data)
                .where(
                    NotificationHistory.user_id == user_id,
                    NotificationHistory.notification_type.in_(list(types)),
                    NotificationHistory.created_at >= since,
                )
                .order_by(NotificationHistory.created_at.asc())
            )
            return [dict(data or {}) for data in rows]

    async def purge_history(self, created_before: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(NotificationHistory).where(NotificationHistory.created_at < created_before)
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def history_exists(self, event_id: str, notification_type: str) -> bool:
        """Whether ``notification_type`` was already sent to anyone for ``event_id``."""
        async with self._session() as session:
            found = await session.scalar(
                select(NotificationHistory.id)
                .where(
                    NotificationHistory.event_id == event_id,
                    NotificationHistory.notification_type == notification_type,
                )
                .limit(1)
            )
            return found is not None
