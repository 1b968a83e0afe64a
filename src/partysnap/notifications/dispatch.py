"""Dispatch engine: one notification to every device of one or many users.

A dispatch runs validate -> preferences -> rate limit -> tokens -> batching
-> route -> send -> record. Every early exit is a :class:`DispatchResult`
with a reason code; :meth:`DispatchEngine.send` never raises.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field, replace
from datetime import timedelta
from enum import StrEnum
from typing import Any

import structlog

from partysnap.cache.kv import Clock, utcnow
from partysnap.errors import NotificationValidationError, UnroutableTokenError
from partysnap.middleware.logging import short_token
from partysnap.notifications.preferences import PreferenceDecision, UserPreferences, evaluate
from partysnap.notifications.providers import BatchSendResult, ProviderRegistry
from partysnap.notifications.routing import RoutedToken, classify_token
from partysnap.notifications.store import NotificationStore, TokenRecord
from partysnap.notifications.templates import (
    BATCHING_RULES,
    DEFAULT_TYPE_SETTINGS,
    TEST_NOTIFICATION,
    BatchDecision,
    batching_decision,
    render,
    render_batch_summary,
)
from partysnap.notifications.types import NotificationType, ProviderKind, RenderedNotification
from partysnap.ratelimit import RateLimiter

logger = structlog.get_logger()

DEACTIVATION_REASON = "invalid_token"


class DispatchStatus(StrEnum):
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    INVALID = "invalid"
    ERROR = "error"


class SkipReason(StrEnum):
    INVALID_DATA = "invalid_data"
    USER_PREFERENCES = "user_preferences"
    QUIET_HOURS = "quiet_hours"
    TYPE_DISABLED = "type_disabled"
    RATE_LIMITED = "rate_limited"
    NO_TOKENS = "no_tokens"
    BATCHED = "batched"
    ALL_DEVICES_FAILED = "all_devices_failed"
    INTERNAL_ERROR = "internal_error"


_DECISION_REASONS = {
    PreferenceDecision.USER_PREFERENCES: SkipReason.USER_PREFERENCES,
    PreferenceDecision.TYPE_DISABLED: SkipReason.TYPE_DISABLED,
    PreferenceDecision.QUIET_HOURS: SkipReason.QUIET_HOURS,
}


@dataclass
class DispatchResult:
    status: DispatchStatus
    reason: SkipReason | None = None
    devices_reached: int = 0
    devices_total: int = 0
    failed: int = 0
    invalid_tokens_deactivated: int = 0
    history_id: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status in (DispatchStatus.SENT, DispatchStatus.PARTIAL)

    def as_dict(self) -> dict[str, Any]:
        return {**asdict(self), "success": self.success}


@dataclass
class BulkDispatchResult:
    successful: int = 0
    failed: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def add(self, user_id: str, result: DispatchResult) -> None:
        if result.success:
            self.successful += 1
        else:
            self.failed += 1
        self.details.append({"user_id": user_id, **result.as_dict()})

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DeliveryReport:
    """Aggregate of one notification across every device of one user."""

    total: int = 0
    delivered: list[str] = field(default_factory=list)
    failed: int = 0
    invalid: list[str] = field(default_factory=list)


class DispatchEngine:
    def __init__(
        self,
        store: NotificationStore,
        providers: ProviderRegistry,
        rate_limiter: RateLimiter,
        *,
        chunk_size: int = 50,
        chunk_delay: float = 0.1,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.providers = providers
        self.rate_limiter = rate_limiter
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.clock = clock

    async def send(
        self,
        user_id: str,
        notification_type: str,
        data: dict[str, Any] | None = None,
    ) -> DispatchResult:
        """Send ``notification_type`` to every active device of ``user_id``."""
        data = dict(data or {})
        try:
            return await self._send(user_id, notification_type, data)
        except Exception as exc:
            logger.exception("dispatch_failed", user_id=user_id, notification_type=notification_type)
            return DispatchResult(status=DispatchStatus.ERROR, reason=SkipReason.INTERNAL_ERROR, error=str(exc))

    async def _send(self, user_id: str, notification_type: str, data: dict[str, Any]) -> DispatchResult:
        try:
            notification = render(notification_type, data)
        except NotificationValidationError as exc:
            logger.info("dispatch_invalid", user_id=user_id, error=str(exc))
            return DispatchResult(status=DispatchStatus.INVALID, reason=SkipReason.INVALID_DATA, error=str(exc))
        parsed = NotificationType(notification_type)

        prefs, decision = await self._check_preferences(user_id, parsed)
        if decision is not PreferenceDecision.ALLOW:
            return self._skipped(user_id, parsed, _DECISION_REASONS[decision])

        status = await self.rate_limiter.acquire(parsed, user_id)
        if not status.allowed:
            return self._skipped(user_id, parsed, SkipReason.RATE_LIMITED)

        tokens = await self.store.get_active_tokens(user_id)
        if not tokens:
            return self._skipped(user_id, parsed, SkipReason.NO_TOKENS)

        if prefs is not None and prefs.batch_mode and DEFAULT_TYPE_SETTINGS[parsed].batch_enabled:
            batch_decision, summary = await self._batching(user_id, parsed, data)
            if batch_decision is BatchDecision.ABSORB:
                return self._skipped(user_id, parsed, SkipReason.BATCHED)
            if summary is not None:
                notification = summary

        report = await self.send_to_devices(tokens, notification)
        deactivated = await self._deactivate(report.invalid)
        await self._mark_used(report.delivered)
        history_id = await self._record(user_id, notification, data, reached=bool(report.delivered))

        reached = len(report.delivered)
        if reached == report.total:
            result_status, reason = DispatchStatus.SENT, None
        elif reached:
            result_status, reason = DispatchStatus.PARTIAL, None
        else:
            result_status, reason = DispatchStatus.FAILED, SkipReason.ALL_DEVICES_FAILED

        logger.info(
            "dispatch_complete",
            user_id=user_id,
            notification_type=notification.type,
            reached=reached,
            total=report.total,
            deactivated=deactivated,
        )
        return DispatchResult(
            status=result_status,
            reason=reason,
            devices_reached=reached,
            devices_total=report.total,
            failed=report.failed,
            invalid_tokens_deactivated=deactivated,
            history_id=history_id,
        )

    async def send_bulk(
        self,
        user_ids: Sequence[str],
        notification_type: str,
        data: dict[str, Any] | None = None,
    ) -> BulkDispatchResult:
        """Send to many users in fixed-size chunks with a short pause between chunks."""
        result = BulkDispatchResult()
        for start in range(0, len(user_ids), self.chunk_size):
            chunk = list(user_ids[start : start + self.chunk_size])
            outcomes = await asyncio.gather(*(self.send(user_id, notification_type, data) for user_id in chunk))
            for user_id, outcome in zip(chunk, outcomes, strict=True):
                result.add(user_id, outcome)
            if start + self.chunk_size < len(user_ids):
                await asyncio.sleep(self.chunk_delay)
        logger.info(
            "bulk_dispatch_complete",
            notification_type=notification_type,
            successful=result.successful,
            total=len(user_ids),
        )
        return result

    async def send_test(
        self,
        token: str,
        platform: str | None,
        token_type: str | None = None,
        device_token: str | None = None,
    ) -> DispatchResult:
        """Send the fixed test notification to a single device."""
        try:
            routed = classify_token(token, platform, token_type, device_token)
        except UnroutableTokenError as exc:
            return DispatchResult(status=DispatchStatus.INVALID, reason=SkipReason.INVALID_DATA, error=str(exc))

        notification = replace(
            TEST_NOTIFICATION,
            data={**TEST_NOTIFICATION.data, "timestamp": self.clock().isoformat()},
        )
        try:
            sent = await self.providers.get(routed.kind).send_one(routed.address, notification)
        except Exception as exc:
            logger.exception("test_notification_failed", token=short_token(token))
            return DispatchResult(status=DispatchStatus.ERROR, reason=SkipReason.INTERNAL_ERROR, error=str(exc))

        if sent.success:
            return DispatchResult(status=DispatchStatus.SENT, devices_reached=1, devices_total=1)
        return DispatchResult(
            status=DispatchStatus.FAILED,
            reason=SkipReason.ALL_DEVICES_FAILED,
            devices_total=1,
            failed=1,
            error=sent.error,
        )

    async def send_to_devices(
        self,
        tokens: Sequence[TokenRecord],
        notification: RenderedNotification,
    ) -> DeliveryReport:
        """Partition tokens by provider and send every bucket concurrently."""
        report = DeliveryReport(total=len(tokens))
        buckets: dict[ProviderKind, list[RoutedToken]] = defaultdict(list)
        for record in tokens:
            try:
                routed = classify_token(record.token, record.platform, record.token_type, record.device_token)
            except UnroutableTokenError:
                logger.warning("token_unroutable", token=short_token(record.token), platform=record.platform)
                report.failed += 1
                continue
            buckets[routed.kind].append(routed)

        kinds = list(buckets)
        outcomes = await asyncio.gather(
            *(self._send_bucket(kind, buckets[kind], notification) for kind in kinds),
            return_exceptions=True,
        )
        for kind, outcome in zip(kinds, outcomes, strict=True):
            routed_tokens = buckets[kind]
            if isinstance(outcome, BaseException):
                logger.error("provider_bucket_failed", provider=kind, size=len(routed_tokens), error=str(outcome))
                report.failed += len(routed_tokens)
                continue
            by_address = {routed.address: routed.token for routed in routed_tokens}
            for sent in outcome.results:
                row_token = by_address.get(sent.token, sent.token)
                if sent.success:
                    report.delivered.append(row_token)
                else:
                    report.failed += 1
                    if sent.should_deactivate:
                        report.invalid.append(row_token)
        return report

    async def _send_bucket(
        self,
        kind: ProviderKind,
        routed_tokens: list[RoutedToken],
        notification: RenderedNotification,
    ) -> BatchSendResult:
        provider = self.providers.get(kind)
        result = await provider.send_batch([routed.address for routed in routed_tokens], notification)
        logger.debug(
            "provider_bucket_sent",
            provider=kind,
            success=result.success_count,
            failure=result.failure_count,
        )
        return result

    # --- Steps ---

    async def _check_preferences(
        self,
        user_id: str,
        notification_type: NotificationType,
    ) -> tuple[UserPreferences | None, PreferenceDecision]:
        """Evaluate preferences, allowing the send when they cannot be read."""
        try:
            prefs = await self.store.get_or_create_preferences(user_id)
            return prefs, evaluate(prefs, notification_type, self.clock())
        except Exception:
            logger.exception("preference_check_failed", user_id=user_id)
            return None, PreferenceDecision.ALLOW

    async def _batching(
        self,
        user_id: str,
        notification_type: NotificationType,
        data: dict[str, Any],
    ) -> tuple[BatchDecision, RenderedNotification | None]:
        """Decide against the user's recent same-type history; a merge comes with its summary."""
        rule = BATCHING_RULES.get(notification_type)
        if rule is None:
            return BatchDecision.STANDALONE, None
        since = self.clock() - timedelta(minutes=rule.window_minutes)
        recent = await self.store.recent_history(
            user_id, [notification_type, f"{notification_type}_batch"], since
        )
        decision = batching_decision(notification_type, len(recent))
        if decision is BatchDecision.MERGE:
            return decision, render_batch_summary(notification_type, recent, data)
        return decision, None

    async def _deactivate(self, tokens: list[str]) -> int:
        if not tokens:
            return 0
        try:
            count = await self.store.deactivate_tokens(tokens, DEACTIVATION_REASON)
        except Exception:
            logger.exception("token_deactivation_failed", count=len(tokens))
            return 0
        logger.info("tokens_deactivated", count=count)
        return count

    async def _mark_used(self, tokens: list[str]) -> None:
        if not tokens:
            return
        try:
            await self.store.mark_tokens_used(tokens)
        except Exception:
            logger.exception("token_touch_failed", count=len(tokens))

    async def _record(
        self,
        user_id: str,
        notification: RenderedNotification,
        data: dict[str, Any],
        *,
        reached: bool,
    ) -> str | None:
        try:
            return await self.store.record_history(
                user_id,
                notification,
                event_id=data.get("eventId"),
                photo_id=data.get("photoId"),
                status="sent" if reached else "failed",
            )
        except Exception:
            logger.exception("history_write_failed", user_id=user_id)
            return None

    def _skipped(self, user_id: str, notification_type: str, reason: SkipReason) -> DispatchResult:
        logger.info("dispatch_skipped", user_id=user_id, notification_type=notification_type, reason=reason)
        return DispatchResult(status=DispatchStatus.SKIPPED, reason=reason)

