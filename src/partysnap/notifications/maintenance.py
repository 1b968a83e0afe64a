"""Periodic token hygiene and history retention."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import timedelta

import structlog

from partysnap.cache.kv import Clock, utcnow
from partysnap.config import Settings
from partysnap.errors import UnroutableTokenError
from partysnap.middleware.logging import short_token
from partysnap.notifications.providers import ProviderRegistry
from partysnap.notifications.routing import classify_token
from partysnap.notifications.store import NotificationStore, TokenRecord

logger = structlog.get_logger()

VALIDATION_PAUSE_SECONDS = 1.0
INVALID_REASON = "validation_failed"


@dataclass
class CleanupReport:
    validated: int = 0
    deactivated: int = 0
    idle_deactivated: int = 0
    deleted: int = 0
    history_purged: int = 0
    errors: int = 0


class TokenMaintenance:
    def __init__(
        self,
        store: NotificationStore,
        providers: ProviderRegistry,
        settings: Settings,
        *,
        clock: Clock = utcnow,
        pause_seconds: float = VALIDATION_PAUSE_SECONDS,
    ) -> None:
        self.store = store
        self.providers = providers
        self.settings = settings
        self.clock = clock
        self.pause_seconds = pause_seconds

    async def cleanup_tokens(self) -> CleanupReport:
        now = self.clock()
        report = CleanupReport()
        settings = self.settings

        due = await self.store.tokens_due_for_validation(
            now - timedelta(days=settings.token_revalidate_days),
            settings.token_validation_limit,
        )
        batch_size = settings.token_validation_batch_size
        for start in range(0, len(due), batch_size):
            await self._validate_batch(due[start : start + batch_size], report)
            if start + batch_size < len(due):
                await asyncio.sleep(self.pause_seconds)

        report.idle_deactivated = await self.store.deactivate_idle_tokens(
            now - timedelta(days=settings.token_inactivity_days)
        )
        report.deleted = await self.store.delete_inactive_tokens(
            now - timedelta(days=settings.inactive_token_retention_days)
        )
        report.history_purged = await self.store.purge_history(now - timedelta(days=settings.history_retention_days))

        logger.info("token_cleanup_complete", **asdict(report))
        return report

    async def _validate_batch(self, tokens: list[TokenRecord], report: CleanupReport) -> None:
        valid: list[str] = []
        invalid: list[str] = []
        for record in tokens:
            try:
                routed = classify_token(record.token, record.platform, record.token_type, record.device_token)
                outcome = await self.providers.get(routed.kind).validate_token(routed.address)
            except UnroutableTokenError:
                invalid.append(record.token)
                continue
            except Exception:
                logger.exception("token_validation_error", token=short_token(record.token))
                report.errors += 1
                continue
            if outcome.valid:
                valid.append(record.token)
            elif outcome.should_deactivate:
                invalid.append(record.token)
            else:
                # Probe failed without a verdict on the token itself.
                report.errors += 1

        await self.store.mark_tokens_validated(valid)
        report.validated += len(valid)
        if invalid:
            report.deactivated += await self.store.deactivate_tokens(invalid, INVALID_REASON)
