"""Legacy FCM HTTP adapter (server-key auth, ``registration_ids`` multicast).

Google has retired this API for new projects; it stays for Android rows
registered before the v1 migration.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from partysnap.notifications.providers.base import (
    BasePushProvider,
    BatchSendResult,
    DeliveryOutcome,
    SendResult,
    TokenValidation,
)
from partysnap.notifications.types import ProviderKind, RenderedNotification

logger = structlog.get_logger()

FCM_LEGACY_URL = "https://fcm.googleapis.com/fcm/send"

_INVALID = {"NotRegistered", "InvalidRegistration", "MissingRegistration"}
_RETRYABLE = {"DeviceMessageRateExceeded", "TopicsMessageRateExceeded", "Unavailable", "InternalServerError"}


class FcmLegacyProvider(BasePushProvider):
    kind = ProviderKind.FCM_LEGACY
    max_batch_size = 500

    def __init__(self, server_key: str, *, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._headers = {"Authorization": f"key={server_key}", "Content-Type": "application/json"}
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def build_payload(self, notification: RenderedNotification) -> dict[str, Any]:
        android_notification: dict[str, Any] = {
            "title": notification.title,
            "body": notification.body,
            "sound": notification.sound,
            "android_channel_id": notification.channel,
        }
        if notification.image_url:
            android_notification["image"] = notification.image_url
        return {
            "priority": "high",
            "notification": android_notification,
            "data": {**notification.string_data(), "type": notification.type},
        }

    async def _send_chunk(self, tokens: Sequence[str], notification: RenderedNotification) -> BatchSendResult:
        response = await self._client.post(
            FCM_LEGACY_URL,
            json={**self.build_payload(notification), "registration_ids": list(tokens)},
            headers=self._headers,
        )
        response.raise_for_status()
        entries = response.json().get("results", [])
        results = []
        for index, token in enumerate(tokens):
            entry = entries[index] if index < len(entries) else {"error": "MissingResult"}
            if "message_id" in entry:
                results.append(SendResult.ok(token, entry["message_id"]))
            else:
                results.append(SendResult.failed(token, self.classify_error(entry.get("error")), entry.get("error")))
        return BatchSendResult(results)

    def classify_error(self, code: str | None) -> DeliveryOutcome:
        if code in _INVALID:
            return DeliveryOutcome.INVALID_TOKEN
        if code in _RETRYABLE:
            return DeliveryOutcome.RETRYABLE
        return DeliveryOutcome.UNKNOWN

    async def validate_token(self, token: str) -> TokenValidation:
        """Dry-run send: FCM checks the token without delivering anything."""
        try:
            response = await self._client.post(
                FCM_LEGACY_URL,
                json={"to": token, "dry_run": True, "data": {"validation": "true"}},
                headers=self._headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("fcm_legacy_validation_failed", error=str(exc))
            return TokenValidation(valid=False, error=str(exc))

        entries = response.json().get("results") or [{}]
        code = entries[0].get("error")
        if code is None:
            return TokenValidation(valid=True)
        return TokenValidation(
            valid=False,
            should_deactivate=self.classify_error(code) is DeliveryOutcome.INVALID_TOKEN,
            error=code,
        )

    async def close(self) -> None:
        await self._client.aclose()
