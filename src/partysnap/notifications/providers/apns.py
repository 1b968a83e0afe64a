"""Apple Push Notification service adapter (HTTP/2, token-based auth)."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from typing import Any

import httpx
import jwt
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

APNS_PRODUCTION_HOST = "https://api.push.apple.com"
APNS_SANDBOX_HOST = "https://api.sandbox.push.apple.com"

PROVIDER_TOKEN_TTL_SECONDS = 50 * 60
ALERT_EXPIRY_SECONDS = 7 * 24 * 60 * 60
PROBE_EXPIRY_SECONDS = 60
BATCH_PAUSE_SECONDS = 0.1

_INVALID = {"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic"}
_RETRYABLE = {"TooManyRequests", "ServiceUnavailable", "InternalServerError", "Shutdown"}


class ApnsProvider(BasePushProvider):
    """Send over HTTP/2; one request per device, concurrent within a batch of 100."""

    kind = ProviderKind.APNS
    max_batch_size = 100

    def __init__(
        self,
        *,
        key_id: str,
        team_id: str,
        private_key: str,
        bundle_id: str,
        use_sandbox: bool = False,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key_id = key_id
        self.team_id = team_id
        # Keys pasted into env vars usually carry literal "\n".
        self.private_key = private_key.replace("\\n", "\n")
        self.bundle_id = bundle_id
        self.host = APNS_SANDBOX_HOST if use_sandbox else APNS_PRODUCTION_HOST
        self._client = client or httpx.AsyncClient(http2=True, timeout=timeout)
        self._clock = clock
        self._provider_token: str | None = None
        self._issued_at = 0.0

    def provider_token(self) -> str:
        now = self._clock()
        if self._provider_token is None or now - self._issued_at >= PROVIDER_TOKEN_TTL_SECONDS:
            self._provider_token = jwt.encode(
                {"iss": self.team_id, "iat": int(now)},
                self.private_key,
                algorithm="ES256",
                headers={"kid": self.key_id},
            )
            self._issued_at = now
        return self._provider_token

    def build_payload(self, notification: RenderedNotification) -> dict[str, Any]:
        aps: dict[str, Any] = {
            "alert": {"title": notification.title, "body": notification.body},
            "sound": notification.sound,
            "badge": 1,
            "category": notification.category,
            "thread-id": notification.thread_id,
        }
        payload: dict[str, Any] = {**notification.data, "type": notification.type}
        if notification.image_url:
            aps["mutable-content"] = 1
            payload["imageUrl"] = notification.image_url
        return {"aps": aps, **payload}

    async def _post(
        self, token: str, payload: dict[str, Any], *, push_type: str, priority: int, expiry: int
    ) -> httpx.Response:
        headers = {
            "authorization": f"bearer {self.provider_token()}",
            "apns-topic": self.bundle_id,
            "apns-push-type": push_type,
            "apns-priority": str(priority),
            "apns-expiration": str(int(self._clock()) + expiry),
        }
        return await self._client.post(f"{self.host}/3/device/{token}", json=payload, headers=headers)

    async def _send_single(self, token: str, payload: dict[str, Any]) -> SendResult:
        try:
            response = await self._post(token, payload, push_type="alert", priority=10, expiry=ALERT_EXPIRY_SECONDS)
        except httpx.HTTPError as exc:
            return SendResult.failed(token, DeliveryOutcome.RETRYABLE, str(exc) or type(exc).__name__)
        if response.status_code == 200:
            return SendResult.ok(token, response.headers.get("apns-id"))
        reason = _reason(response)
        return SendResult.failed(token, self.classify_error(reason), reason)

    async def _send_chunk(self, tokens: Sequence[str], notification: RenderedNotification) -> BatchSendResult:
        payload = self.build_payload(notification)
        results = await asyncio.gather(*(self._send_single(token, payload) for token in tokens))
        return BatchSendResult(list(results))

    async def _between_chunks(self, more: bool) -> None:  # noqa: FBT001
        if more:
            await asyncio.sleep(BATCH_PAUSE_SECONDS)

    def classify_error(self, code: str | None) -> DeliveryOutcome:
        if code in _INVALID:
            return DeliveryOutcome.INVALID_TOKEN
        if code in _RETRYABLE:
            return DeliveryOutcome.RETRYABLE
        return DeliveryOutcome.UNKNOWN

    async def validate_token(self, token: str) -> TokenValidation:
        """Silent background push; the device shows nothing."""
        try:
            response = await self._post(
                token,
                {"aps": {"content-available": 1}},
                push_type="background",
                priority=5,
                expiry=PROBE_EXPIRY_SECONDS,
            )
        except httpx.HTTPError as exc:
            logger.warning("apns_validation_failed", error=str(exc))
            return TokenValidation(valid=False, error=str(exc))
        if response.status_code == 200:
            return TokenValidation(valid=True)
        reason = _reason(response)
        return TokenValidation(
            valid=False,
            should_deactivate=self.classify_error(reason) is DeliveryOutcome.INVALID_TOKEN,
            error=reason,
        )

    async def close(self) -> None:
        await self._client.aclose()


def _reason(response: httpx.Response) -> str:
    try:
        return response.json().get("reason") or f"HTTP {response.status_code}"
    except ValueError:
        return f"HTTP {response.status_code}"
