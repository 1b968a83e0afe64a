"""Expo push service adapter."""

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
from partysnap.notifications.routing import is_expo_push_token
from partysnap.notifications.types import NotificationType, ProviderKind, RenderedNotification

logger = structlog.get_logger()

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"

_INVALID = {"DeviceNotRegistered"}
_RETRYABLE = {"MessageRateExceeded"}

_HIGH_PRIORITY = {NotificationType.PHOTO_LIKED, NotificationType.EVENT_LIVE, NotificationType.EVENT_STARTING}


def _base_type(notification_type: str) -> str:
    return notification_type.removesuffix("_batch")


def expo_priority(notification_type: str) -> str:
    return "high" if _base_type(notification_type) in _HIGH_PRIORITY else "default"


class ExpoProvider(BasePushProvider):
    """Send through ``exp.host`` in chunks of 100, reading per-message tickets."""

    kind = ProviderKind.EXPO
    max_batch_size = 100

    def __init__(
        self,
        access_token: str = "",
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._headers = headers
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def build_message(self, token: str, notification: RenderedNotification) -> dict[str, Any]:
        message: dict[str, Any] = {
            "to": token,
            "sound": notification.sound,
            "title": notification.title,
            "body": notification.body,
            "data": {**notification.data, "type": notification.type},
            "badge": 1,
            "channelId": notification.channel,
            "priority": expo_priority(notification.type),
            "categoryId": notification.category,
        }
        if notification.image_url:
            message["image"] = notification.image_url
        return message

    async def _send_chunk(self, tokens: Sequence[str], notification: RenderedNotification) -> BatchSendResult:
        results: dict[str, SendResult] = {}
        valid: list[str] = []
        for token in tokens:
            if is_expo_push_token(token):
                valid.append(token)
            else:
                results[token] = SendResult.failed(token, DeliveryOutcome.INVALID_TOKEN, "Invalid Expo push token")

        if valid:
            response = await self._client.post(
                EXPO_PUSH_URL,
                json=[self.build_message(token, notification) for token in valid],
                headers=self._headers,
            )
            response.raise_for_status()
            tickets = response.json().get("data", [])
            for index, token in enumerate(valid):
                ticket = tickets[index] if index < len(tickets) else {"status": "error", "message": "missing ticket"}
                results[token] = self._read_ticket(token, ticket)

        return BatchSendResult([results[token] for token in tokens])

    def _read_ticket(self, token: str, ticket: dict[str, Any]) -> SendResult:
        if ticket.get("status") == "ok":
            return SendResult.ok(token, ticket.get("id"))
        code = (ticket.get("details") or {}).get("error")
        logger.warning("expo_ticket_error", code=code, message=ticket.get("message"))
        return SendResult.failed(token, self.classify_error(code), code or ticket.get("message"))

    def classify_error(self, code: str | None) -> DeliveryOutcome:
        if code in _INVALID:
            return DeliveryOutcome.INVALID_TOKEN
        if code in _RETRYABLE:
            return DeliveryOutcome.RETRYABLE
        return DeliveryOutcome.UNKNOWN

    async def validate_token(self, token: str) -> TokenValidation:
        if is_expo_push_token(token):
            return TokenValidation(valid=True)
        return TokenValidation(valid=False, should_deactivate=True, error="Invalid Expo push token format")

    async def close(self) -> None:
        await self._client.aclose()
