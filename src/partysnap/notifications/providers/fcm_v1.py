"""FCM HTTP v1 adapter backed by the Firebase Admin SDK.

The SDK is synchronous; every call is pushed to a worker thread.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import Any

import firebase_admin
import structlog
from firebase_admin import credentials, exceptions, messaging

from partysnap.notifications.providers.base import (
    BasePushProvider,
    BatchSendResult,
    DeliveryOutcome,
    SendResult,
    TokenValidation,
)
from partysnap.notifications.types import ProviderKind, RenderedNotification

logger = structlog.get_logger()

APP_NAME = "partysnap-push"
VALIDATION_TOPIC = "token-validation"

_INVALID = {
    "UnregisteredError",
    "SenderIdMismatchError",
    "invalid-registration-token",
    "registration-token-not-registered",
    "NOT_FOUND",
    "INVALID_ARGUMENT",
    "invalid-argument",
}
_RETRYABLE = {"QuotaExceededError", "UnavailableError", "InternalError", "quota-exceeded"}


def initialize_firebase_app(
    service_account_json: str, project_id: str = "", timeout: float | None = None
) -> firebase_admin.App:
    """Initialise (once) the named Firebase app used for messaging.

    ``service_account_json`` is either the JSON document itself or a path to it.
    ``timeout`` bounds every SDK HTTP request, in seconds.
    """
    try:
        return firebase_admin.get_app(APP_NAME)
    except ValueError:
        pass

    source: Any = service_account_json
    if service_account_json.lstrip().startswith("{"):
        source = json.loads(service_account_json)
    cred = credentials.Certificate(source)
    options: dict[str, Any] = {}
    if project_id:
        options["projectId"] = project_id
    if timeout is not None:
        options["httpTimeout"] = timeout
    app = firebase_admin.initialize_app(cred, options or None, name=APP_NAME)
    logger.info("firebase_initialized", project_id=project_id or None)
    return app


def error_code(exc: BaseException) -> str:
    """Reduce a Firebase exception to the code :meth:`FcmV1Provider.classify_error` understands."""
    if isinstance(exc, exceptions.InvalidArgumentError) and "registration token" in str(exc).lower():
        return "invalid-registration-token"
    return type(exc).__name__


class FcmV1Provider(BasePushProvider):
    kind = ProviderKind.FCM_V1
    max_batch_size = 500

    def __init__(self, app: firebase_admin.App | None = None, *, client: Any = None) -> None:  # noqa: ANN401
        # ``client`` stands in for the ``firebase_admin.messaging`` module in tests.
        self._app = app
        self._messaging = client or messaging

    def build_message(self, token: str, notification: RenderedNotification) -> messaging.Message:
        return messaging.Message(
            token=token,
            notification=messaging.Notification(
                title=notification.title,
                body=notification.body,
                image=notification.image_url,
            ),
            data={**notification.string_data(), "type": notification.type},
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(
                    sound=notification.sound,
                    channel_id=notification.channel,
                    default_sound=True,
                    default_vibrate_timings=True,
                ),
            ),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(
                        alert=messaging.ApsAlert(title=notification.title, body=notification.body),
                        sound=notification.sound,
                        badge=1,
                        content_available=True,
                        thread_id=notification.thread_id,
                        category=notification.category,
                    ),
                ),
            ),
        )

    async def _send_chunk(self, tokens: Sequence[str], notification: RenderedNotification) -> BatchSendResult:
        messages = [self.build_message(token, notification) for token in tokens]
        batch = await asyncio.to_thread(self._messaging.send_each, messages, app=self._app)
        results = []
        for token, response in zip(tokens, batch.responses, strict=True):
            if response.success:
                results.append(SendResult.ok(token, response.message_id))
            else:
                code = error_code(response.exception)
                results.append(SendResult.failed(token, self.classify_error(code), str(response.exception)))
        return BatchSendResult(results)

    def classify_error(self, code: str | None) -> DeliveryOutcome:
        if code in _INVALID:
            return DeliveryOutcome.INVALID_TOKEN
        if code in _RETRYABLE:
            return DeliveryOutcome.RETRYABLE
        return DeliveryOutcome.UNKNOWN

    async def validate_token(self, token: str) -> TokenValidation:
        """Subscribe then immediately unsubscribe from a throwaway topic."""
        try:
            response = await asyncio.to_thread(
                self._messaging.subscribe_to_topic, [token], VALIDATION_TOPIC, app=self._app
            )
            if response.failure_count:
                reason = response.errors[0].reason
                return TokenValidation(
                    valid=False,
                    should_deactivate=self.classify_error(reason) is DeliveryOutcome.INVALID_TOKEN,
                    error=reason,
                )
            await asyncio.to_thread(self._messaging.unsubscribe_from_topic, [token], VALIDATION_TOPIC, app=self._app)
        except exceptions.FirebaseError as exc:
            code = error_code(exc)
            return TokenValidation(
                valid=False,
                should_deactivate=self.classify_error(code) is DeliveryOutcome.INVALID_TOKEN,
                error=code,
            )
        return TokenValidation(valid=True)
