"""Push provider adapters and the registry that picks one per token kind."""

from __future__ import annotations

import structlog

from partysnap.config import Settings
from partysnap.errors import ProviderNotConfiguredError
from partysnap.notifications.providers.apns import ApnsProvider
from partysnap.notifications.providers.base import (
    BasePushProvider,
    BatchSendResult,
    DeliveryOutcome,
    SendResult,
    TokenValidation,
    UnconfiguredProvider,
)
from partysnap.notifications.providers.expo import ExpoProvider
from partysnap.notifications.providers.fcm_legacy import FcmLegacyProvider
from partysnap.notifications.providers.fcm_v1 import FcmV1Provider, initialize_firebase_app
from partysnap.notifications.types import ProviderKind

logger = structlog.get_logger()

__all__ = [
    "BasePushProvider",
    "BatchSendResult",
    "DeliveryOutcome",
    "ProviderRegistry",
    "SendResult",
    "TokenValidation",
    "build_providers",
]


class ProviderRegistry:
    """Adapter per :class:`ProviderKind`; kinds without credentials get an always-failing stand-in."""

    def __init__(self, providers: dict[ProviderKind, BasePushProvider]) -> None:
        self._providers = dict(providers)

    def get(self, kind: ProviderKind) -> BasePushProvider:
        provider = self._providers.get(kind)
        if provider is None:
            provider = UnconfiguredProvider(kind)
            self._providers[kind] = provider
        return provider

    def require(self, kind: ProviderKind) -> BasePushProvider:
        provider = self.get(kind)
        if isinstance(provider, UnconfiguredProvider):
            msg = f"Push provider {kind} is not configured"
            raise ProviderNotConfiguredError(msg)
        return provider

    def configured(self) -> list[ProviderKind]:
        return [kind for kind, p in self._providers.items() if not isinstance(p, UnconfiguredProvider)]

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


def build_providers(settings: Settings) -> ProviderRegistry:
    """Construct every adapter the settings carry credentials for."""
    timeout = settings.provider_timeout_seconds
    providers: dict[ProviderKind, BasePushProvider] = {
        ProviderKind.EXPO: ExpoProvider(settings.expo_access_token, timeout=timeout),
    }

    if settings.fcm_server_key:
        providers[ProviderKind.FCM_LEGACY] = FcmLegacyProvider(settings.fcm_server_key, timeout=timeout)

    if settings.fcm_service_account_json:
        try:
            app = initialize_firebase_app(
                settings.fcm_service_account_json, settings.fcm_project_id, timeout=timeout
            )
            providers[ProviderKind.FCM_V1] = FcmV1Provider(app)
        except (ValueError, OSError):
            logger.exception("firebase_init_failed")

    if settings.apns_key_id and settings.apns_team_id and settings.apns_private_key and settings.apns_bundle_id:
        providers[ProviderKind.APNS] = ApnsProvider(
            key_id=settings.apns_key_id,
            team_id=settings.apns_team_id,
            private_key=settings.apns_private_key,
            bundle_id=settings.apns_bundle_id,
            use_sandbox=settings.apns_use_sandbox,
            timeout=timeout,
        )

    missing = [kind.value for kind in ProviderKind if kind not in providers]
    if missing:
        logger.warning("push_providers_unconfigured", providers=missing)
    return ProviderRegistry(providers)
