"""Map a stored device token to the provider that can deliver to it."""

from __future__ import annotations

import re
from dataclasses import dataclass

from partysnap.errors import UnroutableTokenError
from partysnap.notifications.types import ProviderKind

EXPO_PREFIXES = ("ExponentPushToken", "ExpoPushToken")
_EXPO_SHAPE = re.compile(r"^Expo(nent)?PushToken\[.+\]$")
_EXPO_UUID = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)


def looks_like_expo(token: str) -> bool:
    """Token is addressed to Expo, well-formed or not."""
    return token.startswith(EXPO_PREFIXES) or bool(_EXPO_UUID.match(token))


def is_expo_push_token(token: str) -> bool:
    """Token is a well-formed Expo push token."""
    return bool(_EXPO_SHAPE.match(token) or _EXPO_UUID.match(token))


@dataclass(frozen=True)
class ExpoToken:
    token: str
    address: str
    kind = ProviderKind.EXPO


@dataclass(frozen=True)
class FcmLegacyToken:
    token: str
    address: str
    kind = ProviderKind.FCM_LEGACY


@dataclass(frozen=True)
class FcmV1Token:
    token: str
    address: str
    kind = ProviderKind.FCM_V1


@dataclass(frozen=True)
class ApnsToken:
    token: str
    address: str
    kind = ProviderKind.APNS


RoutedToken = ExpoToken | FcmLegacyToken | FcmV1Token | ApnsToken


def classify_token(
    token: str,
    platform: str | None,
    token_type: str | None = None,
    device_token: str | None = None,
) -> RoutedToken:
    """Pick the provider for a token row.

    ``token`` is the stored row token and is what gets deactivated later;
    ``address`` is what the provider is actually sent to.

    Raises:
        UnroutableTokenError: No provider handles this platform.
    """
    if looks_like_expo(token):
        return ExpoToken(token=token, address=token)

    platform = (platform or "").lower()
    if platform == "android":
        if device_token or token_type == ProviderKind.FCM_V1:
            return FcmV1Token(token=token, address=device_token or token)
        return FcmLegacyToken(token=token, address=token)
    if platform == "ios":
        return ApnsToken(token=token, address=device_token or token)

    msg = f"No push provider for platform {platform or 'unknown'!r}"
    raise UnroutableTokenError(msg)
