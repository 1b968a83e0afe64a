"""Exception hierarchy shared by the dispatch engine and the cache layer."""

from __future__ import annotations


class PartySnapError(Exception):
    """Base class for service errors."""


class NotificationValidationError(PartySnapError, ValueError):
    """Unknown notification type or missing required template data."""

    def __init__(self, notification_type: str, missing: list[str] | None = None) -> None:
        self.notification_type = notification_type
        self.missing = missing or []
        if self.missing:
            msg = f"Missing required data for {notification_type}: {', '.join(self.missing)}"
        else:
            msg = f"Unknown notification type: {notification_type}"
        super().__init__(msg)


class CacheRequestError(PartySnapError, ValueError):
    """Bad pagination bounds, oversized batch or expiry above the allowed ceiling."""


class RateLimitExceeded(PartySnapError):  # noqa: N818
    """Fixed-window ceiling exceeded for a key."""

    def __init__(self, key: str, limit: int, count: int, retry_after: int) -> None:
        self.key = key
        self.limit = limit
        self.count = count
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for {key}: {count}/{limit}")


class StoreError(PartySnapError):
    """Relational store failure."""


class NotFoundError(PartySnapError):
    """Requested resource does not exist."""


class ProviderNotConfiguredError(PartySnapError):
    """A push provider was selected but has no credentials."""


class UnroutableTokenError(PartySnapError, ValueError):
    """Token cannot be mapped to any push provider."""


class StorageError(PartySnapError):
    """Object storage refused or failed to sign a path."""
