"""Provider-neutral result types and the push provider contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from partysnap.middleware.logging import short_token
from partysnap.notifications.types import ProviderKind, RenderedNotification

logger = structlog.get_logger()


class DeliveryOutcome(StrEnum):
    OK = "ok"
    RETRYABLE = "retryable"
    INVALID_TOKEN = "invalid_token"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SendResult:
    token: str
    success: bool
    outcome: DeliveryOutcome
    message_id: str | None = None
    error: str | None = None

    @property
    def should_deactivate(self) -> bool:
        return self.outcome is DeliveryOutcome.INVALID_TOKEN

    @property
    def should_retry(self) -> bool:
        return self.outcome is DeliveryOutcome.RETRYABLE

    @classmethod
    def ok(cls, token: str, message_id: str | None = None) -> SendResult:
        return cls(token=token, success=True, outcome=DeliveryOutcome.OK, message_id=message_id)

    @classmethod
    def failed(cls, token: str, outcome: DeliveryOutcome, error: str | None) -> SendResult:
        return cls(token=token, success=False, outcome=outcome, error=error)


@dataclass
class BatchSendResult:
    results: list[SendResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failure_count(self) -> int:
        return len(self.results) - self.success_count

    @property
    def invalid_tokens(self) -> list[str]:
        return [result.token for result in self.results if result.should_deactivate]

    def extend(self, other: BatchSendResult) -> None:
        self.results.extend(other.results)


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    should_deactivate: bool = False
    error: str | None = None


class BasePushProvider(ABC):
    """Abstract push provider.

    Subclasses implement :meth:`_send_chunk` for up to ``max_batch_size``
    addresses and map provider error codes in :meth:`classify_error`.
    Sends never raise; every failure becomes a :class:`SendResult`.
    """

    kind: ProviderKind
    max_batch_size: int = 100

    @abstractmethod
    async def _send_chunk(self, tokens: Sequence[str], notification: RenderedNotification) -> BatchSendResult:
        """Send one chunk. May raise; the caller contains the failure to this chunk."""

    @abstractmethod
    async def validate_token(self, token: str) -> TokenValidation:
        """Probe whether the provider still accepts ``token``."""

    @abstractmethod
    def classify_error(self, code: str | None) -> DeliveryOutcome:
        """Map a provider error code to a delivery outcome."""

    async def send_one(self, token: str, notification: RenderedNotification) -> SendResult:
        result = await self.send_batch([token], notification)
        return result.results[0]

    async def send_batch(self, tokens: Sequence[str], notification: RenderedNotification) -> BatchSendResult:
        """Send to every token, chunked; a failing chunk marks only its own tokens failed."""
        combined = BatchSendResult()
        for start in range(0, len(tokens), self.max_batch_size):
            chunk = list(tokens[start : start + self.max_batch_size])
            try:
                combined.extend(await self._send_chunk(chunk, notification))
            except Exception as exc:
                logger.exception(
                    "provider_batch_failed",
                    provider=self.kind,
                    size=len(chunk),
                    first_token=short_token(chunk[0]),
                )
                combined.results.extend(
                    SendResult.failed(token, DeliveryOutcome.UNKNOWN, str(exc) or type(exc).__name__) for token in chunk
                )
            await self._between_chunks(start + self.max_batch_size < len(tokens))
        return combined

    async def _between_chunks(self, more: bool) -> None:  # noqa: FBT001
        """Hook for providers that pace consecutive chunks."""

    async def close(self) -> None:  # noqa: B027
        """Release provider resources."""


class UnconfiguredProvider(BasePushProvider):
    """Stand-in for a provider with no credentials: every send fails, nothing raises."""

    ERROR = "provider_not_configured"

    def __init__(self, kind: ProviderKind) -> None:
        self.kind = kind

    async def _send_chunk(self, tokens: Sequence[str], notification: RenderedNotification) -> BatchSendResult:
        logger.warning("provider_not_configured", provider=self.kind, count=len(tokens))
        return BatchSendResult([SendResult.failed(token, DeliveryOutcome.UNKNOWN, self.ERROR) for token in tokens])

    async def validate_token(self, token: str) -> TokenValidation:
        return TokenValidation(valid=False, error=self.ERROR)

    def classify_error(self, code: str | None) -> DeliveryOutcome:
        return DeliveryOutcome.UNKNOWN
