"""Shared FastAPI dependencies."""

from __future__ import annotations

import hmac
from collections.abc import Awaitable, Callable

from fastapi import Depends, Header, HTTPException, Request

from partysnap.container import ServiceContainer
from partysnap.ratelimit import RateLimitStatus


def get_container(request: Request) -> ServiceContainer:
    """Return the service container built in the app lifespan."""
    return request.app.state.container


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _matches(provided: str | None, expected: str) -> bool:
    return provided is not None and hmac.compare_digest(provided, expected)


async def require_api_key(
    authorization: str | None = Header(None),
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> None:
    """Bearer API key for the notification routes. Disabled when no key is configured."""
    expected = container.settings.api_secret_key
    if not expected:
        return
    token = authorization.removeprefix("Bearer ").strip() if authorization else None
    if not _matches(token, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def require_webhook_secret(
    x_webhook_secret: str | None = Header(None),
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> None:
    expected = container.settings.webhook_secret
    if not expected or not _matches(x_webhook_secret, expected):
        raise HTTPException(status_code=401, detail="Unauthorized webhook")


async def require_cron_secret(
    authorization: str | None = Header(None),
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> None:
    expected = container.settings.cron_secret
    if not expected or not _matches(authorization, f"Bearer {expected}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


def rate_limited(purpose: str) -> Callable[..., Awaitable[RateLimitStatus]]:
    """Per-client-IP fixed-window limit on a cache route."""

    async def dependency(
        request: Request,
        container: ServiceContainer = Depends(get_container),  # noqa: B008
    ) -> RateLimitStatus:
        return await container.cache_limiter.hit(purpose, client_ip(request))

    return dependency
