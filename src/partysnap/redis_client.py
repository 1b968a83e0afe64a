"""Process-wide Redis client backing the KV cache and the cache-route rate limits.

Every command carries a socket timeout so a hung Redis degrades cache reads to
misses instead of stalling requests.
"""

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

_client: redis.Redis | None = None

MAX_CONNECTIONS = 50
HEALTH_CHECK_INTERVAL_SECONDS = 30


async def init_redis(url: str, timeout_seconds: float = 3.0, retries: int = 2) -> redis.Redis:
    global _client  # noqa: PLW0603
    if _client is None:
        _client = redis.from_url(  # type: ignore[no-untyped-call]
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=MAX_CONNECTIONS,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            health_check_interval=HEALTH_CHECK_INTERVAL_SECONDS,
            retry=Retry(ExponentialBackoff(cap=timeout_seconds), retries),
            client_name="partysnap-notify",
        )
    return _client


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None
