"""TTL key-value cache over Redis or the Upstash REST API.

Every public operation on :class:`KeyValueCache` is bounded by a timeout and
degrades to a safe fallback value when the backend is missing, slow or
failing. Callers never see backend exceptions.
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

import httpx
import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()

T = TypeVar("T")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:  # noqa: ANN401
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class BaseKVBackend(ABC):
    """Raw string-valued store. Implementations may raise; the cache wraps them."""

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def mget(self, keys: list[str]) -> list[str | None]: ...

    @abstractmethod
    async def setex(self, key: str, ttl: int, value: str) -> None: ...

    @abstractmethod
    async def setex_many(self, mapping: dict[str, str], ttl: int) -> None: ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int: ...

    @abstractmethod
    async def incr_with_expire(self, key: str, ttl: int) -> int: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


class RedisBackend(BaseKVBackend):
    """Backend over a ``redis.asyncio`` client with ``decode_responses=True``."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def mget(self, keys: list[str]) -> list[str | None]:
        return await self._redis.mget(keys)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        await self._redis.setex(key, ttl, value)

    async def setex_many(self, mapping: dict[str, str], ttl: int) -> None:
        pipe = self._redis.pipeline()
        for key, value in mapping.items():
            pipe.setex(key, ttl, value)
        await pipe.execute()

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        batch: list[str] = []
        async for key in self._redis.scan_iter(match=pattern, count=500):
            batch.append(key)
            if len(batch) >= 500:
                deleted += await self._redis.delete(*batch)
                batch = []
        if batch:
            deleted += await self._redis.delete(*batch)
        return deleted

    async def incr_with_expire(self, key: str, ttl: int) -> int:
        count = int(await self._redis.incr(key))
        if count == 1:
            await self._redis.expire(key, ttl)
        return count

    async def ping(self) -> bool:
        return bool(await self._redis.ping())


class UpstashRestBackend(BaseKVBackend):
    """Backend over the Upstash Redis REST API.

    Each command is one stateless HTTPS request, so it is safe from
    short-lived execution contexts with no persistent connection.
    """

    def __init__(self, url: str, token: str, client: httpx.AsyncClient | None = None, timeout: float = 3.0) -> None:
        self._url = url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"}
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def _command(self, *args: Any) -> Any:  # noqa: ANN401
        response = await self._client.post(self._url, json=[str(a) for a in args], headers=self._headers)
        response.raise_for_status()
        body = response.json()
        if "error" in body:
            msg = f"Upstash error: {body['error']}"
            raise RuntimeError(msg)
        return body.get("result")

    async def _pipeline(self, commands: list[list[Any]]) -> list[Any]:
        payload = [[str(a) for a in command] for command in commands]
        response = await self._client.post(f"{self._url}/pipeline", json=payload, headers=self._headers)
        response.raise_for_status()
        return [item.get("result") for item in response.json()]

    async def get(self, key: str) -> str | None:
        return await self._command("GET", key)

    async def mget(self, keys: list[str]) -> list[str | None]:
        return list(await self._command("MGET", *keys) or [None] * len(keys))

    async def setex(self, key: str, ttl: int, value: str) -> None:
        await self._command("SETEX", key, ttl, value)

    async def setex_many(self, mapping: dict[str, str], ttl: int) -> None:
        await self._pipeline([["SETEX", key, ttl, value] for key, value in mapping.items()])

    async def delete_pattern(self, pattern: str) -> int:
        keys: list[str] = await self._command("KEYS", pattern) or []
        if not keys:
            return 0
        return int(await self._command("DEL", *keys))

    async def incr_with_expire(self, key: str, ttl: int) -> int:
        count = int(await self._command("INCR", key))
        if count == 1:
            await self._command("EXPIRE", key, ttl)
        return count

    async def ping(self) -> bool:
        return await self._command("PING") == "PONG"

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class KeyValueCache:
    """JSON cache with TTLs, batch operations and stale-aware entries.

    ``set_with_expiry`` stamps entries with ``cached_at`` / ``expires_at``
    and keeps them physically alive for ``stale_grace_seconds`` past their
    logical expiry, so an expired entry can still be served as stale when
    the source of truth is down.
    """

    def __init__(
        self,
        backend: BaseKVBackend | None,
        timeout_seconds: float = 3.0,
        stale_grace_seconds: int = 86_400,
        clock: Clock = utcnow,
    ) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.stale_grace_seconds = stale_grace_seconds
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    async def _run(self, operation: str, call: Callable[[BaseKVBackend], Awaitable[T]], fallback: T) -> T:
        if self.backend is None:
            return fallback
        try:
            return await asyncio.wait_for(call(self.backend), timeout=self.timeout_seconds)
        except TimeoutError:
            logger.warning("kv_timeout", operation=operation, timeout=self.timeout_seconds)
        except Exception as exc:
            logger.warning("kv_operation_failed", operation=operation, error=str(exc))
        return fallback

    @staticmethod
    def _decode(raw: str | None) -> Any:  # noqa: ANN401
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("kv_undecodable_value")
            return None

    # --- Primitives ---

    async def get(self, key: str) -> Any:  # noqa: ANN401
        return self._decode(await self._run("get", lambda b: b.get(key), None))

    async def set(self, key: str, value: Any, ttl: int) -> bool:  # noqa: ANN401
        encoded = json.dumps(value, default=str)

        async def _call(b: BaseKVBackend) -> bool:
            await b.setex(key, max(1, int(ttl)), encoded)
            return True

        return await self._run("set", _call, False)

    async def get_many(self, keys: list[str]) -> dict[str, Any]:
        if not keys:
            return {}
        raw = await self._run("mget", lambda b: b.mget(keys), None)
        if raw is None:
            return {}
        return {key: self._decode(value) for key, value in zip(keys, raw, strict=False)}

    async def set_many(self, mapping: dict[str, Any], ttl: int) -> bool:
        if not mapping:
            return True
        encoded = {key: json.dumps(value, default=str) for key, value in mapping.items()}

        async def _call(b: BaseKVBackend) -> bool:
            await b.setex_many(encoded, max(1, int(ttl)))
            return True

        return await self._run("set_many", _call, False)

    async def delete_pattern(self, pattern: str) -> int:
        deleted = await self._run("delete_pattern", lambda b: b.delete_pattern(pattern), 0)
        logger.debug("kv_pattern_deleted", pattern=pattern, deleted=deleted)
        return deleted

    async def incr_with_expire(self, key: str, ttl: int) -> int:
        return await self._run("incr", lambda b: b.incr_with_expire(key, ttl), 0)

    async def ping(self) -> bool:
        return await self._run("ping", lambda b: b.ping(), False)

    # --- Timestamped entries ---

    def stamp(self, payload: dict[str, Any], ttl: int) -> dict[str, Any]:
        now = self.clock()
        return {
            **payload,
            "cached_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=ttl)).isoformat(),
        }

    async def set_with_expiry(self, key: str, payload: dict[str, Any], ttl: int) -> bool:
        return await self.set(key, self.stamp(payload, ttl), ttl + self.stale_grace_seconds)

    async def get_with_age(self, key: str) -> dict[str, Any] | None:
        """Return a stamped entry with ``cache_age``, ``cache_ttl`` and ``is_expired``, expired or not."""
        entry = await self.get(key)
        if not isinstance(entry, dict):
            return None
        cached_at = parse_timestamp(entry.get("cached_at"))
        if cached_at is None:
            return None
        expires_at = parse_timestamp(entry.get("expires_at"))
        now = self.clock()
        remaining = max(0, int((expires_at - now).total_seconds())) if expires_at else 0
        return {
            **entry,
            "cache_age": int((now - cached_at).total_seconds()),
            "cache_ttl": remaining,
            "is_expired": expires_at is None or expires_at <= now,
        }

    async def close(self) -> None:
        if self.backend is not None:
            await self.backend.close()
