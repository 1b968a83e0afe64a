"""Generic read-through cache with stale-on-error fallback."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from partysnap.cache.freshness import is_payload_still_fresh
from partysnap.cache.keys import cache_stats_key
from partysnap.cache.kv import KeyValueCache
from partysnap.errors import StoreError

logger = structlog.get_logger()

STATS_TTL_SECONDS = 24 * 60 * 60
STALE_WARNING = "Serving cached data due to temporary database issues"

Loader = Callable[[], Awaitable[dict[str, Any]]]
TtlPolicy = int | Callable[[dict[str, Any]], int]

_COMPUTED_FIELDS = ("cache_age", "cache_ttl", "is_expired")


@dataclass
class CacheRead:
    payload: dict[str, Any]
    cached: bool
    stale: bool = False
    warning: str | None = None
    source: str = "database"
    performance_ms: float = 0.0
    cache_age: int | None = None

    def as_response(self) -> dict[str, Any]:
        body = {
            **self.payload,
            "cached": self.cached,
            "source": self.source,
            "performance_ms": self.performance_ms,
        }
        if self.cache_age is not None:
            body["cache_age"] = self.cache_age
        if self.stale:
            body["stale"] = True
            body["warning"] = self.warning
        return body


class ReadThroughCache:
    """Serve fresh entries from the KV store, regenerate on miss, fall back to stale on store failure.

    A stale fallback is served only when the loader raises :class:`StoreError`;
    any other exception propagates unchanged.
    """

    def __init__(self, kv: KeyValueCache, namespace: str) -> None:
        self.kv = kv
        self.namespace = namespace

    async def read(
        self,
        key: str,
        loader: Loader,
        ttl: TtlPolicy,
        *,
        kind: str,
        freshness: str | None = None,
        force_refresh: bool = False,
    ) -> CacheRead:
        started = time.perf_counter()

        if not force_refresh:
            entry = await self.kv.get_with_age(key)
            if entry and not entry["is_expired"]:
                if freshness is None or is_payload_still_fresh(freshness, entry, self.kv.clock()):
                    await self._record(kind, "hits")
                    logger.debug("cache_hit", key=key)
                    return CacheRead(
                        payload={k: v for k, v in entry.items() if k not in _COMPUTED_FIELDS},
                        cached=True,
                        source="cache",
                        performance_ms=_elapsed_ms(started),
                        cache_age=entry["cache_age"],
                    )
                logger.info("cache_entry_urls_expired", key=key)

        try:
            payload = await loader()
        except StoreError as exc:
            stale = await self.kv.get(key)
            if isinstance(stale, dict):
                logger.warning("cache_serving_stale", key=key, error=str(exc))
                return CacheRead(
                    payload=stale,
                    cached=True,
                    stale=True,
                    warning=STALE_WARNING,
                    source="stale_cache",
                    performance_ms=_elapsed_ms(started),
                )
            raise

        ttl_seconds = ttl(payload) if callable(ttl) else ttl
        if ttl_seconds > 0:
            await self.kv.set_with_expiry(key, payload, ttl_seconds)
        await self._record(kind, "misses")
        logger.debug("cache_miss", key=key, ttl=ttl_seconds)
        return CacheRead(payload=payload, cached=False, source="database", performance_ms=_elapsed_ms(started))

    async def _record(self, kind: str, outcome: str) -> None:
        await record_stat(self.kv, self.namespace, kind, outcome)


async def record_stat(kv: KeyValueCache, namespace: str, kind: str, outcome: str) -> None:
    """Bump a 24h hit/miss analytics counter."""
    await kv.incr_with_expire(cache_stats_key(namespace, kind, outcome), STATS_TTL_SECONDS)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
