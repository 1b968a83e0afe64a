"""Batched signed-URL generation with per-path caching."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import structlog

from partysnap.cache.freshness import EXPIRY_BUFFER
from partysnap.cache.keys import photo_batch_key, photo_url_key
from partysnap.cache.kv import KeyValueCache, parse_timestamp
from partysnap.cache.read_through import record_stat
from partysnap.errors import CacheRequestError
from partysnap.storage import BaseStorage

logger = structlog.get_logger()

MAX_PATHS_PER_REQUEST = 100
DEFAULT_EXPIRY_SECONDS = 3600
MAX_EXPIRY_SECONDS = 24 * 60 * 60
SUB_BATCH_SIZE = 20
AGGREGATE_TTL_CEILING = 30 * 60


class SignedUrlBatcher:
    """Sign many storage paths, reusing per-path cache entries where still valid.

    Paths are signed in sub-batches of ``SUB_BATCH_SIZE`` issued concurrently;
    a path that fails to sign is left out of the result and never aborts
    its siblings.
    """

    def __init__(
        self,
        kv: KeyValueCache,
        storage: BaseStorage,
        key_fn: Callable[[str], str] = photo_url_key,
        aggregate_key_fn: Callable[[str], str] | None = photo_batch_key,
        stats_namespace: str = "photo_urls",
    ) -> None:
        self.kv = kv
        self.storage = storage
        self.key_fn = key_fn
        self.aggregate_key_fn = aggregate_key_fn
        self.stats_namespace = stats_namespace

    @staticmethod
    def validate(paths: list[str], expires_in: int) -> None:
        if not paths:
            msg = "Invalid photo paths array"
            raise CacheRequestError(msg)
        if len(paths) > MAX_PATHS_PER_REQUEST:
            msg = f"Too many URLs requested. Max: {MAX_PATHS_PER_REQUEST}"
            raise CacheRequestError(msg)
        if expires_in <= 0 or expires_in > MAX_EXPIRY_SECONDS:
            msg = f"Expiry must be between 1 and {MAX_EXPIRY_SECONDS} seconds"
            raise CacheRequestError(msg)

    async def generate(
        self,
        paths: list[str],
        expires_in: int = DEFAULT_EXPIRY_SECONDS,
        *,
        event_id: str | None = None,
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        self.validate(paths, expires_in)
        unique_paths = list(dict.fromkeys(p for p in paths if p))
        now = self.kv.clock()

        cached: dict[str, str] = {}
        if not force_refresh:
            keys = {path: self.key_fn(path) for path in unique_paths}
            entries = await self.kv.get_many(list(keys.values()))
            for path, key in keys.items():
                entry = entries.get(key)
                if not isinstance(entry, dict) or not entry.get("signed_url") or entry.get("path") != path:
                    continue
                expires_at = parse_timestamp(entry.get("expires_at"))
                if expires_at is not None and now + EXPIRY_BUFFER < expires_at:
                    cached[path] = entry["signed_url"]

        to_generate = [path for path in unique_paths if path not in cached]
        generated = await self._sign_all(to_generate, expires_in) if to_generate else {}

        if generated:
            expires_at_iso = (now + timedelta(seconds=expires_in)).isoformat()
            await self.kv.set_many(
                {
                    self.key_fn(path): {
                        "path": path,
                        "signed_url": url,
                        "expires_at": expires_at_iso,
                        "generated_at": now.isoformat(),
                    }
                    for path, url in generated.items()
                },
                expires_in,
            )

        await record_stat(self.kv, self.stats_namespace, "photo_urls", "misses" if to_generate else "hits")

        urls = {**cached, **generated}
        if event_id and self.aggregate_key_fn is not None:
            await self.kv.set_with_expiry(
                self.aggregate_key_fn(event_id),
                {
                    "event_id": event_id,
                    "urls": urls,
                    "url_count": len(urls),
                    "expires_in": expires_in,
                    "generated_at": now.isoformat(),
                },
                min(expires_in, AGGREGATE_TTL_CEILING),
            )

        logger.info(
            "signed_urls_ready",
            requested=len(unique_paths),
            cached=len(cached),
            generated=len(generated),
            failed=len(to_generate) - len(generated),
        )
        return {
            "urls": urls,
            "cached_count": len(cached),
            "generated_count": len(generated),
            "failed_count": len(to_generate) - len(generated),
            "total_count": len(urls),
            "cache_hit_rate": round(len(cached) / len(unique_paths) * 100) if unique_paths else 0,
            "expires_in": expires_in,
            "generated_at": now.isoformat(),
        }

    async def _sign_all(self, paths: list[str], expires_in: int) -> dict[str, str]:
        signed: dict[str, str] = {}
        for start in range(0, len(paths), SUB_BATCH_SIZE):
            batch = paths[start : start + SUB_BATCH_SIZE]
            results = await asyncio.gather(
                *(self.storage.create_signed_url(path, expires_in) for path in batch),
                return_exceptions=True,
            )
            for path, result in zip(batch, results, strict=True):
                if isinstance(result, BaseException):
                    logger.warning("signed_url_failed", path=path, error=str(result))
                elif result:
                    signed[path] = result
        return signed
