"""Process-wide service graph, built once in the app lifespan or worker startup."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from partysnap.cache.kv import BaseKVBackend, KeyValueCache, RedisBackend, UpstashRestBackend
from partysnap.config import Settings
from partysnap.database import close_db, get_session_factory, init_db
from partysnap.gallery.albums import AlbumCache
from partysnap.gallery.participants import ParticipantsCache
from partysnap.gallery.photos import PhotoUrlCache
from partysnap.gallery.store import GalleryStore
from partysnap.notifications.background import BackgroundDispatcher
from partysnap.notifications.dispatch import DispatchEngine
from partysnap.notifications.maintenance import TokenMaintenance
from partysnap.notifications.providers import ProviderRegistry, build_providers
from partysnap.notifications.store import NotificationStore
from partysnap.notifications.triggers import EventTriggers
from partysnap.ratelimit import (
    CACHE_DEFAULT_LIMIT,
    CACHE_LIMITS,
    DISPATCH_DEFAULT_LIMIT,
    DISPATCH_LIMITS,
    KVCounterStore,
    MemoryCounterStore,
    RateLimiter,
)
from partysnap.redis_client import close_redis, init_redis
from partysnap.storage import BaseStorage, SupabaseStorage

logger = structlog.get_logger()


@dataclass
class ServiceContainer:
    settings: Settings
    kv: KeyValueCache
    storage: BaseStorage
    providers: ProviderRegistry
    notification_store: NotificationStore
    gallery_store: GalleryStore
    dispatch_limiter: RateLimiter
    cache_limiter: RateLimiter
    engine: DispatchEngine
    background: BackgroundDispatcher
    participants: ParticipantsCache
    photos: PhotoUrlCache
    albums: AlbumCache
    triggers: EventTriggers
    maintenance: TokenMaintenance

    async def close(self) -> None:
        await self.background.drain()
        await self.providers.close()
        await self.kv.close()
        await self.storage.close()


async def build_kv(settings: Settings) -> KeyValueCache:
    backend: BaseKVBackend | None = None
    if settings.kv_backend == "redis":
        backend = RedisBackend(await init_redis(settings.redis_url, settings.kv_timeout_seconds))
    elif settings.kv_backend == "upstash" and settings.upstash_rest_url:
        backend = UpstashRestBackend(
            settings.upstash_rest_url,
            settings.upstash_rest_token,
            timeout=settings.kv_timeout_seconds,
        )
    else:
        logger.warning("kv_cache_disabled", backend=settings.kv_backend)
    return KeyValueCache(
        backend,
        timeout_seconds=settings.kv_timeout_seconds,
        stale_grace_seconds=settings.cache_stale_grace_seconds,
    )


def assemble(
    settings: Settings,
    kv: KeyValueCache,
    storage: BaseStorage,
    providers: ProviderRegistry,
    notification_store: NotificationStore,
    gallery_store: GalleryStore,
) -> ServiceContainer:
    """Wire the services together from already-built collaborators."""
    dispatch_limiter = RateLimiter(MemoryCounterStore(), DISPATCH_LIMITS, DISPATCH_DEFAULT_LIMIT, prefix="dispatch")
    cache_limiter = RateLimiter(KVCounterStore(kv), CACHE_LIMITS, CACHE_DEFAULT_LIMIT)
    engine = DispatchEngine(
        notification_store,
        providers,
        dispatch_limiter,
        chunk_size=settings.bulk_chunk_size,
        chunk_delay=settings.bulk_chunk_delay_seconds,
    )
    photos = PhotoUrlCache(kv, gallery_store, storage)
    return ServiceContainer(
        settings=settings,
        kv=kv,
        storage=storage,
        providers=providers,
        notification_store=notification_store,
        gallery_store=gallery_store,
        dispatch_limiter=dispatch_limiter,
        cache_limiter=cache_limiter,
        engine=engine,
        background=BackgroundDispatcher(),
        participants=ParticipantsCache(kv, gallery_store),
        photos=photos,
        albums=AlbumCache(kv, gallery_store, storage),
        triggers=EventTriggers(engine, gallery_store, notification_store, photos),
        maintenance=TokenMaintenance(notification_store, providers, settings),
    )


async def build_container(settings: Settings) -> ServiceContainer:
    await init_db(settings.database_url)
    session_factory = get_session_factory()
    kv = await build_kv(settings)
    if not settings.storage_url:
        logger.warning("object_storage_unconfigured")
    storage = SupabaseStorage(
        settings.storage_url,
        settings.storage_service_key,
        settings.storage_bucket,
        timeout=settings.provider_timeout_seconds,
    )
    return assemble(
        settings,
        kv,
        storage,
        build_providers(settings),
        NotificationStore(session_factory),
        GalleryStore(session_factory),
    )


async def shutdown_container(container: ServiceContainer) -> None:
    await container.close()
    await close_db()
    await close_redis()
