"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fakes import FakeClock, FakeGalleryStore, FakeKVBackend, FakeNotificationStore, FakeProvider, FakeStorage
from httpx import ASGITransport, AsyncClient

from partysnap.cache.kv import KeyValueCache
from partysnap.config import Settings
from partysnap.container import ServiceContainer, assemble
from partysnap.main import create_app
from partysnap.notifications.dispatch import DispatchEngine
from partysnap.notifications.providers import ProviderRegistry
from partysnap.notifications.types import ProviderKind
from partysnap.ratelimit import DISPATCH_DEFAULT_LIMIT, DISPATCH_LIMITS, MemoryCounterStore, RateLimiter

WEBHOOK_SECRET = "hook-secret"
CRON_SECRET = "cron-secret"
API_KEY = "api-key"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv_backend(clock: FakeClock) -> FakeKVBackend:
    return FakeKVBackend(clock)


@pytest.fixture
def kv(kv_backend: FakeKVBackend, clock: FakeClock) -> KeyValueCache:
    return KeyValueCache(kv_backend, timeout_seconds=1.0, stale_grace_seconds=86_400, clock=clock)


@pytest.fixture
def gallery_store() -> FakeGalleryStore:
    return FakeGalleryStore()


@pytest.fixture
def notification_store(clock: FakeClock) -> FakeNotificationStore:
    return FakeNotificationStore(clock)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def fake_providers() -> dict[ProviderKind, FakeProvider]:
    return {kind: FakeProvider(kind) for kind in ProviderKind}


@pytest.fixture
def registry(fake_providers: dict[ProviderKind, FakeProvider]) -> ProviderRegistry:
    return ProviderRegistry(dict(fake_providers))


@pytest.fixture
def dispatch_limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(
        MemoryCounterStore(clock.monotonic), DISPATCH_LIMITS, DISPATCH_DEFAULT_LIMIT, prefix="dispatch"
    )


@pytest.fixture
def engine(
    notification_store: FakeNotificationStore,
    registry: ProviderRegistry,
    dispatch_limiter: RateLimiter,
    clock: FakeClock,
) -> DispatchEngine:
    return DispatchEngine(notification_store, registry, dispatch_limiter, chunk_size=50, chunk_delay=0, clock=clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        kv_backend="disabled",
        api_secret_key=API_KEY,
        webhook_secret=WEBHOOK_SECRET,
        cron_secret=CRON_SECRET,
        bulk_chunk_delay_seconds=0,
        log_format="console",
    )


@pytest.fixture
def container(
    settings: Settings,
    kv: KeyValueCache,
    storage: FakeStorage,
    registry: ProviderRegistry,
    notification_store: FakeNotificationStore,
    gallery_store: FakeGalleryStore,
) -> ServiceContainer:
    return assemble(settings, kv, storage, registry, notification_store, gallery_store)


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the fake service graph injected (no lifespan)."""
    app = create_app()
    app.state.container = container
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await container.background.drain(timeout=1.0)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {API_KEY}"}
