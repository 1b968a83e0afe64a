"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from partysnap.config import get_settings
from partysnap.container import ServiceContainer
from partysnap.database import get_session_factory
from partysnap.dependencies import get_container

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: 200 while the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe over the database and the KV cache, plus the configured push providers."""
    checks: dict[str, object] = {}

    try:
        async with get_session_factory()() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    if not container.kv.enabled:
        checks["kv_cache"] = "disabled"
    elif await container.kv.ping():
        checks["kv_cache"] = "ok"
    else:
        checks["kv_cache"] = "error: ping failed"

    all_ok = checks["database"] == "ok" and checks["kv_cache"] in ("ok", "disabled")
    return {
        "status": "ready" if all_ok else "degraded",
        "checks": checks,
        "providers": sorted(container.providers.configured()),
    }


@router.get("/version")
async def version() -> dict[str, str]:
    """Return API version and environment."""
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
