"""Health endpoint tests."""

from httpx import AsyncClient


async def test_health(client: AsyncClient) -> None:
    """GET /health returns 200 with healthy status."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_readiness_without_database(client: AsyncClient) -> None:
    """GET /ready reports degraded when the database is not initialised, with the KV check still run."""
    response = await client.get("/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "degraded"
    assert data["checks"]["database"].startswith("error")
    assert data["checks"]["kv_cache"] == "ok"
    assert data["providers"] == ["apns", "expo", "fcm_legacy", "fcm_v1"]


async def test_version(client: AsyncClient) -> None:
    """GET /version returns version and environment."""
    response = await client.get("/version")
    assert response.status_code == 200
    data = response.json()
    assert data["version"] == "0.1.0"
    assert "environment" in data


async def test_request_id_is_echoed(client: AsyncClient) -> None:
    """Responses carry the caller's X-Request-ID."""
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
