"""Tests for health, readiness and metrics endpoints."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sync_api import dependencies
from sync_api.config import APISettings
from sync_api.main import create_app


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["plane"] == "all"
    assert body["db"] == "ok"
    assert body["version"]


@pytest.mark.asyncio
async def test_ready(client) -> None:
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"db": "ok"}


@pytest.mark.asyncio
async def test_ready_without_store(tmp_path) -> None:
    settings = APISettings(database_url=f"sqlite+aiosqlite:///{tmp_path}", delivery_enabled=False)
    app = create_app(settings)
    dependencies.init_engine(settings)
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/ready")
    finally:
        await dependencies.dispose_engine()

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


@pytest.mark.asyncio
async def test_metrics(client) -> None:
    await client.get("/api/v1/health")

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "tenantsync_http_requests_total" in response.text


@pytest.mark.asyncio
async def test_correlation_id_is_echoed(client) -> None:
    response = await client.get("/api/v1/health", headers={"X-Correlation-ID": "abc-123"})
    assert response.headers["X-Correlation-ID"] == "abc-123"
