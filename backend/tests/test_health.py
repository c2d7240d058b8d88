"""
Health check tests for the API.
"""

import pytest

from app.jobs.claim import try_claim


@pytest.mark.asyncio
async def test_health_check(async_client):
    response = await async_client.get("/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
async def test_readiness_reports_last_claimed_day(async_client, db_session):
    response = await async_client.get("/v1/ready")
    assert response.json()["last_run_day_key"] is None

    await try_claim(db_session, "2025-03-01")

    response = await async_client.get("/v1/ready")
    data = response.json()
    assert response.status_code == 200
    assert data["status"] == "ok"
    assert data["checks"]["db"]["status"] == "ok"
    assert data["last_run_day_key"] == "2025-03-01"


@pytest.mark.asyncio
async def test_request_id_is_echoed(async_client):
    response = await async_client.get("/v1/ready", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["request_id"] == "req-123"
