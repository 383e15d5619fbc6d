"""Tests for health endpoint."""

from typing import Any

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_endpoint_returns_200(client: AsyncClient) -> None:
    """Test that health endpoint returns 200 with expected fields."""
    response = await client.get("/health")

    assert response.status_code == 200

    data = response.json()
    assert data["service"] == "Recruitment Stats Aggregator"
    assert data["status"] == "healthy"
    assert "version" in data
    assert "environment" in data
    assert "timestamp" in data
    assert isinstance(data["checks"]["database"], bool)
    assert isinstance(data["checks"]["statsScheduler"], dict)
    assert data["checks"]["statsScheduler"]["started"] is True
    assert data["checks"]["statsScheduler"]["isRunning"] is False
    assert data["checks"]["statsScheduler"]["lastRunTime"] is None
    assert data["issues"] == []


@pytest.mark.asyncio
async def test_health_endpoint_includes_version(client: AsyncClient) -> None:
    """Test that health endpoint includes app version."""
    response = await client.get("/health")
    data = response.json()

    assert data["version"] == "0.1.0"


@pytest.mark.asyncio
async def test_health_endpoint_has_request_id_header(client: AsyncClient) -> None:
    """Test that health endpoint response includes X-Request-ID header."""
    response = await client.get("/health")

    assert "X-Request-ID" in response.headers
    assert len(response.headers["X-Request-ID"]) > 0


@pytest.mark.asyncio
async def test_health_echoes_request_id(client: AsyncClient) -> None:
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_health_reports_last_run_time(client: AsyncClient) -> None:
    await client.post("/admin/stats/aggregate")

    data = (await client.get("/health")).json()
    assert data["checks"]["statsScheduler"]["lastRunTime"] == "2026-01-07T02:30:00+00:00"


@pytest.mark.asyncio
async def test_health_degraded_without_scheduler(client_no_scheduler: AsyncClient) -> None:
    response = await client_no_scheduler.get("/health")
    data = response.json()

    assert data["status"] == "degraded"
    assert data["checks"]["statsScheduler"]["started"] is False
    assert "Stats scheduler is not running" in data["issues"]


@pytest.mark.asyncio
async def test_health_degraded_when_database_down(
    client: AsyncClient, mock_db_connection: Any
) -> None:
    mock_db_connection.return_value = False

    data = (await client.get("/health")).json()

    assert data["status"] == "degraded"
    assert data["checks"]["database"] is False
