"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from recruit_stats.main import app
from recruit_stats.services.stats.dirty_set import DirtySet
from recruit_stats.services.stats.scheduler import StatsScheduler
from recruit_stats.services.stats.types import SchedulerConfig
from recruit_stats.services.stats.worker import AggregationWorker

from .fixtures.stats_fixture import FakeClock, InMemoryStatsStore


@pytest.fixture
def mock_db_connection() -> Any:
    """Mock database connection check."""
    with patch("recruit_stats.main.check_database_connection", new_callable=AsyncMock) as mock:
        mock.return_value = True
        yield mock


@pytest.fixture
def stats_store() -> InMemoryStatsStore:
    """In-memory store backing the app's scheduler."""
    return InMemoryStatsStore()


@pytest.fixture
async def scheduler(stats_store: InMemoryStatsStore) -> AsyncGenerator[StatsScheduler, None]:
    """Started scheduler attached to the app, with timers far in the future."""
    clock = FakeClock(datetime(2026, 1, 7, 2, 30, tzinfo=timezone.utc))
    dirty = DirtySet(clock=clock)
    config = SchedulerConfig(dirty_interval_ms=60 * 60 * 1000, main_aggregation_hour=2, batch_size=10)
    worker = AggregationWorker(stats_store, dirty, batch_size=config.batch_size, clock=clock)
    scheduler = StatsScheduler(worker, dirty, stats_store, config, clock=clock)

    await scheduler.start()
    app.state.scheduler = scheduler
    yield scheduler
    await scheduler.stop()
    await scheduler.wait_until_idle()
    del app.state.scheduler


@pytest.fixture
async def client(
    mock_db_connection: Any,  # noqa: ARG001
    scheduler: StatsScheduler,  # noqa: ARG001
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def client_no_scheduler(
    mock_db_connection: Any,  # noqa: ARG001
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client with no scheduler on app state."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
