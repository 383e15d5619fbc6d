"""Async engine and sessions for the stats database.

The engine is created lazily on first use and shared by the HTTP handlers
and the aggregation worker. Sessions run with the server time zone pinned to
UTC so ``event_time`` comparisons against Beijing bucket bounds, which are
passed as UTC instants, never depend on the database's local setting.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

from recruit_stats.config import Settings, get_settings
from recruit_stats.logging import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(settings: Settings) -> dict[str, Any]:
    """Keyword arguments for :func:`create_async_engine`.

    The worker holds one connection per agent in a chunk, so overflow is
    raised until the pool can serve a full ``stats_batch_size`` chunk.
    """
    options: dict[str, Any] = {
        "echo": settings.debug,
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": max(
            settings.db_max_overflow, settings.stats_batch_size - settings.db_pool_size
        ),
    }
    if settings.database_url.startswith("postgresql+asyncpg"):
        options["connect_args"] = {
            "server_settings": {
                "application_name": "recruit-stats",
                "timezone": "UTC",
            }
        }
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session; uncommitted work is rolled back if the block raises."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def check_database_connection() -> bool:
    """Return True when ``SELECT 1`` succeeds."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Database connection check failed", error=str(exc))
        return False
    return True


async def close_database() -> None:
    """Dispose of the engine so the next call to :func:`get_engine` reconnects."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
