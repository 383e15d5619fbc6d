"""FastAPI application entry point.

The lifespan owns the stats scheduler: it is built once, published on
``app.state.scheduler`` for the admin routes, started, and on shutdown its
timers are stopped and any in-flight run is awaited before the database
engine is disposed.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from recruit_stats.config import Settings, get_settings
from recruit_stats.database import check_database_connection, close_database
from recruit_stats.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)
from recruit_stats.routers.stats import router as stats_router
from recruit_stats.services.stats.dirty_set import DirtySet
from recruit_stats.services.stats.scheduler import StatsScheduler
from recruit_stats.services.stats.store import SqlStatsStore
from recruit_stats.services.stats.types import ConfigurationError
from recruit_stats.services.stats.worker import AggregationWorker

logger = get_logger(__name__)


def build_scheduler(settings: Settings) -> StatsScheduler:
    """Wire the store, dirty set, worker and scheduler together."""
    config = settings.scheduler_config()
    store = SqlStatsStore()
    dirty_set = DirtySet()
    # An invalid batch size is reported by scheduler.start(); keep the worker constructible.
    worker = AggregationWorker(store, dirty_set, batch_size=max(config.batch_size, 1))
    return StatsScheduler(worker, dirty_set, store, config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    settings = get_settings()
    logger.info("Starting stats service", version=settings.app_version)

    scheduler = build_scheduler(settings)
    app.state.scheduler = scheduler
    try:
        await scheduler.start()
    except ConfigurationError as exc:
        logger.error("Stats scheduler not started, invalid configuration", error=str(exc))

    yield

    await scheduler.stop()
    await scheduler.wait_until_idle()
    logger.info("Stats service stopped")
    await close_database()


def _scheduler_check(scheduler: StatsScheduler | None, expected: bool) -> tuple[bool, dict]:
    """Health of the scheduler and the fields reported for it."""
    status = scheduler.get_status() if scheduler else None
    started = bool(status and status.started)
    last_run = status.last_run_time if status else None
    return (started or not expected), {
        "started": started,
        "isRunning": bool(status and status.is_running),
        "lastRunTime": last_run.isoformat() if last_run else None,
    }


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Background aggregation of per-agent recruitment statistics",
        lifespan=lifespan,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next: Any) -> Any:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        bind_request_context(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(stats_router)

    @app.get("/health", tags=["meta"])
    async def health_check(request: Request) -> dict[str, Any]:
        """Report database reachability and scheduler state."""
        settings = get_settings()
        missing_env = settings.missing_required_env()
        db_healthy = await check_database_connection()
        scheduler_healthy, scheduler_check = _scheduler_check(
            getattr(request.app.state, "scheduler", None),
            expected=settings.stats_scheduler_enabled,
        )

        issues: list[str] = []
        if missing_env:
            issues.append("Missing required environment variables: " + ", ".join(missing_env))
        if not scheduler_healthy:
            issues.append("Stats scheduler is not running")

        if missing_env:
            status = "unhealthy"
        elif db_healthy and scheduler_healthy:
            status = "healthy"
        else:
            status = "degraded"

        return {
            "service": settings.app_name,
            "status": status,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "database": db_healthy,
                "statsScheduler": scheduler_check,
            },
            "issues": issues,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", exc_info=exc, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    return app


app = create_app()
