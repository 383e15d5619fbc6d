"""Admin routes for the stats aggregation scheduler."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from recruit_stats.logging import get_logger
from recruit_stats.services.stats.scheduler import AlreadyRunning, StatsScheduler

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/stats", tags=["stats"])


def get_scheduler(request: Request) -> StatsScheduler:
    """Scheduler built by the application lifespan."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Stats scheduler is not initialised")
    return scheduler


# --- Schemas ---


class SchedulerConfigResponse(BaseModel):
    dirty_interval_minutes: int
    dirty_interval_ms: int
    main_aggregation_hour: int
    batch_size: int
    enabled: bool


class AgentErrorResponse(BaseModel):
    agent_id: str
    message: str


class RunResultResponse(BaseModel):
    """Summary of one aggregation run."""

    success: bool
    processed_count: int
    failed_count: int
    duration_ms: int
    errors: List[AgentErrorResponse]
    mode: Optional[Literal["incremental", "full"]] = None
    finished_at: Optional[str] = None


class SchedulerStateResponse(BaseModel):
    is_running: bool
    started: bool
    last_run_time: Optional[str] = None
    next_main_aggregation_time: Optional[str] = None
    dirty_count: int
    config: SchedulerConfigResponse


class SchedulerStatusResponse(BaseModel):
    """Response for GET /admin/stats/aggregate."""

    scheduler: SchedulerStateResponse
    last_result: Optional[RunResultResponse] = None


class TriggerRequest(BaseModel):
    """Request body for a manual aggregation."""

    agent_id: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Agent to fully recompute. Omit for an incremental pass over dirty agents.",
    )
    force: bool = Field(
        default=False,
        description="Reserved. Accepted but currently ignored.",
    )


class TriggerResponse(BaseModel):
    message: str
    result: RunResultResponse


class MarkDirtyRequest(BaseModel):
    agent_id: str = Field(min_length=1)
    event_time: Optional[datetime] = Field(
        default=None,
        description="When the changed source data happened. Defaults to now.",
    )


class MarkDirtyResponse(BaseModel):
    agent_id: str
    marked_at: str
    since_bucket: str
    dirty_count: int


# --- Endpoints ---


@router.get(
    "/aggregate",
    response_model=SchedulerStatusResponse,
    summary="Get stats scheduler status",
)
async def get_aggregation_status(
    scheduler: StatsScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    """Return scheduler state and the most recent run result."""
    status = scheduler.get_status()
    config = status.config
    return {
        "scheduler": {
            "is_running": status.is_running,
            "started": status.started,
            "last_run_time": status.last_run_time.isoformat() if status.last_run_time else None,
            "next_main_aggregation_time": (
                status.next_main_aggregation_time.isoformat()
                if status.next_main_aggregation_time
                else None
            ),
            "dirty_count": len(scheduler.dirty_set),
            "config": {
                "dirty_interval_minutes": round(config.dirty_interval_ms / 60000),
                **config.to_dict(),
            },
        },
        "last_result": status.last_run_result.to_dict() if status.last_run_result else None,
    }


@router.post(
    "/aggregate",
    response_model=TriggerResponse,
    summary="Trigger a stats aggregation run",
    description=(
        "Runs a full recompute of one agent when agent_id is given, otherwise an "
        "incremental pass over dirty agents. Returns 409 while another run is active."
    ),
)
async def trigger_aggregation(
    body: Optional[TriggerRequest] = None,
    scheduler: StatsScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    """Run an aggregation now and return its result."""
    body = body or TriggerRequest()

    try:
        result = await scheduler.trigger_manual(body.agent_id, force=body.force)
    except AlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("Manual aggregation failed", exc_info=exc)
        raise HTTPException(
            status_code=500,
            detail=f"Aggregation failed unexpectedly: {type(exc).__name__}: {exc}",
        ) from exc

    return {
        "message": (
            f"Full re-aggregation completed for {body.agent_id}"
            if body.agent_id
            else "Dirty aggregation completed"
        ),
        "result": result.to_dict(),
    }


@router.post(
    "/dirty",
    response_model=MarkDirtyResponse,
    summary="Mark an agent's stats dirty",
)
async def mark_agent_dirty(
    body: MarkDirtyRequest,
    scheduler: StatsScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    """Queue an agent for the next incremental pass."""
    marker = scheduler.dirty_set.mark_dirty(body.agent_id, body.event_time)
    return {
        "agent_id": marker.agent_id,
        "marked_at": marker.marked_at.isoformat(),
        "since_bucket": marker.since_bucket.isoformat(),
        "dirty_count": len(scheduler.dirty_set),
    }
