"""Result, status and configuration types shared by the stats scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

# Agent id used in RunResult.errors for failures that are not tied to a single agent.
RUN_LEVEL_AGENT_ID = "*"


class StatsError(Exception):
    """Base class for stats aggregation errors."""


class ConfigurationError(StatsError, ValueError):
    """Raised when scheduler configuration is out of range."""


class RunMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


@dataclass(frozen=True)
class SchedulerConfig:
    """Scheduler settings, fixed for the lifetime of a started scheduler."""

    dirty_interval_ms: int = 5 * 60 * 1000
    main_aggregation_hour: int = 2
    batch_size: int = 50
    enabled: bool = True

    def validate(self) -> None:
        if self.dirty_interval_ms <= 0:
            raise ConfigurationError(
                f"dirty_interval_ms must be positive, got {self.dirty_interval_ms}"
            )
        if not 0 <= self.main_aggregation_hour <= 23:
            raise ConfigurationError(
                f"main_aggregation_hour must be in 0-23, got {self.main_aggregation_hour}"
            )
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dirty_interval_ms": self.dirty_interval_ms,
            "main_aggregation_hour": self.main_aggregation_hour,
            "batch_size": self.batch_size,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class AgentError:
    agent_id: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"agent_id": self.agent_id, "message": self.message}


@dataclass(frozen=True)
class AgentOutcome:
    """Per-agent result of one aggregation attempt.

    ``error`` is None on success. ``buckets`` counts the aggregate rows written.
    """

    agent_id: str
    error: Optional[str] = None
    buckets: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class RunResult:
    """Summary of a single aggregation run."""

    success: bool
    processed_count: int = 0
    failed_count: int = 0
    duration_ms: int = 0
    errors: Tuple[AgentError, ...] = ()
    mode: Optional[RunMode] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def failed(
        cls,
        message: str,
        *,
        mode: Optional[RunMode] = None,
        duration_ms: int = 0,
        finished_at: Optional[datetime] = None,
    ) -> RunResult:
        """Build the result of a run that could not process any agent."""
        return cls(
            success=False,
            duration_ms=duration_ms,
            errors=(AgentError(RUN_LEVEL_AGENT_ID, message),),
            mode=mode,
            finished_at=finished_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "duration_ms": self.duration_ms,
            "errors": [err.to_dict() for err in self.errors],
            "mode": self.mode.value if self.mode else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True)
class SchedulerStatus:
    """Read-only snapshot of scheduler state."""

    is_running: bool
    started: bool
    last_run_time: Optional[datetime]
    next_main_aggregation_time: Optional[datetime]
    config: SchedulerConfig
    last_run_result: Optional[RunResult] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "started": self.started,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "next_main_aggregation_time": (
                self.next_main_aggregation_time.isoformat()
                if self.next_main_aggregation_time
                else None
            ),
            "config": self.config.to_dict(),
            "last_run_result": self.last_run_result.to_dict() if self.last_run_result else None,
        }
