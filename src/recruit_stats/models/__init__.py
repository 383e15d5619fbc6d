"""SQLAlchemy models for the recruitment stats schema."""

from recruit_stats.models.base import Base
from recruit_stats.models.recruitment import (
    EVENT_TYPES,
    RecruitmentDailyStats,
    RecruitmentEvent,
)

__all__ = [
    "EVENT_TYPES",
    "Base",
    "RecruitmentDailyStats",
    "RecruitmentEvent",
]
