"""Raw recruitment events and their per-day aggregates."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from recruit_stats.models.base import Base

EVENT_TYPES = (
    "message_sent",
    "message_received",
    "candidate_contacted",
    "wechat_exchanged",
    "interview_booked",
    "candidate_hired",
)


class RecruitmentEvent(Base):
    """One raw event emitted by the ingestion pipeline. Read-only here."""

    __tablename__ = "recruitment_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    candidate_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    candidate_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    brand_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    job_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    unread_count_before_reply: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    was_unread_before_reply: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )

    __table_args__ = (
        Index("ix_recruitment_events_agent_time", "agent_id", "event_time"),
        CheckConstraint(
            "event_type IN ("
            + ", ".join(f"'{event_type}'" for event_type in EVENT_TYPES)
            + ")",
            name="ck_recruitment_events_type",
        ),
    )


class RecruitmentDailyStats(Base):
    """Aggregated counters per agent, Beijing civil day and optional brand/job.

    NULL brand_id/job_id means the row is not grouped by that dimension; the
    (NULL, NULL) row is the agent's overall daily total. The unique index
    treats NULLs as equal so recomputation always upserts in place.
    """

    __tablename__ = "recruitment_daily_stats"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(String(128), nullable=False)
    stat_date: Mapped[date] = mapped_column(Date, nullable=False)
    brand_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    job_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Traffic
    total_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_candidates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Inbound funnel
    messages_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    messages_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inbound_candidates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    candidates_replied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unread_replied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Outbound funnel
    proactive_outreach: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    proactive_responded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Conversions
    wechat_exchanged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    interviews_booked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    candidates_hired: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Rates in basis points (85.5% -> 8550)
    reply_rate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    wechat_rate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    interview_rate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    last_computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index(
            "uq_recruitment_daily_stats_key",
            "agent_id",
            "stat_date",
            "brand_id",
            "job_id",
            unique=True,
            postgresql_nulls_not_distinct=True,
        ),
        Index("ix_recruitment_daily_stats_date", "stat_date"),
        CheckConstraint("total_events >= 0", name="ck_recruitment_daily_stats_total"),
    )
