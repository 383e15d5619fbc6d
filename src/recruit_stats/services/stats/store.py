"""Persistence layer for raw recruitment events and daily aggregates.

The worker talks to :class:`StatsStore`; :class:`SqlStatsStore` is the
PostgreSQL implementation. Aggregate writes use ``ON CONFLICT`` on the
(agent_id, stat_date, brand_id, job_id) key, so repeated runs over the same
events produce identical rows.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional, Protocol, Sequence

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from recruit_stats.database import get_session_context
from recruit_stats.logging import get_logger
from recruit_stats.models import RecruitmentEvent
from recruit_stats.services.stats.calendar import bucket_start
from recruit_stats.services.stats.metrics import AgentStatAggregate, RawEvent
from recruit_stats.services.stats.types import StatsError

logger = get_logger(__name__)


class StoreUnavailableError(StatsError):
    """Raised when the persistence layer cannot be reached."""


class StatsStore(Protocol):
    async def ping(self) -> None:
        """Raise :class:`StoreUnavailableError` if the store is unreachable."""

    async def read_raw_events(
        self, agent_id: str, since_bucket: Optional[date] = None
    ) -> List[RawEvent]:
        """Events for ``agent_id`` from Beijing midnight of ``since_bucket`` on."""

    async def upsert_aggregate(self, row: AgentStatAggregate) -> None: ...

    async def upsert_aggregates(self, rows: Sequence[AgentStatAggregate]) -> int: ...

    async def replace_agent_aggregates(
        self, agent_id: str, rows: Sequence[AgentStatAggregate]
    ) -> int:
        """Drop every aggregate row of ``agent_id`` and write ``rows`` instead."""

    async def list_known_agent_ids(self) -> List[str]: ...


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_UPSERT_SQL = text("""
INSERT INTO recruitment_daily_stats
    (agent_id, stat_date, brand_id, job_id,
     total_events, unique_candidates, unique_sessions,
     messages_sent, messages_received, inbound_candidates, candidates_replied, unread_replied,
     proactive_outreach, proactive_responded,
     wechat_exchanged, interviews_booked, candidates_hired,
     reply_rate, wechat_rate, interview_rate, last_computed_at)
VALUES
    (:agent_id, :stat_date, :brand_id, :job_id,
     :total_events, :unique_candidates, :unique_sessions,
     :messages_sent, :messages_received, :inbound_candidates, :candidates_replied, :unread_replied,
     :proactive_outreach, :proactive_responded,
     :wechat_exchanged, :interviews_booked, :candidates_hired,
     :reply_rate, :wechat_rate, :interview_rate, :last_computed_at)
ON CONFLICT (agent_id, stat_date, brand_id, job_id)
DO UPDATE SET
    total_events        = EXCLUDED.total_events,
    unique_candidates   = EXCLUDED.unique_candidates,
    unique_sessions     = EXCLUDED.unique_sessions,
    messages_sent       = EXCLUDED.messages_sent,
    messages_received   = EXCLUDED.messages_received,
    inbound_candidates  = EXCLUDED.inbound_candidates,
    candidates_replied  = EXCLUDED.candidates_replied,
    unread_replied      = EXCLUDED.unread_replied,
    proactive_outreach  = EXCLUDED.proactive_outreach,
    proactive_responded = EXCLUDED.proactive_responded,
    wechat_exchanged    = EXCLUDED.wechat_exchanged,
    interviews_booked   = EXCLUDED.interviews_booked,
    candidates_hired    = EXCLUDED.candidates_hired,
    reply_rate          = EXCLUDED.reply_rate,
    wechat_rate         = EXCLUDED.wechat_rate,
    interview_rate      = EXCLUDED.interview_rate,
    last_computed_at    = EXCLUDED.last_computed_at
""")

_DELETE_AGENT_SQL = text("DELETE FROM recruitment_daily_stats WHERE agent_id = :agent_id")

_KNOWN_AGENTS_SQL = text("SELECT DISTINCT agent_id FROM recruitment_events ORDER BY agent_id")


class SqlStatsStore:
    """StatsStore backed by the shared async SQLAlchemy engine."""

    def __init__(self, batch_size: int = 500) -> None:
        self.batch_size = batch_size

    async def ping(self) -> None:
        try:
            async with get_session_context() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            raise StoreUnavailableError(f"Stats store unreachable: {exc}") from exc

    async def read_raw_events(
        self, agent_id: str, since_bucket: Optional[date] = None
    ) -> List[RawEvent]:
        stmt = select(RecruitmentEvent).where(RecruitmentEvent.agent_id == agent_id)
        if since_bucket is not None:
            stmt = stmt.where(RecruitmentEvent.event_time >= bucket_start(since_bucket))
        stmt = stmt.order_by(RecruitmentEvent.event_time, RecruitmentEvent.id)

        async with get_session_context() as session:
            result = await session.scalars(stmt)
            return [
                RawEvent(
                    agent_id=row.agent_id,
                    event_type=row.event_type,
                    event_time=row.event_time,
                    candidate_key=row.candidate_key,
                    candidate_name=row.candidate_name,
                    session_id=row.session_id,
                    brand_id=row.brand_id,
                    job_id=row.job_id,
                    unread_count_before_reply=row.unread_count_before_reply or 0,
                    was_unread_before_reply=bool(row.was_unread_before_reply),
                )
                for row in result.all()
            ]

    async def upsert_aggregate(self, row: AgentStatAggregate) -> None:
        await self.upsert_aggregates([row])

    async def upsert_aggregates(self, rows: Sequence[AgentStatAggregate]) -> int:
        if not rows:
            return 0
        async with get_session_context() as session:
            written = await self._write(session, rows)
            await session.commit()
        return written

    async def replace_agent_aggregates(
        self, agent_id: str, rows: Sequence[AgentStatAggregate]
    ) -> int:
        async with get_session_context() as session:
            deleted = await session.execute(_DELETE_AGENT_SQL, {"agent_id": agent_id})
            written = await self._write(session, rows)
            await session.commit()

        logger.debug(
            "Agent aggregates rebuilt",
            agent_id=agent_id,
            rows_deleted=deleted.rowcount,
            rows_written=written,
        )
        return written

    async def list_known_agent_ids(self) -> List[str]:
        async with get_session_context() as session:
            result = await session.execute(_KNOWN_AGENTS_SQL)
            return [row.agent_id for row in result.fetchall()]

    async def _write(self, session: AsyncSession, rows: Sequence[AgentStatAggregate]) -> int:
        written = 0
        for start in range(0, len(rows), self.batch_size):
            batch = [row.to_row() for row in rows[start : start + self.batch_size]]
            await session.execute(_UPSERT_SQL, batch)
            written += len(batch)
        return written
