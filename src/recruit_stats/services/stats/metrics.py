"""Pure-Python counter computation for daily recruitment stats.

All functions here are stateless and free of I/O so they can be unit-tested
without a database or settings object.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from recruit_stats.services.stats.calendar import bucket_date

MESSAGE_SENT = "message_sent"
MESSAGE_RECEIVED = "message_received"
CANDIDATE_CONTACTED = "candidate_contacted"
WECHAT_EXCHANGED = "wechat_exchanged"
INTERVIEW_BOOKED = "interview_booked"
CANDIDATE_HIRED = "candidate_hired"


class MalformedEventError(ValueError):
    """Raised when a raw event cannot be aggregated."""


@dataclass(frozen=True)
class RawEvent:
    """A recruitment event as read from the event store."""

    agent_id: str
    event_type: str
    event_time: datetime
    candidate_key: Optional[str] = None
    candidate_name: Optional[str] = None
    session_id: Optional[str] = None
    brand_id: Optional[int] = None
    job_id: Optional[int] = None
    unread_count_before_reply: int = 0
    was_unread_before_reply: bool = False


@dataclass(frozen=True)
class AgentStatAggregate:
    """One aggregate row: agent x Beijing day x optional brand/job."""

    agent_id: str
    stat_date: date
    brand_id: Optional[int]
    job_id: Optional[int]
    last_computed_at: datetime

    total_events: int = 0
    unique_candidates: int = 0
    unique_sessions: int = 0
    messages_sent: int = 0
    messages_received: int = 0
    inbound_candidates: int = 0
    candidates_replied: int = 0
    unread_replied: int = 0
    proactive_outreach: int = 0
    proactive_responded: int = 0
    wechat_exchanged: int = 0
    interviews_booked: int = 0
    candidates_hired: int = 0
    reply_rate: Optional[int] = None
    wechat_rate: Optional[int] = None
    interview_rate: Optional[int] = None

    @property
    def key(self) -> Tuple[str, date, Optional[int], Optional[int]]:
        return (self.agent_id, self.stat_date, self.brand_id, self.job_id)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_rate(numerator: int, denominator: int) -> Optional[int]:
    """Ratio in basis points, rounded half up (85.5% -> 8550). None for 0/0."""
    if denominator == 0:
        return None
    return math.floor(numerator / denominator * 10000 + 0.5)


def _distinct(values: Iterable[Optional[str]]) -> Set[str]:
    return {v for v in values if v}


def compute_counters(events: Sequence[RawEvent]) -> Dict[str, Any]:
    """Compute every counter and rate over one bucket's events."""
    sent = [e for e in events if e.event_type == MESSAGE_SENT]
    received = [e for e in events if e.event_type == MESSAGE_RECEIVED]
    contacted = [e for e in events if e.event_type == CANDIDATE_CONTACTED]
    replied_unread = [e for e in sent if e.was_unread_before_reply]

    # Candidates who wrote to us: seen as MESSAGE_RECEIVED, or replied to
    # while they had unread messages.
    inbound = _distinct(e.candidate_key for e in received) | _distinct(
        e.candidate_key for e in replied_unread
    )
    candidates_replied = len(_distinct(e.candidate_key for e in replied_unread))

    # Matched by name: outreach and inbound use different candidate keys.
    contacted_names = _distinct(e.candidate_name for e in contacted)
    proactive_responded = len(
        {e.candidate_name for e in received if e.candidate_name in contacted_names}
    )

    def distinct_for(event_type: str) -> int:
        return len(_distinct(e.candidate_key for e in events if e.event_type == event_type))

    wechat_exchanged = distinct_for(WECHAT_EXCHANGED)
    interviews_booked = distinct_for(INTERVIEW_BOOKED)

    return {
        "total_events": len(events),
        "unique_candidates": len(_distinct(e.candidate_key for e in events)),
        "unique_sessions": len(_distinct(e.session_id for e in events)),
        "messages_sent": len(sent),
        "messages_received": sum(e.unread_count_before_reply for e in received),
        "inbound_candidates": len(inbound),
        "candidates_replied": candidates_replied,
        "unread_replied": sum(e.unread_count_before_reply for e in replied_unread),
        "proactive_outreach": len(_distinct(e.candidate_key for e in contacted)),
        "proactive_responded": proactive_responded,
        "wechat_exchanged": wechat_exchanged,
        "interviews_booked": interviews_booked,
        "candidates_hired": distinct_for(CANDIDATE_HIRED),
        "reply_rate": calculate_rate(candidates_replied, len(inbound)),
        "wechat_rate": calculate_rate(wechat_exchanged, len(inbound)),
        "interview_rate": calculate_rate(interviews_booked, len(inbound)),
    }


def _validate(event: RawEvent, agent_id: str) -> None:
    if event.agent_id != agent_id:
        raise MalformedEventError(
            f"Event for agent {event.agent_id!r} returned while aggregating {agent_id!r}"
        )
    if event.event_time is None:
        raise MalformedEventError(f"Event for agent {agent_id!r} has no event_time")
    if event.unread_count_before_reply < 0:
        raise MalformedEventError(
            f"Event for agent {agent_id!r} has negative unread_count_before_reply"
        )


def build_daily_aggregates(
    agent_id: str,
    events: Sequence[RawEvent],
    computed_at: datetime,
    *,
    include_dates: Iterable[date] = (),
) -> List[AgentStatAggregate]:
    """Group an agent's events into Beijing-day buckets and compute each row.

    Every day with events yields an overall (brand=None, job=None) row plus
    one row per (brand, job) combination that has a brand. A job-less
    combination covers all of that brand's events. Dates in
    ``include_dates`` without events still get an overall row of zeros so a
    bucket whose events disappeared is reset.

    Raises:
        MalformedEventError: if any event does not belong to ``agent_id`` or is
            missing required fields.
    """
    by_day: Dict[date, List[RawEvent]] = defaultdict(list)
    for event in events:
        _validate(event, agent_id)
        by_day[bucket_date(event.event_time)].append(event)
    for day in include_dates:
        by_day.setdefault(day, [])

    rows: List[AgentStatAggregate] = []
    for day in sorted(by_day):
        day_events = by_day[day]
        rows.append(
            AgentStatAggregate(
                agent_id=agent_id,
                stat_date=day,
                brand_id=None,
                job_id=None,
                last_computed_at=computed_at,
                **compute_counters(day_events),
            )
        )

        dimensions = sorted(
            {(e.brand_id, e.job_id) for e in day_events if e.brand_id is not None},
            key=lambda dim: (dim[0], -1 if dim[1] is None else dim[1]),
        )
        for brand_id, job_id in dimensions:
            scoped = [
                e
                for e in day_events
                if e.brand_id == brand_id and (job_id is None or e.job_id == job_id)
            ]
            rows.append(
                AgentStatAggregate(
                    agent_id=agent_id,
                    stat_date=day,
                    brand_id=brand_id,
                    job_id=job_id,
                    last_computed_at=computed_at,
                    **compute_counters(scoped),
                )
            )
    return rows
