"""Aggregation worker: recomputes and persists per-agent daily stats.

A run takes a list of agent ids and a mode:

- ``incremental`` recomputes the buckets an agent touched since it was marked
  dirty (always including today's bucket) and clears its dirty marker on
  success.
- ``full`` rebuilds every bucket of the agent from raw events and leaves the
  dirty set alone.

Agents are processed in chunks of ``batch_size``. Chunks run strictly one
after the other; agents inside a chunk run concurrently, so at most
``batch_size`` aggregations are outstanding. A failing agent is recorded in
the result and never stops the rest of the run.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from time import monotonic
from typing import Callable, Iterator, List, Mapping, Optional, Sequence

from recruit_stats.logging import get_logger
from recruit_stats.services.stats.calendar import bucket_date
from recruit_stats.services.stats.dirty_set import DirtyMarker, DirtySet
from recruit_stats.services.stats.metrics import build_daily_aggregates
from recruit_stats.services.stats.store import StatsStore
from recruit_stats.services.stats.types import AgentError, AgentOutcome, RunMode, RunResult

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 50


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def chunked(items: Sequence[str], size: int) -> Iterator[List[str]]:
    """Split ``items`` into consecutive lists of at most ``size``."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class AggregationWorker:
    """Runs incremental and full aggregations against a :class:`StatsStore`."""

    def __init__(
        self,
        store: StatsStore,
        dirty_set: DirtySet,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._store = store
        self._dirty_set = dirty_set
        self._clock = clock
        self.batch_size = batch_size

    async def run(
        self,
        agent_ids: Sequence[str],
        mode: RunMode,
        markers: Optional[Mapping[str, DirtyMarker]] = None,
    ) -> RunResult:
        """Aggregate ``agent_ids`` and return the run summary.

        Args:
            agent_ids: Agents to process. Duplicates are ignored.
            mode: Incremental or full recompute.
            markers: Drained dirty markers keyed by agent id (incremental
                mode). They set how far back each agent is recomputed and are
                put back into the dirty set if that agent fails.

        Returns:
            RunResult. ``success`` is False only when the store was
            unreachable and nothing was processed.
        """
        markers = markers or {}
        unique_ids = list(dict.fromkeys(agent_ids))

        try:
            await self._store.ping()
        except Exception as exc:
            logger.error("Aggregation run aborted, store unreachable", mode=mode.value, error=str(exc))
            if mode is RunMode.INCREMENTAL:
                self._restore_all(unique_ids, markers)
            return RunResult.failed(str(exc), mode=mode, finished_at=self._clock())

        logger.info(
            "Aggregation run starting",
            mode=mode.value,
            agents=len(unique_ids),
            batch_size=self.batch_size,
        )

        processed = 0
        buckets = 0
        errors: List[AgentError] = []
        t0 = monotonic()

        for index, chunk in enumerate(chunked(unique_ids, self.batch_size)):
            outcomes = await asyncio.gather(
                *(self._aggregate_agent(agent_id, mode, markers.get(agent_id)) for agent_id in chunk)
            )
            for outcome in outcomes:
                if outcome.ok:
                    processed += 1
                    buckets += outcome.buckets
                else:
                    errors.append(AgentError(outcome.agent_id, outcome.error or "unknown error"))
            logger.debug(
                "Aggregation chunk complete",
                mode=mode.value,
                chunk=index,
                size=len(chunk),
            )

        duration_ms = int((monotonic() - t0) * 1000)
        result = RunResult(
            success=True,
            processed_count=processed,
            failed_count=len(errors),
            duration_ms=duration_ms,
            errors=tuple(errors),
            mode=mode,
            finished_at=self._clock(),
        )
        logger.info(
            "Aggregation run complete",
            mode=mode.value,
            processed=result.processed_count,
            failed=result.failed_count,
            buckets_updated=buckets,
            duration_ms=duration_ms,
        )
        return result

    async def _aggregate_agent(
        self, agent_id: str, mode: RunMode, marker: Optional[DirtyMarker]
    ) -> AgentOutcome:
        dispatched_at = self._clock()
        seen_seq = self._dirty_set.watermark()
        today = bucket_date(dispatched_at)
        since = min(marker.since_bucket, today) if marker else today

        try:
            if mode is RunMode.FULL:
                written = await self._full(agent_id, dispatched_at)
            else:
                written = await self._incremental(agent_id, since, today, dispatched_at)
        except Exception as exc:
            logger.warning(
                "Agent aggregation failed",
                agent_id=agent_id,
                mode=mode.value,
                error=str(exc),
            )
            if mode is RunMode.INCREMENTAL:
                self._restore(agent_id, marker, dispatched_at)
            return AgentOutcome(agent_id=agent_id, error=str(exc) or type(exc).__name__)

        if mode is RunMode.INCREMENTAL:
            self._dirty_set.remove(agent_id, seen_seq=seen_seq, covered_from=since)
        return AgentOutcome(agent_id=agent_id, buckets=written)

    async def _incremental(
        self, agent_id: str, since: date, today: date, computed_at: datetime
    ) -> int:
        events = await self._store.read_raw_events(agent_id, since_bucket=since)
        rows = build_daily_aggregates(
            agent_id,
            events,
            computed_at,
            include_dates={since, today},
        )
        return await self._store.upsert_aggregates(rows)

    async def _full(self, agent_id: str, computed_at: datetime) -> int:
        events = await self._store.read_raw_events(agent_id)
        rows = build_daily_aggregates(agent_id, events, computed_at)
        return await self._store.replace_agent_aggregates(agent_id, rows)

    def _restore(
        self, agent_id: str, marker: Optional[DirtyMarker], dispatched_at: datetime
    ) -> None:
        if marker is None:
            marker = DirtyMarker(
                agent_id=agent_id,
                marked_at=dispatched_at,
                since_bucket=bucket_date(dispatched_at),
            )
        self._dirty_set.restore(marker)

    def _restore_all(self, agent_ids: Sequence[str], markers: Mapping[str, DirtyMarker]) -> None:
        now = self._clock()
        for agent_id in agent_ids:
            self._restore(agent_id, markers.get(agent_id), now)
