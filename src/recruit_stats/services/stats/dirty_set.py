"""Registry of agents whose source data changed since their last aggregation.

Marks arrive from the ingestion side (possibly from other threads) while the
scheduler drains and clears entries, so every operation holds a single lock.
The drain swaps the whole mapping out under that lock: a mark that lands after
the swap goes into the fresh mapping and is picked up by the next run.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional

from recruit_stats.logging import get_logger
from recruit_stats.services.stats.calendar import bucket_date

logger = get_logger(__name__)


@dataclass(frozen=True)
class DirtyMarker:
    """One dirty agent.

    ``since_bucket`` is the earliest Beijing bucket date touched by the
    changes behind this marker; incremental runs recompute from there.
    ``seq`` orders marks within one :class:`DirtySet` and never goes down.
    """

    agent_id: str
    marked_at: datetime
    since_bucket: date
    seq: int = 0

    def merge(self, other: DirtyMarker) -> DirtyMarker:
        return replace(
            self,
            marked_at=max(self.marked_at, other.marked_at),
            since_bucket=min(self.since_bucket, other.since_bucket),
            seq=max(self.seq, other.seq),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DirtySet:
    """Thread-safe set of :class:`DirtyMarker` keyed by agent id."""

    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._markers: Dict[str, DirtyMarker] = {}
        self._seq = 0

    def mark_dirty(self, agent_id: str, event_time: Optional[datetime] = None) -> DirtyMarker:
        """Mark ``agent_id`` dirty, or refresh an existing marker.

        ``event_time`` is when the changed source data happened; it defaults
        to now and widens the marker's recompute window when it is older.
        """
        if not agent_id:
            raise ValueError("agent_id must be a non-empty string")

        now = self._clock()
        marker = DirtyMarker(
            agent_id=agent_id,
            marked_at=now,
            since_bucket=bucket_date(event_time or now),
        )
        with self._lock:
            marker = replace(marker, seq=self._next_seq())
            existing = self._markers.get(agent_id)
            if existing is not None:
                marker = existing.merge(marker)
            self._markers[agent_id] = marker
        return marker

    def restore(self, marker: DirtyMarker) -> None:
        """Put a drained marker back, merging with any newer mark.

        The restored marker gets a fresh ``seq``, so a run dispatched before the
        restore cannot clear it.
        """
        with self._lock:
            marker = replace(marker, seq=self._next_seq())
            existing = self._markers.get(marker.agent_id)
            self._markers[marker.agent_id] = existing.merge(marker) if existing else marker

    def drain_markers(self) -> List[DirtyMarker]:
        """Atomically empty the set, returning markers in insertion order."""
        with self._lock:
            drained, self._markers = self._markers, {}
        if drained:
            logger.debug("Dirty set drained", count=len(drained))
        return list(drained.values())

    def drain_all(self) -> List[str]:
        """Atomically empty the set, returning agent ids in insertion order."""
        return [marker.agent_id for marker in self.drain_markers()]

    def watermark(self) -> int:
        """Highest ``seq`` handed out so far.

        Take it before reading an agent's source data and pass it to
        :meth:`remove` as ``seen_seq``.
        """
        with self._lock:
            return self._seq

    def remove(
        self,
        agent_id: str,
        seen_seq: Optional[int] = None,
        covered_from: Optional[date] = None,
    ) -> bool:
        """Clear ``agent_id`` after a confirmed successful aggregation.

        The marker is kept when the agent was marked or restored after
        ``seen_seq`` was taken, or when the marker reaches back before
        ``covered_from`` (buckets the aggregation did not recompute), so a
        change that raced the aggregation is not lost. Ordering uses ``seq``
        rather than ``marked_at``, so equal or backwards clock readings
        cannot drop a mark.

        Returns:
            True if a marker was removed.
        """
        with self._lock:
            marker = self._markers.get(agent_id)
            if marker is None:
                return False
            if seen_seq is not None and marker.seq > seen_seq:
                return False
            if covered_from is not None and marker.since_bucket < covered_from:
                return False
            del self._markers[agent_id]
            return True

    def get(self, agent_id: str) -> Optional[DirtyMarker]:
        with self._lock:
            return self._markers.get(agent_id)

    def snapshot(self) -> List[DirtyMarker]:
        with self._lock:
            return list(self._markers.values())

    def __contains__(self, agent_id: object) -> bool:
        with self._lock:
            return agent_id in self._markers

    def __len__(self) -> int:
        with self._lock:
            return len(self._markers)

    def _next_seq(self) -> int:
        # Caller holds the lock
        self._seq += 1
        return self._seq
