"""Stats aggregation scheduler.

Owns two timers and the single-flight run gate:

- the dirty timer fires every ``dirty_interval_ms`` and runs an incremental
  pass over whatever the dirty set holds (skipped when it is empty);
- the main timer fires daily at ``main_aggregation_hour`` Beijing time and
  runs a full pass over every known agent.

Operators can force either mode with :meth:`StatsScheduler.trigger_manual`.
At most one run is active at a time. The gate is a plain flag checked and
set with no ``await`` in between, which is atomic on a single event loop.

Usage:
    scheduler = StatsScheduler(worker, dirty_set, store, config)
    await scheduler.start()
    ...
    await scheduler.stop()
    await scheduler.wait_until_idle()
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from recruit_stats.logging import bind_run_context, get_logger
from recruit_stats.services.stats.calendar import next_hour_occurrence
from recruit_stats.services.stats.dirty_set import DirtyMarker, DirtySet
from recruit_stats.services.stats.store import StatsStore
from recruit_stats.services.stats.types import (
    RunMode,
    RunResult,
    SchedulerConfig,
    SchedulerStatus,
    StatsError,
)
from recruit_stats.services.stats.worker import AggregationWorker

logger = get_logger(__name__)

# Resolves the agents for a run once the gate is held: (agent ids, drained markers).
_Targets = Tuple[List[str], Dict[str, DirtyMarker]]


class AlreadyRunning(StatsError):
    """Raised by a manual trigger while another run is in progress."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StatsScheduler:
    """Serializes timer-fired and manual aggregation runs."""

    def __init__(
        self,
        worker: AggregationWorker,
        dirty_set: DirtySet,
        store: StatsStore,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._worker = worker
        self._dirty_set = dirty_set
        self._store = store
        self._config = config or SchedulerConfig()
        self._clock = clock

        self._dirty_task: asyncio.Task[None] | None = None
        self._main_task: asyncio.Task[None] | None = None
        self._run_task: asyncio.Task[RunResult] | None = None
        self._started = False

        self._is_running = False
        self._last_run_time: datetime | None = None
        self._last_run_result: RunResult | None = None
        self._next_main_aggregation_time: datetime | None = None

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def dirty_set(self) -> DirtySet:
        return self._dirty_set

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def started(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Arm both timers.

        No-op when disabled or already started.

        Raises:
            ConfigurationError: if the config is out of range; nothing is armed.
        """
        if self._started:
            logger.warning("Stats scheduler already started, ignoring start request")
            return
        if not self._config.enabled:
            logger.info("Stats scheduler is disabled")
            return

        self._config.validate()

        self._started = True
        self._next_main_aggregation_time = next_hour_occurrence(
            self._config.main_aggregation_hour, self._clock()
        )
        self._dirty_task = asyncio.create_task(self._dirty_loop())
        self._main_task = asyncio.create_task(self._main_loop())
        logger.info(
            "Stats scheduler started",
            dirty_interval_ms=self._config.dirty_interval_ms,
            main_aggregation_hour=self._config.main_aggregation_hour,
            batch_size=self._config.batch_size,
            next_main_aggregation_at=self._next_main_aggregation_time.isoformat(),
        )

    async def stop(self) -> None:
        """Cancel both timers. An in-flight run is left to finish."""
        if not self._started:
            return

        self._started = False
        for task in (self._dirty_task, self._main_task):
            if task and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._dirty_task = None
        self._main_task = None
        logger.info("Stats scheduler stopped", run_in_flight=self._is_running)

    async def wait_until_idle(self) -> None:
        """Wait for the in-flight run, if any, to complete."""
        task = self._run_task
        if task is not None and not task.done():
            with suppress(Exception):
                await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self._is_running,
            started=self._started,
            last_run_time=self._last_run_time,
            next_main_aggregation_time=self._next_main_aggregation_time,
            config=self._config,
            last_run_result=self._last_run_result,
        )

    async def trigger_manual(
        self, agent_id: Optional[str] = None, force: bool = False
    ) -> RunResult:
        """Run an aggregation now.

        With ``agent_id`` the agent is fully recomputed; without it an
        incremental pass runs over the currently dirty agents. ``force`` is
        accepted for API compatibility and currently has no effect.

        Raises:
            AlreadyRunning: if a run is active. Nothing is drained or changed.
        """
        if self._is_running:
            raise AlreadyRunning("An aggregation run is already in progress")

        if agent_id:
            mode, resolve = RunMode.FULL, self._single_agent(agent_id)
        else:
            mode, resolve = RunMode.INCREMENTAL, self._drain_targets

        logger.info("Manual aggregation triggered", mode=mode.value, agent_id=agent_id, force=force)
        result = await self._launch(mode, resolve)
        if result is None:
            raise StatsError(f"Manual {mode.value} aggregation produced no result")
        return result

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _dirty_loop(self) -> None:
        interval = self._config.dirty_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self._fire_dirty()
            except Exception as exc:
                logger.error("Dirty aggregation fire failed unexpectedly", exc_info=exc)

    async def _main_loop(self) -> None:
        hour = self._config.main_aggregation_hour
        while True:
            target = self._next_main_aggregation_time or next_hour_occurrence(hour, self._clock())
            delay = (target - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await self._fire_main()
            except Exception as exc:
                logger.error("Main aggregation fire failed unexpectedly", exc_info=exc)
            # Never reuse the fired instant, even if sleep woke slightly early.
            self._next_main_aggregation_time = next_hour_occurrence(
                hour, max(self._clock(), target)
            )
            logger.info(
                "Next main aggregation scheduled",
                next_main_aggregation_at=self._next_main_aggregation_time.isoformat(),
            )

    async def _fire_dirty(self) -> Optional[RunResult]:
        if len(self._dirty_set) == 0:
            return None
        try:
            return await self._launch(RunMode.INCREMENTAL, self._drain_targets, skip_if_empty=True)
        except AlreadyRunning:
            logger.info("Dirty aggregation skipped, run in progress")
            return None

    async def _fire_main(self) -> Optional[RunResult]:
        logger.info("Running scheduled main aggregation")
        try:
            return await self._launch(RunMode.FULL, self._known_agents)
        except AlreadyRunning:
            logger.warning("Main aggregation skipped, run in progress")
            return None

    # ------------------------------------------------------------------
    # Run gate
    # ------------------------------------------------------------------

    async def _launch(
        self,
        mode: RunMode,
        resolve: Callable[[], Awaitable[_Targets]],
        skip_if_empty: bool = False,
    ) -> Optional[RunResult]:
        """Take the gate and run in a separate task.

        The gate is taken before the first suspension point. The run gets its
        own task so cancelling a timer never cancels the run.
        """
        if self._is_running:
            raise AlreadyRunning("An aggregation run is already in progress")
        self._is_running = True

        self._run_task = asyncio.create_task(self._trigger_run(mode, resolve, skip_if_empty))
        return await asyncio.shield(self._run_task)

    async def _trigger_run(
        self,
        mode: RunMode,
        resolve: Callable[[], Awaitable[_Targets]],
        skip_if_empty: bool,
    ) -> Optional[RunResult]:
        """Body of a run. The caller already holds the gate; it is released here."""
        bind_run_context(mode.value)
        markers: Dict[str, DirtyMarker] = {}
        started = False
        try:
            agent_ids, markers = await resolve()
            if skip_if_empty and not agent_ids:
                return None

            started = True
            self._last_run_time = self._clock()
            result = await self._worker.run(agent_ids, mode, markers=markers)
        except Exception as exc:
            logger.error("Aggregation run failed", mode=mode.value, exc_info=exc)
            for marker in markers.values():
                self._dirty_set.restore(marker)
            if not started:
                self._last_run_time = self._clock()
            result = RunResult.failed(
                f"{type(exc).__name__}: {exc}", mode=mode, finished_at=self._clock()
            )
        finally:
            self._is_running = False

        self._last_run_result = result
        return result

    async def _drain_targets(self) -> _Targets:
        drained = self._dirty_set.drain_markers()
        return [m.agent_id for m in drained], {m.agent_id: m for m in drained}

    async def _known_agents(self) -> _Targets:
        return list(await self._store.list_known_agent_ids()), {}

    def _single_agent(self, agent_id: str) -> Callable[[], Awaitable[_Targets]]:
        async def resolve() -> _Targets:
            return [agent_id], {}

        return resolve
