"""Tests for the stats scheduler: lifecycle, run gate and timers."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from recruit_stats.services.stats.dirty_set import DirtySet
from recruit_stats.services.stats.scheduler import AlreadyRunning, StatsScheduler
from recruit_stats.services.stats.types import (
    RUN_LEVEL_AGENT_ID,
    ConfigurationError,
    RunMode,
    SchedulerConfig,
    StatsError,
)
from recruit_stats.services.stats.worker import AggregationWorker

from .fixtures.stats_fixture import FakeClock, InMemoryStatsStore, make_event

NOW = datetime(2026, 1, 7, 2, 30, tzinfo=timezone.utc)
IDLE_CONFIG = SchedulerConfig(dirty_interval_ms=60_000, main_aggregation_hour=2, batch_size=10)


class BlockingStore(InMemoryStatsStore):
    """Store whose reads wait until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def read_raw_events(self, agent_id, since_bucket=None):
        self.entered.set()
        await self.release.wait()
        return await super().read_raw_events(agent_id, since_bucket)


def _scheduler(
    store: InMemoryStatsStore,
    config: SchedulerConfig = IDLE_CONFIG,
    clock: Optional[FakeClock] = None,
    dirty: Optional[DirtySet] = None,
) -> StatsScheduler:
    clock = clock or FakeClock(NOW)
    dirty = dirty or DirtySet(clock=clock)
    worker = AggregationWorker(store, dirty, batch_size=config.batch_size, clock=clock)
    return StatsScheduler(worker, dirty, store, config, clock=clock)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_disabled_start_is_noop(self) -> None:
        scheduler = _scheduler(InMemoryStatsStore(), SchedulerConfig(enabled=False))
        await scheduler.start()

        status = scheduler.get_status()
        assert status.started is False
        assert status.next_main_aggregation_time is None

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self) -> None:
        scheduler = _scheduler(InMemoryStatsStore())
        await scheduler.start()
        await scheduler.start()
        assert scheduler.started is True

        await scheduler.stop()
        await scheduler.stop()
        assert scheduler.started is False

    @pytest.mark.asyncio
    async def test_stop_without_start(self) -> None:
        scheduler = _scheduler(InMemoryStatsStore())
        await scheduler.stop()
        assert scheduler.started is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "config",
        [
            SchedulerConfig(dirty_interval_ms=0),
            SchedulerConfig(main_aggregation_hour=24),
            SchedulerConfig(batch_size=0),
        ],
    )
    async def test_invalid_config_refuses_to_start(self, config: SchedulerConfig) -> None:
        store = InMemoryStatsStore()
        clock = FakeClock(NOW)
        dirty = DirtySet(clock=clock)
        scheduler = StatsScheduler(AggregationWorker(store, dirty), dirty, store, config, clock)

        with pytest.raises(ConfigurationError):
            await scheduler.start()
        assert scheduler.started is False

    @pytest.mark.asyncio
    async def test_status_after_start(self) -> None:
        scheduler = _scheduler(InMemoryStatsStore())
        await scheduler.start()
        try:
            status = scheduler.get_status()
            assert status.started is True
            assert status.is_running is False
            assert status.last_run_time is None
            assert status.last_run_result is None
            assert status.config == IDLE_CONFIG
            # Beijing 10:30 on 2026-01-07, next 02:00 Beijing is 2026-01-07T18:00Z
            assert status.next_main_aggregation_time == datetime(
                2026, 1, 7, 18, 0, tzinfo=timezone.utc
            )
        finally:
            await scheduler.stop()


class TestManualTrigger:
    @pytest.mark.asyncio
    async def test_incremental_over_dirty_agents(self) -> None:
        """25 dirty agents with batch size 10 are all processed in one manual run."""
        store = InMemoryStatsStore()
        scheduler = _scheduler(store)
        for i in range(1, 26):
            scheduler.dirty_set.mark_dirty(f"A{i}")

        result = await scheduler.trigger_manual()

        assert result.success is True
        assert result.processed_count == 25
        assert result.failed_count == 0
        assert result.mode is RunMode.INCREMENTAL
        assert len(scheduler.dirty_set) == 0
        assert store.max_in_flight <= 10

        status = scheduler.get_status()
        assert status.is_running is False
        assert status.last_run_result == result
        assert status.last_run_time == NOW

    @pytest.mark.asyncio
    async def test_incremental_with_nothing_dirty_still_runs(self) -> None:
        scheduler = _scheduler(InMemoryStatsStore())

        result = await scheduler.trigger_manual()

        assert result.success is True
        assert result.processed_count == 0
        assert scheduler.get_status().last_run_result == result

    @pytest.mark.asyncio
    async def test_single_agent_is_full_recompute(self) -> None:
        store = InMemoryStatsStore([make_event("A9")])
        scheduler = _scheduler(store)
        scheduler.dirty_set.mark_dirty("A9")

        result = await scheduler.trigger_manual("A9")

        assert result.mode is RunMode.FULL
        assert result.processed_count == 1
        assert store.replaced_agents == ["A9"]
        # Full runs do not consume dirty markers
        assert "A9" in scheduler.dirty_set

    @pytest.mark.asyncio
    async def test_force_flag_is_accepted(self) -> None:
        scheduler = _scheduler(InMemoryStatsStore())
        result = await scheduler.trigger_manual(force=True)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_partial_failures_stay_dirty(self) -> None:
        store = InMemoryStatsStore()
        store.fail_agents = {"A2"}
        scheduler = _scheduler(store)
        for agent_id in ("A1", "A2", "A3"):
            scheduler.dirty_set.mark_dirty(agent_id)

        result = await scheduler.trigger_manual()

        assert result.success is True
        assert result.processed_count == 2
        assert result.failed_count == 1
        assert scheduler.dirty_set.drain_all() == ["A2"]

    @pytest.mark.asyncio
    async def test_unreachable_store_returns_failed_result(self) -> None:
        store = InMemoryStatsStore()
        store.unreachable = True
        scheduler = _scheduler(store)
        scheduler.dirty_set.mark_dirty("A1")

        result = await scheduler.trigger_manual()

        assert result.success is False
        assert result.errors[0].agent_id == RUN_LEVEL_AGENT_ID
        assert "A1" in scheduler.dirty_set
        assert scheduler.is_running is False


class TestRunGate:
    @pytest.mark.asyncio
    async def test_second_trigger_rejected_without_side_effects(self) -> None:
        store = BlockingStore()
        scheduler = _scheduler(store)
        scheduler.dirty_set.mark_dirty("A1")

        first = asyncio.create_task(scheduler.trigger_manual())
        await asyncio.wait_for(store.entered.wait(), 2.0)
        assert scheduler.is_running is True

        scheduler.dirty_set.mark_dirty("A2")
        last_run_time = scheduler.get_status().last_run_time

        with pytest.raises(AlreadyRunning):
            await scheduler.trigger_manual()
        with pytest.raises(AlreadyRunning):
            await scheduler.trigger_manual("A1")

        # Rejected triggers drained nothing and changed no status
        assert "A2" in scheduler.dirty_set
        assert scheduler.get_status().last_run_time == last_run_time
        assert scheduler.get_status().last_run_result is None

        store.release.set()
        result = await first
        assert result.processed_count == 1
        assert scheduler.is_running is False
        assert "A2" in scheduler.dirty_set

    @pytest.mark.asyncio
    async def test_timer_fire_skipped_while_running(self) -> None:
        store = BlockingStore()
        scheduler = _scheduler(store)
        scheduler.dirty_set.mark_dirty("A1")

        first = asyncio.create_task(scheduler.trigger_manual())
        await asyncio.wait_for(store.entered.wait(), 2.0)
        scheduler.dirty_set.mark_dirty("A2")

        assert await scheduler._fire_dirty() is None
        assert await scheduler._fire_main() is None
        assert "A2" in scheduler.dirty_set

        store.release.set()
        await first

    @pytest.mark.asyncio
    async def test_worker_exception_becomes_failed_result(self) -> None:
        store = InMemoryStatsStore()
        clock = FakeClock(NOW)
        dirty = DirtySet(clock=clock)
        worker = MagicMock(spec=AggregationWorker)
        worker.run = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = StatsScheduler(worker, dirty, store, IDLE_CONFIG, clock=clock)
        dirty.mark_dirty("A1")

        result = await scheduler.trigger_manual()

        assert result.success is False
        assert result.processed_count == 0
        assert result.errors[0].agent_id == RUN_LEVEL_AGENT_ID
        assert "RuntimeError: boom" in result.errors[0].message
        assert scheduler.is_running is False
        assert "A1" in dirty
        assert scheduler.get_status().last_run_result == result

        # Gate is released, the next run proceeds
        worker.run = AsyncMock(return_value=result)
        await scheduler.trigger_manual()
        worker.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_manual_run_without_result_raises(self) -> None:
        scheduler = _scheduler(InMemoryStatsStore())
        scheduler._launch = AsyncMock(return_value=None)  # type: ignore[method-assign]

        with pytest.raises(StatsError, match="produced no result"):
            await scheduler.trigger_manual("A1")


class TestTimers:
    @pytest.mark.asyncio
    async def test_dirty_fire_skips_empty_set(self) -> None:
        store = InMemoryStatsStore()
        scheduler = _scheduler(store)

        assert await scheduler._fire_dirty() is None

        status = scheduler.get_status()
        assert status.last_run_time is None
        assert status.last_run_result is None
        assert status.is_running is False
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_empty_dirty_fire_does_not_take_gate(self) -> None:
        store = InMemoryStatsStore()
        scheduler = _scheduler(store)

        fire = asyncio.create_task(scheduler._fire_dirty())
        await asyncio.sleep(0)
        assert scheduler.is_running is False

        result = await scheduler.trigger_manual("A1")
        assert result.processed_count == 1
        assert await fire is None

    @pytest.mark.asyncio
    async def test_dirty_fire_processes_marked_agents(self) -> None:
        scheduler = _scheduler(InMemoryStatsStore())
        scheduler.dirty_set.mark_dirty("A1")

        result = await scheduler._fire_dirty()

        assert result is not None
        assert result.mode is RunMode.INCREMENTAL
        assert result.processed_count == 1

    @pytest.mark.asyncio
    async def test_dirty_timer_fires(self) -> None:
        store = InMemoryStatsStore()
        config = SchedulerConfig(dirty_interval_ms=10, main_aggregation_hour=2, batch_size=10)
        scheduler = _scheduler(store, config)
        scheduler.dirty_set.mark_dirty("A1")

        await scheduler.start()
        try:
            await _wait_for(lambda: scheduler.get_status().last_run_result is not None)
        finally:
            await scheduler.stop()

        assert scheduler.get_status().last_run_result.processed_count == 1
        assert len(scheduler.dirty_set) == 0

    @pytest.mark.asyncio
    async def test_main_timer_runs_full_and_reschedules(self) -> None:
        # Beijing 01:59:59.95, so 02:00 is 50ms away
        clock = FakeClock(datetime(2026, 1, 6, 17, 59, 59, 950000, tzinfo=timezone.utc))
        store = InMemoryStatsStore([make_event("A1"), make_event("A2")])
        scheduler = _scheduler(store, IDLE_CONFIG, clock=clock)

        await scheduler.start()
        first_target = scheduler.get_status().next_main_aggregation_time
        assert first_target == datetime(2026, 1, 6, 18, 0, tzinfo=timezone.utc)
        try:
            await _wait_for(
                lambda: scheduler.get_status().next_main_aggregation_time != first_target
            )
        finally:
            await scheduler.stop()

        status = scheduler.get_status()
        assert status.next_main_aggregation_time == first_target + timedelta(days=1)
        assert status.last_run_result is not None
        assert status.last_run_result.mode is RunMode.FULL
        assert status.last_run_result.processed_count == 2
        assert sorted(store.replaced_agents) == ["A1", "A2"]

    @pytest.mark.asyncio
    async def test_stop_leaves_in_flight_run_running(self) -> None:
        store = BlockingStore()
        config = SchedulerConfig(dirty_interval_ms=10, main_aggregation_hour=2, batch_size=10)
        scheduler = _scheduler(store, config)
        scheduler.dirty_set.mark_dirty("A1")

        await scheduler.start()
        await asyncio.wait_for(store.entered.wait(), 2.0)

        await scheduler.stop()
        assert scheduler.started is False
        assert scheduler.is_running is True

        store.release.set()
        await asyncio.wait_for(scheduler.wait_until_idle(), 2.0)

        status = scheduler.get_status()
        assert status.is_running is False
        assert status.last_run_result is not None
        assert status.last_run_result.processed_count == 1
