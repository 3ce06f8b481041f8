"""Tests for ReconciliationScheduler lifecycle, triggering and isolation."""

from __future__ import annotations

import asyncio

import pytest

from ingestor.models import ReconciliationConfig
from ingestor.reconciliation.base import PassResult
from ingestor.reconciliation.scheduler import ReconciliationScheduler, SchedulerState


class ScriptedEngine:
    """Engine double whose passes record calls and can block or raise."""

    def __init__(self, config: ReconciliationConfig | None = None) -> None:
        self.config = config or ReconciliationConfig()
        self.calls: list[str] = []
        self.failing: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.active = 0
        self.max_active = 0

    async def _pass(self, name: str) -> PassResult:
        self.calls.append(name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if name in self.failing:
                raise RuntimeError(f"{name} exploded")
            return PassResult(name, examined=1, advanced=1)
        finally:
            self.active -= 1

    async def reconcile_stuck_uploads(self):
        return await self._pass("stuck_uploads")

    async def reconcile_missing_events(self):
        return await self._pass("missing_events")

    async def reconcile_orphaned_intents(self):
        return await self._pass("orphaned_intents")

    async def reconcile_orphaned_objects(self):
        return await self._pass("orphaned_objects")


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def fast_engine() -> ScriptedEngine:
    return ScriptedEngine(
        ReconciliationConfig(reconciliation_interval=0.02, orphan_cleanup_interval=0.05)
    )


class TestLifecycle:
    async def test_start_and_stop(self, engine):
        scheduler = ReconciliationScheduler(engine)
        assert scheduler.state is SchedulerState.STOPPED

        assert await scheduler.start()
        assert scheduler.is_running
        await scheduler.stop()
        assert scheduler.state is SchedulerState.STOPPED

    async def test_start_twice_is_a_no_op(self, engine):
        scheduler = ReconciliationScheduler(engine)
        assert await scheduler.start()
        assert not await scheduler.start()
        await scheduler.stop()

    async def test_stop_when_stopped_is_a_no_op(self, engine):
        await ReconciliationScheduler(engine).stop()

    async def test_loops_fire_on_their_intervals(self, fast_engine):
        scheduler = ReconciliationScheduler(fast_engine)
        await scheduler.start()
        await asyncio.sleep(0.2)
        await scheduler.stop()

        assert "stuck_uploads" in fast_engine.calls
        assert "orphaned_objects" in fast_engine.calls

    async def test_nothing_fires_after_stop(self, fast_engine):
        scheduler = ReconciliationScheduler(fast_engine)
        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()
        count = len(fast_engine.calls)

        await asyncio.sleep(0.1)
        assert len(fast_engine.calls) == count

    async def test_stop_waits_for_in_flight_cycle(self, fast_engine):
        fast_engine.gate = asyncio.Event()
        scheduler = ReconciliationScheduler(fast_engine)
        await scheduler.start()
        while fast_engine.active == 0:
            await asyncio.sleep(0.01)

        stopping = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()

        fast_engine.gate.set()
        await stopping
        assert fast_engine.active == 0

    async def test_stop_timeout_cancels_in_flight_cycle(self, fast_engine):
        fast_engine.gate = asyncio.Event()
        scheduler = ReconciliationScheduler(fast_engine)
        await scheduler.start()
        while fast_engine.active == 0:
            await asyncio.sleep(0.01)

        await scheduler.stop(timeout=0.05)

        assert scheduler.state is SchedulerState.STOPPED
        assert fast_engine.active == 0

    async def test_concurrent_stops_share_one_shutdown(self, fast_engine):
        scheduler = ReconciliationScheduler(fast_engine)
        await scheduler.start()

        await asyncio.gather(scheduler.stop(), scheduler.stop())

        assert scheduler.state is SchedulerState.STOPPED

    async def test_concurrent_stops_wait_for_in_flight_cycle(self, fast_engine):
        fast_engine.gate = asyncio.Event()
        scheduler = ReconciliationScheduler(fast_engine)
        await scheduler.start()
        while fast_engine.active == 0:
            await asyncio.sleep(0.01)

        first = asyncio.create_task(scheduler.stop())
        second = asyncio.create_task(scheduler.stop())
        await asyncio.sleep(0.05)
        assert not first.done() and not second.done()

        fast_engine.gate.set()
        await asyncio.gather(first, second)
        assert scheduler.state is SchedulerState.STOPPED
        assert fast_engine.active == 0

    async def test_restart_after_stop(self, fast_engine):
        scheduler = ReconciliationScheduler(fast_engine)
        await scheduler.start()
        await scheduler.stop()
        fast_engine.calls.clear()

        assert await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()
        assert fast_engine.calls


class TestTriggerNow:
    async def test_runs_all_four_passes_in_order(self, engine):
        report = await ReconciliationScheduler(engine).trigger_now()

        assert engine.calls == [
            "stuck_uploads",
            "missing_events",
            "orphaned_intents",
            "orphaned_objects",
        ]
        assert report.ok
        assert [r.name for r in report.results] == engine.calls

    async def test_does_not_change_running_state(self, engine):
        scheduler = ReconciliationScheduler(engine)
        await scheduler.trigger_now()
        assert scheduler.state is SchedulerState.STOPPED

    async def test_failing_pass_does_not_stop_the_others(self, engine):
        engine.failing = {"missing_events"}
        report = await ReconciliationScheduler(engine).trigger_now(raise_errors=False)

        assert len(engine.calls) == 4
        assert len(report.results) == 3
        assert report.errors == ["missing_events: missing_events exploded"]
        assert not report.ok

    async def test_raises_first_error_after_all_passes(self, engine):
        engine.failing = {"stuck_uploads", "orphaned_objects"}
        with pytest.raises(RuntimeError, match="stuck_uploads exploded"):
            await ReconciliationScheduler(engine).trigger_now()
        assert len(engine.calls) == 4

    async def test_waits_for_in_flight_cycle(self, engine):
        engine.gate = asyncio.Event()
        scheduler = ReconciliationScheduler(engine)
        cycle = asyncio.create_task(scheduler.run_cycle())
        while engine.active == 0:
            await asyncio.sleep(0.01)

        triggered = asyncio.create_task(scheduler.trigger_now())
        await asyncio.sleep(0.05)
        assert not triggered.done()

        engine.gate.set()
        await cycle
        await triggered
        assert engine.max_active == 1
        assert len(engine.calls) == 7


class TestCycles:
    async def test_regular_cycle_skips_orphaned_objects(self, engine):
        report = await ReconciliationScheduler(engine).run_cycle()
        assert report is not None
        assert engine.calls == ["stuck_uploads", "missing_events", "orphaned_intents"]

    async def test_orphan_cycle(self, engine):
        await ReconciliationScheduler(engine).run_orphan_cycle()
        assert engine.calls == ["orphaned_objects"]

    async def test_overlapping_regular_tick_is_skipped(self, engine):
        engine.gate = asyncio.Event()
        scheduler = ReconciliationScheduler(engine)
        cycle = asyncio.create_task(scheduler.run_cycle())
        while engine.active == 0:
            await asyncio.sleep(0.01)

        assert await scheduler.run_cycle() is None

        engine.gate.set()
        await cycle
        assert engine.calls == ["stuck_uploads", "missing_events", "orphaned_intents"]

    async def test_orphan_cycle_waits_for_in_flight_cycle(self, engine):
        engine.gate = asyncio.Event()
        scheduler = ReconciliationScheduler(engine)
        cycle = asyncio.create_task(scheduler.run_cycle())
        while engine.active == 0:
            await asyncio.sleep(0.01)

        orphans = asyncio.create_task(scheduler.run_orphan_cycle())
        await asyncio.sleep(0.05)
        assert not orphans.done()
        assert "orphaned_objects" not in engine.calls

        engine.gate.set()
        await cycle
        report = await orphans
        assert report is not None
        assert engine.calls[-1] == "orphaned_objects"
        assert engine.max_active == 1

    async def test_long_regular_cycle_does_not_starve_orphan_cleanup(self):
        engine = ScriptedEngine(
            ReconciliationConfig(reconciliation_interval=0.05, orphan_cleanup_interval=0.2)
        )
        engine.gate = asyncio.Event()
        scheduler = ReconciliationScheduler(engine)
        await scheduler.start()

        await asyncio.sleep(0.25)
        engine.gate.set()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert "orphaned_objects" in engine.calls
        assert engine.max_active == 1

    async def test_loop_survives_a_raising_cycle(self, fast_engine, caplog):
        scheduler = ReconciliationScheduler(fast_engine)
        attempts = 0

        async def broken_cycle():
            nonlocal attempts
            attempts += 1
            raise RuntimeError("store went away")

        scheduler.run_cycle = broken_cycle
        await scheduler.start()
        await asyncio.sleep(0.15)
        assert scheduler.is_running
        await scheduler.stop()

        assert attempts >= 2
        assert "orphaned_objects" in fast_engine.calls
        assert "Reconciliation cycle failed" in caplog.text

    async def test_loop_survives_failing_passes(self, fast_engine):
        fast_engine.failing = {"stuck_uploads", "orphaned_objects"}
        scheduler = ReconciliationScheduler(fast_engine)
        await scheduler.start()
        await asyncio.sleep(0.15)
        assert scheduler.is_running
        await scheduler.stop()

        assert fast_engine.calls.count("stuck_uploads") >= 2
