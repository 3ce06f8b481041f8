"""Periodic driver for the reconciliation engine.

Two loops run as asyncio tasks: the regular cycle (stuck uploads,
missing events, orphaned intents) every ``reconciliation_interval`` and
the orphaned-object cycle every ``orphan_cleanup_interval``.  Cycles in
one scheduler never overlap.  A regular tick that finds a cycle in
flight is skipped; an orphan tick waits for the lock instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from ingestor.reconciliation.base import PassResult
from ingestor.reconciliation.engine import ReconciliationEngine

logger = logging.getLogger(__name__)

PassFn = Callable[[], Awaitable[PassResult]]


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class CycleReport:
    """Outcome of one reconciliation cycle.

    Attributes:
        results: One :class:`PassResult` per pass that completed.
        errors: ``"<pass>: <message>"`` for each pass that raised.
        exceptions: The exceptions behind :attr:`errors`, in order.
        duration_seconds: Wall time of the cycle.
    """

    results: list[PassResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    exceptions: list[Exception] = field(default_factory=list, repr=False)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.errors


class ReconciliationScheduler:
    """Start, stop and trigger reconciliation cycles for one instance.

    Usage::

        scheduler = ReconciliationScheduler(engine)
        await scheduler.start()
        ...
        await scheduler.stop(timeout=30)
    """

    def __init__(self, engine: ReconciliationEngine) -> None:
        self._engine = engine
        self._config = engine.config
        self._state = SchedulerState.STOPPED
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping: asyncio.Task[None] | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Start both loops.  Returns False if the scheduler was already running."""
        if self._state is SchedulerState.RUNNING:
            logger.warning("Reconciliation scheduler already running")
            return False

        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(
                self._loop(self._config.reconciliation_interval, self.run_cycle),
                name="reconciliation-cycle",
            ),
            asyncio.create_task(
                self._loop(self._config.orphan_cleanup_interval, self.run_orphan_cycle),
                name="orphan-cleanup-cycle",
            ),
        ]
        self._state = SchedulerState.RUNNING
        logger.info(
            "Reconciliation scheduler started (every %.0fs, orphan cleanup every %.0fs)",
            self._config.reconciliation_interval,
            self._config.orphan_cleanup_interval,
        )
        return True

    async def stop(self, timeout: float | None = None) -> None:
        """Stop both loops, letting an in-flight cycle finish.

        If *timeout* elapses first, the in-flight cycle is cancelled.
        No cycle fires after this returns.  Concurrent callers share one
        shutdown; the first caller's *timeout* applies.
        """
        if self._state is SchedulerState.STOPPED:
            return
        if self._stopping is None:
            self._stopping = asyncio.create_task(
                self._shutdown(timeout), name="reconciliation-shutdown"
            )
        await asyncio.shield(self._stopping)

    async def _shutdown(self, timeout: float | None) -> None:
        self._stop_event.set()
        tasks, self._tasks = self._tasks, []
        try:
            if tasks:
                _, pending = await asyncio.wait(tasks, timeout=timeout)
                if pending:
                    logger.warning(
                        "Cancelling %d reconciliation task(s) after %ss", len(pending), timeout
                    )
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
        finally:
            self._state = SchedulerState.STOPPED
            self._stopping = None
        logger.info("Reconciliation scheduler stopped")

    async def trigger_now(self, raise_errors: bool = True) -> CycleReport:
        """Run all four passes once, waiting for any in-flight cycle first.

        The running state is left unchanged.

        Raises:
            Exception: The first pass exception, after every pass has run,
                when *raise_errors* is set.
        """
        async with self._lock:
            report = await self._run_passes(
                [
                    ("stuck_uploads", self._engine.reconcile_stuck_uploads),
                    ("missing_events", self._engine.reconcile_missing_events),
                    ("orphaned_intents", self._engine.reconcile_orphaned_intents),
                    ("orphaned_objects", self._engine.reconcile_orphaned_objects),
                ]
            )
        if raise_errors and report.exceptions:
            raise report.exceptions[0]
        return report

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport | None:
        """Run the regular cycle, or return None if another cycle is in flight."""
        if self._lock.locked():
            logger.info("Reconciliation cycle already in progress, skipping")
            return None
        async with self._lock:
            return await self._run_passes(
                [
                    ("stuck_uploads", self._engine.reconcile_stuck_uploads),
                    ("missing_events", self._engine.reconcile_missing_events),
                    ("orphaned_intents", self._engine.reconcile_orphaned_intents),
                ]
            )

    async def run_orphan_cycle(self) -> CycleReport | None:
        """Run the orphaned-object cycle once any in-flight cycle finishes.

        Returns None if the scheduler began stopping while this cycle waited.
        """
        if self._lock.locked():
            logger.info("Orphan cleanup waiting for the cycle in progress")
        async with self._lock:
            if self._state is SchedulerState.RUNNING and self._stop_event.is_set():
                logger.info("Orphan cleanup abandoned, scheduler is stopping")
                return None
            return await self._run_passes(
                [("orphaned_objects", self._engine.reconcile_orphaned_objects)]
            )

    async def _run_passes(self, passes: list[tuple[str, PassFn]]) -> CycleReport:
        report = CycleReport()
        started = time.monotonic()
        for name, run_pass in passes:
            try:
                report.results.append(await run_pass())
            except Exception as exc:
                logger.exception("Reconciliation pass %s crashed", name)
                report.errors.append(f"{name}: {exc}")
                report.exceptions.append(exc)
        report.duration_seconds = time.monotonic() - started
        logger.info(
            "Reconciliation cycle complete: %d pass(es), %d changed, %d error(s) (%.2fs)",
            len(report.results),
            sum(r.changed for r in report.results),
            len(report.errors),
            report.duration_seconds,
        )
        return report

    async def _loop(self, interval: float, cycle: Callable[[], Awaitable[CycleReport | None]]) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                try:
                    await cycle()
                except Exception:
                    logger.exception("Reconciliation cycle failed, retrying next tick")
