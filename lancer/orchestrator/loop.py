"""Periodic execution primitives for the reconciliation loops.

SingleFlight
    Non-blocking try-lock. A tick that finds its loop's guard held is skipped,
    never queued and never run alongside the one in flight.

PollingLoop
    Fires a tick coroutine every ``interval_ms`` on a fixed schedule, whether
    or not the previous tick has finished. Stopping cancels the schedule and
    waits for any in-flight tick to finish on its own.

Reconciler
    Base class for the loops: wraps ``_tick`` with the guard and catches
    tick-level failures so a loop never dies on a bad tick.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class SingleFlight:
    """At most one holder at a time; acquisition never waits."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self):
        self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()


@dataclass
class TickReport:
    """What one tick did with the records it looked at."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    escalated: int = 0
    busy: bool = False  # the tick did not run because another was in flight
    error: Optional[str] = None  # tick-level failure

    @property
    def total(self) -> int:
        return self.processed + self.failed + self.skipped

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "escalated": self.escalated,
            "busy": self.busy,
            "error": self.error,
        }


class Reconciler:
    """A single-flight tick over a batch of records."""

    name = "reconciler"

    def __init__(self, batch_size: int = 5):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.guard = SingleFlight(self.name)

    async def tick(self) -> TickReport:
        if not self.guard.try_acquire():
            logger.debug(f"[{self.name}] previous tick still running, skipping")
            return TickReport(busy=True)
        report = TickReport()
        try:
            await self._tick(report)
        except Exception as e:
            # Ledger unreachable or similar: the next tick retries
            logger.exception(f"[{self.name}] tick failed: {e}")
            report.error = str(e)
        finally:
            self.guard.release()
        if report.total or report.error:
            logger.info(
                f"[{self.name}] tick: {report.processed} processed, {report.failed} failed, "
                f"{report.skipped} skipped"
            )
        return report

    async def _tick(self, report: TickReport):
        raise NotImplementedError


class PollingLoop:
    """Runs ``tick`` every ``interval_ms`` until stopped."""

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[object]],
        interval_ms: int,
        run_immediately: bool = True,
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.name = name
        self._tick = tick
        self.interval = interval_ms / 1000.0
        self.run_immediately = run_immediately
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self.fired = 0

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self):
        if self.running:
            return
        logger.info(f"[{self.name}] starting (every {self.interval:g}s)")
        self._timer = asyncio.get_running_loop().create_task(self._schedule())

    async def _schedule(self):
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            self._fire()
            await asyncio.sleep(self.interval)

    def _fire(self):
        self.fired += 1
        task = asyncio.get_running_loop().create_task(self._run_tick())
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_tick(self):
        try:
            await self._tick()
        except Exception as e:
            logger.exception(f"[{self.name}] tick raised: {e}")

    async def stop(self):
        """Cancel the schedule, then wait for in-flight ticks to finish."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        logger.info(f"[{self.name}] stopped")
