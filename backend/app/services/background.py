"""
Background work primitives.

  • ObservationQueue     — bounded FIFO between the interceptor and the
    aggregator. submit() never suspends; when full the oldest observation is
    dropped and counted. One worker task drains it in submission order.
  • TaskTracker          — fire-and-forget coroutines (key usage updates)
    that are still awaited on shutdown and whose errors are logged.
  • MaintenanceScheduler — hourly / daily / monthly rollups and retention.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections import deque
from collections.abc import Coroutine
from typing import Any

from app.core.clock import Clock, Window, next_bucket, normalize, previous_bucket
from app.services.aggregates import RequestObservation
from app.services.aggregator import Aggregator
from app.services.counter_store import CounterStore
from app.services.metrics_store import MetricsStore

logger = logging.getLogger(__name__)


# ── Observation queue ───────────────────────────────────────
class ObservationQueue:
    def __init__(
        self,
        aggregator: Aggregator,
        maxsize: int = 10_000,
        poll_interval: float = 1.0,
    ) -> None:
        self._aggregator = aggregator
        self._items: deque[RequestObservation] = deque(maxlen=maxsize)
        self._wakeup = asyncio.Event()
        self._poll_interval = poll_interval
        self._task: asyncio.Task[None] | None = None
        self.submitted = 0
        self.dropped_observations = 0

    def __len__(self) -> int:
        return len(self._items)

    def submit(self, obs: RequestObservation) -> None:
        if len(self._items) == self._items.maxlen:
            self.dropped_observations += 1
        self._items.append(obs)
        self.submitted += 1
        self._wakeup.set()

    async def drain(self) -> int:
        """Feed every queued observation to the aggregator, oldest first."""
        drained = 0
        while self._items:
            await self._aggregator.record(self._items.popleft())
            drained += 1
        return drained

    async def run(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            try:
                await self.drain()
                # Time trigger still applies when traffic stops
                if self._aggregator.should_flush():
                    await self._aggregator.flush()
            except Exception:
                logger.exception("Observation worker iteration failed")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="observation-worker")

    async def stop(self) -> None:
        """Stop the worker, then drain and flush what is left."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        await self._aggregator.flush()


# ── Fire-and-forget tasks ───────────────────────────────────
class TaskTracker:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failed = 0

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ── Rollups and retention ───────────────────────────────────
class MaintenanceScheduler:
    """
    Runs on every tick:
      • new hour  → roll the previous hour's minute rows into an hour row
      • new day   → roll the previous day's hour rows into a day row,
                    purge rows past retention, drop expired counters
      • new month → roll the previous month's day rows into a month row

    Boundaries are detected `grace` seconds late so minute rows still being
    flushed for the closing bucket land before it is rolled up.

    On the first tick the hourly rollup covers everything since the start
    of the previous day; rollups are idempotent, so this only fills gaps
    left by downtime.
    """

    def __init__(
        self,
        store: MetricsStore,
        counters: CounterStore,
        clock: Clock,
        retention: dict[Window, datetime.timedelta],
        interval: float = 60.0,
        grace: float = 0.0,
    ) -> None:
        self._store = store
        self._counters = counters
        self._clock = clock
        self._retention = retention
        self._interval = interval
        self._grace = datetime.timedelta(seconds=grace)
        self._task: asyncio.Task[None] | None = None
        self._seen: dict[Window, datetime.datetime] = {}
        self.purged_rows = 0

    def _crossed(self, window: Window, now: datetime.datetime) -> bool:
        current = normalize(now, window)
        crossed = self._seen.get(window) != current
        self._seen[window] = current
        return crossed

    async def tick(self) -> None:
        now = self._clock.now() - self._grace
        first_run = not self._seen

        if self._crossed(Window.HOUR, now):
            if first_run:
                start = previous_bucket(now, Window.DAY)
            else:
                start = previous_bucket(now, Window.HOUR)
            await self._store.rollup(Window.MINUTE, Window.HOUR, start, normalize(now, Window.HOUR))

        if self._crossed(Window.DAY, now):
            day_start = previous_bucket(now, Window.DAY)
            await self._store.rollup(Window.HOUR, Window.DAY, day_start, next_bucket(day_start, Window.DAY))
            await self.purge(now)

        if self._crossed(Window.MONTH, now):
            month_start = previous_bucket(now, Window.MONTH)
            await self._store.rollup(
                Window.DAY, Window.MONTH, month_start, next_bucket(month_start, Window.MONTH),
            )

    async def purge(self, now: datetime.datetime) -> int:
        removed = 0
        for window, keep in self._retention.items():
            removed += await self._store.purge(now - keep, window)
        expired_counters = await self._counters.purge_expired()
        self.purged_rows += removed
        logger.info("Retention purge removed %d rows, %d expired counters", removed, expired_counters)
        return removed

    async def run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Maintenance tick failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="metrics-maintenance")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
