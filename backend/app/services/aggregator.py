"""
In-memory aggregation of request observations.

Owns `live`: one minute aggregate per (tenant, method, path, minute start).
Only the observation worker calls into it, so `live` has a single writer.

Flush triggers:
  • size — len(live) >= max_live
  • time — now - last_flush >= flush_interval

A flush swaps `live` for an empty map first, then upserts each aggregate
with a deadline. A failed or timed-out upsert is logged and counted in
`dropped_aggregates`; the rest of the flush carries on.
"""

from __future__ import annotations

import asyncio
import datetime
import logging

from app.core.clock import Clock, Window, normalize
from app.services.aggregates import Aggregate, RequestObservation, categorize_endpoint
from app.services.metrics_store import MetricsStore

logger = logging.getLogger(__name__)

LiveKey = tuple[str, str, str, datetime.datetime]


class Aggregator:
    def __init__(
        self,
        store: MetricsStore,
        clock: Clock,
        max_live: int = 1_000,
        flush_interval: float = 30.0,
        store_timeout: float = 5.0,
    ) -> None:
        self._store = store
        self._clock = clock
        self.max_live = max_live
        self.flush_interval = flush_interval
        self.store_timeout = store_timeout

        self.live: dict[LiveKey, Aggregate] = {}
        self.last_flush = clock.now()

        self.ingested = 0
        self.untracked = 0
        self.flushed_aggregates = 0
        self.dropped_aggregates = 0

    def ingest(self, obs: RequestObservation) -> bool:
        """Fold an observation into its live aggregate. Never suspends.

        Observations without a tenant cannot be attributed and are only
        counted.
        """
        if not obs.tenant:
            self.untracked += 1
            return False

        minute = normalize(obs.timestamp, Window.MINUTE)
        key = (obs.tenant, obs.method, obs.path, minute)
        aggregate = self.live.get(key)
        if aggregate is None:
            aggregate = Aggregate(
                tenant=obs.tenant,
                window=Window.MINUTE,
                method=obs.method,
                path=obs.path,
                bucket_start=minute,
                category=obs.category or categorize_endpoint(obs.path),
            )
            self.live[key] = aggregate
        aggregate.add(obs)
        self.ingested += 1
        return True

    def should_flush(self) -> bool:
        if len(self.live) >= self.max_live:
            return True
        elapsed = (self._clock.now() - self.last_flush).total_seconds()
        return bool(self.live) and elapsed >= self.flush_interval

    async def record(self, obs: RequestObservation) -> None:
        self.ingest(obs)
        if self.should_flush():
            await self.flush()

    async def flush(self) -> int:
        """Hand every live aggregate to the store. Returns how many were stored."""
        snapshot, self.live = self.live, {}
        self.last_flush = self._clock.now()
        if not snapshot:
            return 0

        stored = 0
        for aggregate in snapshot.values():
            try:
                await asyncio.wait_for(self._store.upsert(aggregate), timeout=self.store_timeout)
                stored += 1
            except asyncio.TimeoutError:
                self.dropped_aggregates += 1
                logger.warning("Upsert timed out for %s %s", aggregate.tenant, aggregate.endpoint)
            except Exception:
                self.dropped_aggregates += 1
                logger.exception("Upsert failed for %s %s", aggregate.tenant, aggregate.endpoint)

        self.flushed_aggregates += stored
        logger.debug("Flushed %d/%d aggregates", stored, len(snapshot))
        return stored
