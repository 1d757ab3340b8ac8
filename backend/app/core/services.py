"""
Service composition.

Every long-lived component is built here once, wired to one clock and one
set of stores, and hung on app.state.services by create_app(). Nothing in
the request path reaches for a module-level singleton.

Back-ends follow the settings:
  • DATABASE_URL set   → SQL key registry, metrics store and webhook store
  • DATABASE_URL unset → in-memory equivalents (dev and tests)
  • counter_backend    → memory | redis | sql rate-limit counters
"""

from __future__ import annotations

import datetime
import logging
import random
from dataclasses import dataclass

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.clock import Clock, Window
from app.core.config import Settings
from app.core.database import build_engine, build_session_factory
from app.services.aggregator import Aggregator
from app.services.api_keys import APIKeyRegistry, MemoryAPIKeyRepository, SQLAPIKeyRepository
from app.services.background import MaintenanceScheduler, ObservationQueue, TaskTracker
from app.services.counter_store import (
    CounterStore,
    MemoryCounterStore,
    RedisCounterStore,
    SQLCounterStore,
)
from app.services.metrics_store import MemoryMetricsStore, MetricsStore, SQLMetricsStore
from app.services.rate_limiter import RateLimiter, RateLimitPolicy
from app.services.webhooks import (
    MemoryWebhookRepository,
    RetryPolicy,
    SQLWebhookRepository,
    WebhookDispatcher,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    clock: Clock
    counters: CounterStore
    limiter: RateLimiter
    keys: APIKeyRegistry
    store: MetricsStore
    aggregator: Aggregator
    queue: ObservationQueue
    tasks: TaskTracker
    dispatcher: WebhookDispatcher
    scheduler: MaintenanceScheduler
    http_client: httpx.AsyncClient
    engine: AsyncEngine | None = None
    sessions: async_sessionmaker[AsyncSession] | None = None
    redis: Redis | None = None

    def start(self) -> None:
        """Start the background workers. Needs a running event loop."""
        self.queue.start()
        self.dispatcher.start()
        self.scheduler.start()

    async def stop(self) -> None:
        """Stop workers, drain pending observations, release connections."""
        await self.scheduler.stop()
        await self.dispatcher.stop()
        await self.tasks.wait_idle()
        await self.queue.stop()
        await self.http_client.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database engine disposed ✓")


def _build_counters(
    settings: Settings,
    clock: Clock,
    sessions: async_sessionmaker[AsyncSession] | None,
) -> tuple[CounterStore, Redis | None]:
    backend = settings.counter_backend
    if backend == "redis":
        if not settings.REDIS_URL:
            raise ValueError("COUNTER_BACKEND=redis requires REDIS_URL")
        client = Redis.from_url(settings.REDIS_URL)
        return RedisCounterStore(client, clock), client
    if backend == "sql":
        if sessions is None:
            raise ValueError("COUNTER_BACKEND=sql requires DATABASE_URL")
        return SQLCounterStore(sessions, clock), None
    return MemoryCounterStore(clock), None


def build_services(
    settings: Settings,
    clock: Clock | None = None,
    http_client: httpx.AsyncClient | None = None,
    rng: random.Random | None = None,
) -> Services:
    """Compose every component. Opens no connections."""
    clock = clock or Clock()

    engine: AsyncEngine | None = None
    sessions: async_sessionmaker[AsyncSession] | None = None
    if settings.DATABASE_URL:
        engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
        sessions = build_session_factory(engine)

    counters, redis_client = _build_counters(settings, clock, sessions)
    limiter = RateLimiter(
        counters,
        clock,
        RateLimitPolicy.from_settings(settings),
        timeout=settings.COUNTER_TIMEOUT_SECONDS,
    )

    if sessions is not None:
        keys = APIKeyRegistry(SQLAPIKeyRepository(sessions), clock)
        store: MetricsStore = SQLMetricsStore(sessions, clock)
        webhook_repository = SQLWebhookRepository(sessions)
    else:
        keys = APIKeyRegistry(MemoryAPIKeyRepository(), clock)
        store = MemoryMetricsStore(clock)
        webhook_repository = MemoryWebhookRepository()

    aggregator = Aggregator(
        store,
        clock,
        max_live=settings.MAX_LIVE_AGGREGATES,
        flush_interval=settings.FLUSH_INTERVAL_SECONDS,
        store_timeout=settings.STORE_TIMEOUT_SECONDS,
    )
    queue = ObservationQueue(aggregator, maxsize=settings.OBSERVATION_QUEUE_SIZE)

    http_client = http_client or httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
    dispatcher = WebhookDispatcher(
        webhook_repository,
        limiter,
        http_client,
        clock,
        submit=queue.submit,
        policy=RetryPolicy.from_settings(settings),
        timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
        rng=rng,
        user_agent=settings.WEBHOOK_USER_AGENT,
        poll_interval=settings.WEBHOOK_POLL_INTERVAL_SECONDS,
    )

    scheduler = MaintenanceScheduler(
        store,
        counters,
        clock,
        retention={
            Window.MINUTE: datetime.timedelta(days=settings.MINUTE_RETENTION_DAYS),
            Window.HOUR: datetime.timedelta(days=settings.HOUR_RETENTION_DAYS),
            Window.DAY: datetime.timedelta(days=settings.DAY_RETENTION_DAYS),
            Window.MONTH: datetime.timedelta(days=settings.MONTH_RETENTION_DAYS),
        },
        interval=settings.MAINTENANCE_INTERVAL_SECONDS,
        # Minute rows may still be in the aggregator or in flight to the store
        grace=settings.FLUSH_INTERVAL_SECONDS + settings.STORE_TIMEOUT_SECONDS,
    )

    logger.info(
        "Services built: counters=%s stores=%s",
        settings.counter_backend,
        "sql" if sessions is not None else "memory",
    )
    return Services(
        settings=settings,
        clock=clock,
        counters=counters,
        limiter=limiter,
        keys=keys,
        store=store,
        aggregator=aggregator,
        queue=queue,
        tasks=TaskTracker(),
        dispatcher=dispatcher,
        scheduler=scheduler,
        http_client=http_client,
        engine=engine,
        sessions=sessions,
        redis=redis_client,
    )
