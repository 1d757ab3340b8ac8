"""
Expiring atomic counters used by the rate limiter.

Three interchangeable back-ends:
  • MemoryCounterStore — per-process map with expiring entries (dev, tests,
    single worker).
  • RedisCounterStore  — INCR + EXPIREAT; shared by every worker process.
  • SQLCounterStore    — INSERT … ON CONFLICT DO UPDATE … RETURNING on the
    rate_counters table, for deployments without Redis.

Contract:
  • increment_and_get() is atomic: two concurrent calls on one key never
    return the same value.
  • The first increment sets expiry to the end of the aligned bucket
    (bucket start + window), so entries vanish when their window closes.
  • Any back-end failure surfaces as TransientStoreError; callers decide
    whether to fail open.
"""

from __future__ import annotations

import datetime
import fnmatch
import logging
from dataclasses import dataclass
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import case, delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock
from app.models.rate_counter import RateCounter

logger = logging.getLogger(__name__)


class TransientStoreError(Exception):
    """Raised when a counter or metrics store cannot be reached in time."""


def bucket_end(now_epoch: float, window_seconds: int) -> int:
    """Epoch second at which the aligned bucket containing `now_epoch` closes."""
    return (int(now_epoch) // window_seconds + 1) * window_seconds


class CounterStore(Protocol):
    async def increment_and_get(self, key: str, window_seconds: int) -> int: ...

    async def get(self, key: str) -> int: ...

    async def invalidate_pattern(self, pattern: str) -> int: ...

    async def purge_expired(self) -> int: ...

    async def count_keys(self, pattern: str) -> dict[str, int]: ...


def _group_by_scope(keys: list[str]) -> dict[str, int]:
    """Count "rate:<scope>:…" keys per scope."""
    grouped: dict[str, int] = {}
    for key in keys:
        parts = key.split(":")
        if len(parts) >= 3:
            grouped[parts[1]] = grouped.get(parts[1], 0) + 1
    return grouped


# ── In-process ──────────────────────────────────────────────
@dataclass(slots=True)
class _Entry:
    count: int
    expires_at: float


class MemoryCounterStore:
    """Local map with expiring entries.

    Every operation runs without suspending, so it is atomic with respect
    to other coroutines on the same event loop.
    """

    # Sweep expired entries every N increments
    SWEEP_EVERY = 1_000

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._ops = 0

    def _now(self) -> float:
        return self._clock.now().timestamp()

    async def increment_and_get(self, key: str, window_seconds: int) -> int:
        now = self._now()
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= now:
            entry = _Entry(count=0, expires_at=bucket_end(now, window_seconds))
            self._entries[key] = entry
        entry.count += 1

        self._ops += 1
        if self._ops % self.SWEEP_EVERY == 0:
            self._sweep(now)
        return entry.count

    async def get(self, key: str) -> int:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self._now():
            return 0
        return entry.count

    async def invalidate_pattern(self, pattern: str) -> int:
        doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def purge_expired(self) -> int:
        return self._sweep(self._now())

    async def count_keys(self, pattern: str) -> dict[str, int]:
        now = self._now()
        live = [
            key for key, entry in self._entries.items()
            if entry.expires_at > now and fnmatch.fnmatchcase(key, pattern)
        ]
        return _group_by_scope(live)

    def _sweep(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


# ── Redis ───────────────────────────────────────────────────
class RedisCounterStore:
    """Counters shared by every worker through Redis."""

    def __init__(self, client: Redis, clock: Clock) -> None:
        self._client = client
        self._clock = clock

    async def increment_and_get(self, key: str, window_seconds: int) -> int:
        try:
            count = int(await self._client.incr(key))
            if count == 1:
                expires_at = bucket_end(self._clock.now().timestamp(), window_seconds)
                await self._client.expireat(key, expires_at)
            return count
        except (RedisError, OSError) as exc:
            raise TransientStoreError(f"redis increment failed for {key}") from exc

    async def get(self, key: str) -> int:
        try:
            value = await self._client.get(key)
        except (RedisError, OSError) as exc:
            raise TransientStoreError(f"redis read failed for {key}") from exc
        return int(value) if value is not None else 0

    async def invalidate_pattern(self, pattern: str) -> int:
        try:
            keys = [key async for key in self._client.scan_iter(match=pattern)]
            if not keys:
                return 0
            return int(await self._client.delete(*keys))
        except (RedisError, OSError) as exc:
            raise TransientStoreError(f"redis invalidate failed for {pattern}") from exc

    async def purge_expired(self) -> int:
        # Redis expires keys itself
        return 0

    async def count_keys(self, pattern: str) -> dict[str, int]:
        try:
            keys = [
                key.decode() if isinstance(key, bytes) else key
                async for key in self._client.scan_iter(match=pattern)
            ]
        except (RedisError, OSError) as exc:
            raise TransientStoreError(f"redis scan failed for {pattern}") from exc
        return _group_by_scope(keys)


# ── Postgres ────────────────────────────────────────────────
def _like_pattern(glob: str) -> str:
    """Translate a Redis-style glob into a SQL LIKE pattern."""
    escaped = glob.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%").replace("?", "_")


class SQLCounterStore:
    """Counters in the rate_counters table."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession], clock: Clock) -> None:
        self._sessions = sessions
        self._clock = clock

    async def increment_and_get(self, key: str, window_seconds: int) -> int:
        now = self._clock.now()
        expires_at = datetime.datetime.fromtimestamp(
            bucket_end(now.timestamp(), window_seconds), tz=datetime.timezone.utc,
        )
        expired = RateCounter.expires_at <= now

        stmt = pg_insert(RateCounter).values(
            key=key,
            count=1,
            expires_at=expires_at,
        )
        # An expired row restarts at 1 with the new bucket's expiry
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={
                "count": case((expired, 1), else_=RateCounter.count + 1),
                "expires_at": case((expired, stmt.excluded.expires_at), else_=RateCounter.expires_at),
            },
        ).returning(RateCounter.count)

        try:
            async with self._sessions() as session:
                count = (await session.execute(stmt)).scalar_one()
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"counter increment failed for {key}") from exc
        return int(count)

    async def get(self, key: str) -> int:
        stmt = select(RateCounter.count).where(
            RateCounter.key == key,
            RateCounter.expires_at > self._clock.now(),
        )
        try:
            async with self._sessions() as session:
                value = (await session.execute(stmt)).scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"counter read failed for {key}") from exc
        return int(value) if value is not None else 0

    async def invalidate_pattern(self, pattern: str) -> int:
        stmt = delete(RateCounter).where(
            RateCounter.key.like(_like_pattern(pattern), escape="\\"),
        )
        return await self._delete(stmt)

    async def purge_expired(self) -> int:
        stmt = delete(RateCounter).where(RateCounter.expires_at <= self._clock.now())
        return await self._delete(stmt)

    async def count_keys(self, pattern: str) -> dict[str, int]:
        stmt = select(RateCounter.key).where(
            RateCounter.key.like(_like_pattern(pattern), escape="\\"),
            RateCounter.expires_at > self._clock.now(),
        )
        try:
            async with self._sessions() as session:
                keys = list((await session.execute(stmt)).scalars())
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError(f"counter scan failed for {pattern}") from exc
        return _group_by_scope(keys)

    async def _delete(self, stmt) -> int:  # type: ignore[no-untyped-def]
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise TransientStoreError("counter delete failed") from exc
        return int(result.rowcount or 0)
