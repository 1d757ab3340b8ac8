"""
Durable store for request aggregates.

Storage primitives (per back-end):
  • upsert()        — merge a live minute aggregate into its persisted row
  • replace()       — overwrite rows (rollup output)
  • scan()          — rows of one window in a bucket range
  • rolled_until()  — end of the newest bucket persisted for a window
  • purge()         — retention

Queries built on top, shared by both back-ends:
  • rollup()         — minute→hour→day→month reduction, idempotent
  • dashboard()      — tenant summary for 1h / 24h / 7d / 30d
  • top_endpoints()  — busiest endpoints, ties broken by "METHOD path"
  • endpoint_usage(), endpoint_series(), key_usage()
  • export()         — raw rows of one window for download

Range scans read closed buckets of the coarsest rolled-up window first and
fall back to finer windows (down to minute rows) for the part of the range
that has not been rolled up yet. Ranges start on a boundary of their coarse
window.
"""

from __future__ import annotations

import abc
import datetime
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import COARSER, Clock, Window, next_bucket, normalize
from app.models.api_metric import APIMetric
from app.services.aggregates import SAMPLE_SIZE, Aggregate, combine

logger = logging.getLogger(__name__)

# range → (span, coarsest window used to answer it)
RANGE_SPECS: dict[str, tuple[datetime.timedelta, Window]] = {
    "1h": (datetime.timedelta(hours=1), Window.MINUTE),
    "24h": (datetime.timedelta(hours=24), Window.HOUR),
    "7d": (datetime.timedelta(days=7), Window.DAY),
    "30d": (datetime.timedelta(days=30), Window.DAY),
}

_FINER = {coarse: fine for fine, coarse in COARSER.items()}
_WINDOW_ORDER = [Window.MINUTE, Window.HOUR, Window.DAY, Window.MONTH]

_CENT = Decimal("0.01")


def error_rate(failed: int, total: int) -> Decimal:
    """Percentage of failed requests, 2 decimal places."""
    if not total:
        return Decimal("0.00")
    return (Decimal(failed) * 100 / Decimal(total)).quantize(_CENT, rounding=ROUND_HALF_UP)


def round_ms(value: float | None) -> int:
    if value is None:
        return 0
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True, slots=True)
class DashboardSummary:
    total_requests: int
    successful: int
    failed: int
    error_rate: Decimal
    avg_response_time: int
    total_bandwidth: int
    rate_limited: int
    requests_today: int


@dataclass(frozen=True, slots=True)
class EndpointStat:
    method: str
    path: str
    category: str
    requests: int
    errors: int
    avg_response_time: int
    error_rate: Decimal

    @property
    def endpoint(self) -> str:
        return f"{self.method} {self.path}"


@dataclass(frozen=True, slots=True)
class SeriesPoint:
    bucket_start: datetime.datetime
    requests: int
    errors: int
    avg_response_time: int
    p95: float | None


def _range(range_spec: str) -> tuple[datetime.timedelta, Window]:
    try:
        return RANGE_SPECS[range_spec]
    except KeyError:
        raise ValueError(f"range must be one of {sorted(RANGE_SPECS)}") from None


class MetricsStore(abc.ABC):
    def __init__(self, clock: Clock) -> None:
        self._clock = clock

    # ── Storage primitives ──────────────────────────────────
    @abc.abstractmethod
    async def upsert(self, aggregate: Aggregate) -> None:
        """Additive merge into the row with the same identity."""

    @abc.abstractmethod
    async def replace(self, aggregates: list[Aggregate]) -> None:
        """Write rows as given, overwriting existing ones."""

    @abc.abstractmethod
    async def scan(
        self,
        window: Window,
        start: datetime.datetime,
        end: datetime.datetime,
        tenant: str | None = None,
        method: str | None = None,
        path: str | None = None,
    ) -> list[Aggregate]:
        """Rows of `window` with start <= bucket_start < end."""

    @abc.abstractmethod
    async def rolled_until(self, tenant: str, window: Window) -> datetime.datetime | None:
        """End of the newest `window` bucket stored for `tenant`."""

    @abc.abstractmethod
    async def purge(self, older_than: datetime.datetime, window: Window | None = None) -> int:
        """Delete rows whose bucket starts before `older_than`."""

    # ── Rollup ──────────────────────────────────────────────
    async def rollup(
        self,
        from_window: Window,
        to_window: Window,
        range_start: datetime.datetime,
        range_end: datetime.datetime,
    ) -> int:
        """
        Reduce `from_window` rows into one `to_window` row per
        (tenant, method, path, to_bucket). The range is widened to whole
        `to_window` buckets; re-running it rewrites the same rows.

        Returns the number of rows written.
        """
        if _WINDOW_ORDER.index(to_window) <= _WINDOW_ORDER.index(from_window):
            raise ValueError(f"cannot roll {from_window.value} up into {to_window.value}")

        start = normalize(range_start, to_window)
        end = normalize(range_end, to_window)
        if end < range_end:
            end = next_bucket(range_end, to_window)

        parts = await self.scan(from_window, start, end)
        groups: dict[tuple[str, str, str, datetime.datetime], list[Aggregate]] = defaultdict(list)
        for part in parts:
            bucket = normalize(part.bucket_start, to_window)
            groups[(part.tenant, part.method, part.path, bucket)].append(part)

        results = [combine(group, to_window, key[3]) for key, group in groups.items()]
        if results:
            await self.replace(results)
        logger.info(
            "Rolled %d %s rows into %d %s rows for [%s, %s)",
            len(parts), from_window.value, len(results), to_window.value,
            start.isoformat(), end.isoformat(),
        )
        return len(results)

    # ── Range scans ─────────────────────────────────────────
    async def _plan(
        self,
        tenant: str,
        start: datetime.datetime,
        coarse: Window,
    ) -> list[tuple[Window, datetime.datetime, datetime.datetime]]:
        now = self._clock.now()
        cursor = normalize(start, coarse)
        segments: list[tuple[Window, datetime.datetime, datetime.datetime]] = []

        window = coarse
        while window is not Window.MINUTE:
            rolled = await self.rolled_until(tenant, window)
            if rolled is not None:
                end = min(normalize(now, window), rolled)
                if end > cursor:
                    segments.append((window, cursor, end))
                    cursor = end
            window = _FINER[window]

        segments.append((Window.MINUTE, cursor, next_bucket(now, Window.MINUTE)))
        return segments

    async def _collect(
        self,
        tenant: str,
        start: datetime.datetime,
        coarse: Window,
        method: str | None = None,
        path: str | None = None,
    ) -> list[Aggregate]:
        rows: list[Aggregate] = []
        for window, seg_start, seg_end in await self._plan(tenant, start, coarse):
            rows += await self.scan(window, seg_start, seg_end, tenant=tenant, method=method, path=path)
        return rows

    async def _collect_range(self, tenant: str, range_spec: str, **filters: str | None) -> list[Aggregate]:
        span, coarse = _range(range_spec)
        return await self._collect(tenant, self._clock.now() - span, coarse, **filters)

    # ── Queries ─────────────────────────────────────────────
    async def dashboard(self, tenant: str, range_spec: str) -> DashboardSummary:
        rows = await self._collect_range(tenant, range_spec)
        today = await self._collect(tenant, normalize(self._clock.now(), Window.DAY), Window.HOUR)

        total = sum(r.total for r in rows)
        failed = sum(r.failed for r in rows)
        response_time_sum = sum(r.response_time_sum for r in rows)
        return DashboardSummary(
            total_requests=total,
            successful=sum(r.successful for r in rows),
            failed=failed,
            error_rate=error_rate(failed, total),
            avg_response_time=round_ms(response_time_sum / total) if total else 0,
            total_bandwidth=sum(r.bandwidth for r in rows),
            rate_limited=sum(r.rate_limited for r in rows),
            requests_today=sum(r.total for r in today),
        )

    async def top_endpoints(self, tenant: str, range_spec: str, limit: int = 10) -> list[EndpointStat]:
        grouped: dict[tuple[str, str], list[Aggregate]] = defaultdict(list)
        for row in await self._collect_range(tenant, range_spec):
            grouped[(row.method, row.path)].append(row)

        stats = []
        for (method, path), rows in grouped.items():
            requests = sum(r.total for r in rows)
            if requests <= 0:
                continue
            errors = sum(r.failed for r in rows)
            stats.append(EndpointStat(
                method=method,
                path=path,
                category=rows[0].category,
                requests=requests,
                errors=errors,
                avg_response_time=round_ms(sum(r.response_time_sum for r in rows) / requests),
                error_rate=error_rate(errors, requests),
            ))

        stats.sort(key=lambda s: (-s.requests, s.endpoint))
        return stats[:limit]

    async def endpoint_usage(
        self,
        tenant: str,
        method: str,
        path: str,
        range_spec: str,
    ) -> Aggregate | None:
        """One endpoint's counters over the range, combined into a single aggregate."""
        span, coarse = _range(range_spec)
        start = normalize(self._clock.now() - span, coarse)
        rows = await self._collect(tenant, start, coarse, method=method, path=path)
        if not rows:
            return None
        return combine(rows, coarse, start)

    async def endpoint_series(
        self,
        tenant: str,
        window: Window,
        start: datetime.datetime,
        end: datetime.datetime,
        method: str | None = None,
        path: str | None = None,
    ) -> list[SeriesPoint]:
        """Per-bucket totals of `window` rows, optionally for one endpoint."""
        by_bucket: dict[datetime.datetime, list[Aggregate]] = defaultdict(list)
        for row in await self.scan(window, start, end, tenant=tenant, method=method, path=path):
            by_bucket[row.bucket_start].append(row)

        points = []
        for bucket in sorted(by_bucket):
            merged = combine(by_bucket[bucket], window, bucket)
            points.append(SeriesPoint(
                bucket_start=bucket,
                requests=merged.total,
                errors=merged.failed,
                avg_response_time=round_ms(merged.avg_response_time),
                p95=merged.percentiles()["p95"],
            ))
        return points

    async def export(
        self,
        tenant: str,
        window: Window,
        start: datetime.datetime,
        end: datetime.datetime,
        paths: Iterable[str] = (),
        limit: int = 10_000,
    ) -> list[Aggregate]:
        """One hotel's `window` rows in [start, end), newest bucket first, at most `limit`."""
        rows = await self.scan(window, start, end, tenant=tenant)
        wanted = set(paths)
        if wanted:
            rows = [row for row in rows if row.path in wanted]
        rows.sort(key=lambda row: (-row.bucket_start.timestamp(), row.endpoint))
        return rows[:limit]

    async def key_usage(self, tenant: str, range_spec: str) -> dict[str, int]:
        """Requests per API key id over the range."""
        usage: dict[str, int] = defaultdict(int)
        for row in await self._collect_range(tenant, range_spec):
            for key_id, count in row.per_key.items():
                usage[key_id] += count
        return dict(usage)


# ── In-process ──────────────────────────────────────────────
class MemoryMetricsStore(MetricsStore):
    """Rows in a dict keyed by aggregate identity. Dev and tests."""

    def __init__(self, clock: Clock) -> None:
        super().__init__(clock)
        self._rows: dict[tuple, Aggregate] = {}

    async def upsert(self, aggregate: Aggregate) -> None:
        existing = self._rows.get(aggregate.identity)
        if existing is None:
            self._rows[aggregate.identity] = aggregate.copy()
        else:
            existing.merge(aggregate)

    async def replace(self, aggregates: list[Aggregate]) -> None:
        for aggregate in aggregates:
            self._rows[aggregate.identity] = aggregate.copy()

    async def scan(
        self,
        window: Window,
        start: datetime.datetime,
        end: datetime.datetime,
        tenant: str | None = None,
        method: str | None = None,
        path: str | None = None,
    ) -> list[Aggregate]:
        return [
            row.copy() for row in self._rows.values()
            if row.window is window
            and start <= row.bucket_start < end
            and (tenant is None or row.tenant == tenant)
            and (method is None or row.method == method)
            and (path is None or row.path == path)
        ]

    async def rolled_until(self, tenant: str, window: Window) -> datetime.datetime | None:
        starts = [
            row.bucket_start for row in self._rows.values()
            if row.tenant == tenant and row.window is window
        ]
        return next_bucket(max(starts), window) if starts else None

    async def purge(self, older_than: datetime.datetime, window: Window | None = None) -> int:
        doomed = [
            identity for identity, row in self._rows.items()
            if row.bucket_start < older_than and (window is None or row.window is window)
        ]
        for identity in doomed:
            del self._rows[identity]
        return len(doomed)


# ── Postgres ────────────────────────────────────────────────
_IDENTITY_COLUMNS = ["tenant", "window", "method", "path", "bucket_start"]


def _values(aggregate: Aggregate) -> dict[str, object]:
    """Column values for one aggregate, percentiles included."""
    marks = aggregate.percentiles()
    return {
        "tenant": aggregate.tenant,
        "window": aggregate.window.value,
        "method": aggregate.method,
        "path": aggregate.path,
        "bucket_start": aggregate.bucket_start,
        "category": aggregate.category,
        "total": aggregate.total,
        "successful": aggregate.successful,
        "failed": aggregate.failed,
        "rate_limited": aggregate.rate_limited,
        "auth_failures": aggregate.auth_failures,
        "authenticated": aggregate.authenticated,
        "anonymous": aggregate.anonymous,
        "request_bytes": aggregate.request_bytes,
        "response_bytes": aggregate.response_bytes,
        "by_status_class": dict(aggregate.by_status_class),
        "by_status_code": dict(aggregate.by_status_code),
        "per_key": dict(aggregate.per_key),
        "per_role": dict(aggregate.per_role),
        "errors_by_type": dict(aggregate.errors_by_type),
        "by_country": dict(aggregate.by_country),
        "response_time_sum": aggregate.response_time_sum,
        "min_response_time": aggregate.min_response_time,
        "max_response_time": aggregate.max_response_time,
        "sample": list(aggregate.sample),
        "p50": marks["p50"],
        "p95": marks["p95"],
        "p99": marks["p99"],
    }


def _to_aggregate(row: APIMetric) -> Aggregate:
    aggregate = Aggregate(
        tenant=row.tenant,
        window=Window(row.window),
        method=row.method,
        path=row.path,
        bucket_start=row.bucket_start,
        category=row.category,
        total=row.total,
        successful=row.successful,
        failed=row.failed,
        rate_limited=row.rate_limited,
        auth_failures=row.auth_failures,
        authenticated=row.authenticated,
        anonymous=row.anonymous,
        request_bytes=row.request_bytes,
        response_bytes=row.response_bytes,
        by_status_class=dict(row.by_status_class or {}),
        by_status_code=dict(row.by_status_code or {}),
        per_key=dict(row.per_key or {}),
        per_role=dict(row.per_role or {}),
        errors_by_type=dict(row.errors_by_type or {}),
        by_country=dict(row.by_country or {}),
        response_time_sum=row.response_time_sum,
        min_response_time=row.min_response_time,
        max_response_time=row.max_response_time,
    )
    aggregate.sample.extend((row.sample or [])[-SAMPLE_SIZE:])
    return aggregate


class SQLMetricsStore(MetricsStore):
    """Rows in the api_metrics table.

    upsert() locks the row (SELECT … FOR UPDATE) before merging, so
    concurrent flushes from several processes add up instead of
    overwriting each other.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession], clock: Clock) -> None:
        super().__init__(clock)
        self._sessions = sessions

    @staticmethod
    def _identity_filter(aggregate: Aggregate) -> list:  # type: ignore[type-arg]
        return [
            APIMetric.tenant == aggregate.tenant,
            APIMetric.window == aggregate.window.value,
            APIMetric.method == aggregate.method,
            APIMetric.path == aggregate.path,
            APIMetric.bucket_start == aggregate.bucket_start,
        ]

    async def upsert(self, aggregate: Aggregate) -> None:
        empty = Aggregate(
            tenant=aggregate.tenant,
            window=aggregate.window,
            method=aggregate.method,
            path=aggregate.path,
            bucket_start=aggregate.bucket_start,
            category=aggregate.category,
        )
        ensure_row = pg_insert(APIMetric).values(**_values(empty)).on_conflict_do_nothing(
            index_elements=_IDENTITY_COLUMNS,
        )
        lock_row = select(APIMetric).where(*self._identity_filter(aggregate)).with_for_update()

        async with self._sessions() as session:
            await session.execute(ensure_row)
            row = (await session.execute(lock_row)).scalar_one()
            merged = _to_aggregate(row)
            merged.merge(aggregate)
            for column, value in _values(merged).items():
                if column not in _IDENTITY_COLUMNS:
                    setattr(row, column, value)
            await session.commit()

    async def replace(self, aggregates: list[Aggregate]) -> None:
        async with self._sessions() as session:
            for aggregate in aggregates:
                stmt = pg_insert(APIMetric).values(**_values(aggregate))
                stmt = stmt.on_conflict_do_update(
                    index_elements=_IDENTITY_COLUMNS,
                    set_={
                        column: stmt.excluded[column]
                        for column in _values(aggregate)
                        if column not in _IDENTITY_COLUMNS
                    } | {"updated_at": func.now()},
                )
                await session.execute(stmt)
            await session.commit()

    async def scan(
        self,
        window: Window,
        start: datetime.datetime,
        end: datetime.datetime,
        tenant: str | None = None,
        method: str | None = None,
        path: str | None = None,
    ) -> list[Aggregate]:
        stmt = select(APIMetric).where(
            APIMetric.window == window.value,
            APIMetric.bucket_start >= start,
            APIMetric.bucket_start < end,
        )
        if tenant is not None:
            stmt = stmt.where(APIMetric.tenant == tenant)
        if method is not None:
            stmt = stmt.where(APIMetric.method == method)
        if path is not None:
            stmt = stmt.where(APIMetric.path == path)

        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_aggregate(row) for row in rows]

    async def rolled_until(self, tenant: str, window: Window) -> datetime.datetime | None:
        stmt = select(func.max(APIMetric.bucket_start)).where(
            APIMetric.tenant == tenant,
            APIMetric.window == window.value,
        )
        async with self._sessions() as session:
            newest = (await session.execute(stmt)).scalar_one_or_none()
        return next_bucket(newest, window) if newest is not None else None

    async def purge(self, older_than: datetime.datetime, window: Window | None = None) -> int:
        stmt = delete(APIMetric).where(APIMetric.bucket_start < older_than)
        if window is not None:
            stmt = stmt.where(APIMetric.window == window.value)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
        return int(result.rowcount or 0)
