"""
Pydantic v2 response schemas for the API-management endpoints.

Error rates are Decimal percentages with two places; response times are
whole milliseconds unless they come straight from a sample.
"""

from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict

from app.services.aggregates import Aggregate
from app.services.metrics_store import error_rate, round_ms

RangeSpec = Literal["1h", "24h", "7d", "30d"]


class DashboardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    range: RangeSpec
    total_requests: int
    successful: int
    failed: int
    error_rate: Decimal
    avg_response_time: int
    total_bandwidth: int
    rate_limited: int
    requests_today: int


class EndpointStatOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    endpoint: str
    method: str
    path: str
    category: str
    requests: int
    errors: int
    avg_response_time: int
    error_rate: Decimal


class EndpointUsageOut(BaseModel):
    """One endpoint over a range, with its status and error breakdown."""

    method: str
    path: str
    category: str
    total: int
    successful: int
    failed: int
    error_rate: Decimal
    rate_limited: int
    auth_failures: int
    avg_response_time: int
    min_response_time: float | None
    max_response_time: float | None
    p50: float | None
    p95: float | None
    p99: float | None
    request_bytes: int
    response_bytes: int
    by_status_class: dict[str, int]
    by_status_code: dict[str, int]
    errors_by_type: dict[str, int]
    per_role: dict[str, int]
    by_country: dict[str, int]

    @classmethod
    def from_aggregate(cls, aggregate: Aggregate) -> EndpointUsageOut:
        return cls(
            method=aggregate.method,
            path=aggregate.path,
            category=aggregate.category,
            total=aggregate.total,
            successful=aggregate.successful,
            failed=aggregate.failed,
            error_rate=error_rate(aggregate.failed, aggregate.total),
            rate_limited=aggregate.rate_limited,
            auth_failures=aggregate.auth_failures,
            avg_response_time=round_ms(aggregate.avg_response_time),
            min_response_time=aggregate.min_response_time,
            max_response_time=aggregate.max_response_time,
            request_bytes=aggregate.request_bytes,
            response_bytes=aggregate.response_bytes,
            by_status_class=aggregate.by_status_class,
            by_status_code=aggregate.by_status_code,
            errors_by_type=aggregate.errors_by_type,
            per_role=aggregate.per_role,
            by_country=aggregate.by_country,
            **aggregate.percentiles(),
        )


class SeriesPointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bucket_start: datetime.datetime
    requests: int
    errors: int
    avg_response_time: int
    p95: float | None


class RateLimitResetIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scope: Literal["tenant", "user", "key", "category"]
    identifier: str = ""


class RateLimitResetOut(BaseModel):
    scope: str
    identifier: str
    removed: int


class PipelineHealthOut(BaseModel):
    """Counters of the observation pipeline and the rate limiter."""

    queue_depth: int
    submitted_observations: int
    dropped_observations: int
    live_aggregates: int
    ingested_observations: int
    untracked_observations: int
    flushed_aggregates: int
    dropped_aggregates: int
    background_tasks: int
    failed_background_tasks: int
    purged_rows: int
    rate_limits: dict[str, object]


class ExportRowOut(BaseModel):
    """One stored aggregate row as exported."""

    bucket_start: datetime.datetime
    window: str
    method: str
    path: str
    category: str
    requests: int
    successful: int
    errors: int
    rate_limited: int
    avg_response_time: int
    p95: float | None
    response_bytes: int

    @classmethod
    def from_aggregate(cls, aggregate: Aggregate) -> ExportRowOut:
        return cls(
            bucket_start=aggregate.bucket_start,
            window=aggregate.window.value,
            method=aggregate.method,
            path=aggregate.path,
            category=aggregate.category,
            requests=aggregate.total,
            successful=aggregate.successful,
            errors=aggregate.failed,
            rate_limited=aggregate.rate_limited,
            avg_response_time=round_ms(aggregate.avg_response_time),
            p95=aggregate.percentiles()["p95"],
            response_bytes=aggregate.response_bytes,
        )
