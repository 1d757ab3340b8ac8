"""
API-management router — dashboards, endpoint drill-down, rate-limit admin.

All numbers come from the metrics store and are restricted to the
caller's hotel. /metrics is not observed by the interceptor, so polling
the dashboard does not show up in it.

Endpoints:
  GET  /api/v1/api-management/metrics           — dashboard summary
  GET  /api/v1/api-management/top-endpoints     — busiest endpoints
  GET  /api/v1/api-management/endpoint-usage    — one endpoint in detail
  GET  /api/v1/api-management/endpoint-series   — per-bucket time series
  GET  /api/v1/api-management/export            — stored rows as JSON or CSV download
  GET  /api/v1/api-management/rate-limits       — current counters vs limits
  POST /api/v1/api-management/rate-limits/reset — clear one scope's counters
  GET  /api/v1/api-management/health            — pipeline counters
"""

import csv
import dataclasses
import datetime
import io
from typing import Literal

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse, Response

from app.auth.dependencies import Auth, ServicesDep
from app.auth.errors import APIKeyNotFound
from app.core.clock import Window, as_utc
from app.schemas.metrics import (
    DashboardOut,
    EndpointStatOut,
    EndpointUsageOut,
    ExportRowOut,
    PipelineHealthOut,
    RangeSpec,
    RateLimitResetIn,
    RateLimitResetOut,
    SeriesPointOut,
)
from app.services.aggregates import normalize_path
from app.services.counter_store import TransientStoreError

router = APIRouter(tags=["API Management"])

# ── 1. Dashboard ────────────────────────────────────────────
@router.get(
    "/metrics",
    response_model=DashboardOut,
    summary="Request dashboard for the hotel",
)
async def get_metrics(
    auth: Auth,
    services: ServicesDep,
    range_spec: RangeSpec = Query(default="24h", alias="range"),
) -> DashboardOut:
    summary = await services.store.dashboard(auth.hotel_id, range_spec)
    return DashboardOut(range=range_spec, **dataclasses.asdict(summary))


# ── 2. Top endpoints ────────────────────────────────────────
@router.get(
    "/top-endpoints",
    response_model=list[EndpointStatOut],
    summary="Busiest endpoints",
    description="Sorted by request count, ties broken by 'METHOD path'.",
)
async def get_top_endpoints(
    auth: Auth,
    services: ServicesDep,
    range_spec: RangeSpec = Query(default="24h", alias="range"),
    limit: int = Query(default=10, ge=1, le=100),
) -> list[EndpointStatOut]:
    stats = await services.store.top_endpoints(auth.hotel_id, range_spec, limit)
    return [EndpointStatOut.model_validate(stat) for stat in stats]


# ── 3. One endpoint ─────────────────────────────────────────
@router.get(
    "/endpoint-usage",
    response_model=EndpointUsageOut,
    summary="Counters, percentiles and error breakdown for one endpoint",
)
async def get_endpoint_usage(
    auth: Auth,
    services: ServicesDep,
    method: str = Query(..., min_length=1, max_length=10),
    path: str = Query(..., min_length=1),
    range_spec: RangeSpec = Query(default="24h", alias="range"),
) -> EndpointUsageOut:
    aggregate = await services.store.endpoint_usage(
        auth.hotel_id, method.upper(), normalize_path(path), range_spec,
    )
    if aggregate is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No traffic recorded for this endpoint in the range.",
        )
    return EndpointUsageOut.from_aggregate(aggregate)


@router.get(
    "/endpoint-series",
    response_model=list[SeriesPointOut],
    summary="Requests, errors and latency per bucket",
)
async def get_endpoint_series(
    auth: Auth,
    services: ServicesDep,
    window: Window = Query(default=Window.HOUR),
    start: datetime.datetime | None = None,
    end: datetime.datetime | None = None,
    method: str | None = Query(default=None, max_length=10),
    path: str | None = None,
) -> list[SeriesPointOut]:
    end = as_utc(end) if end else services.clock.now()
    start = as_utc(start) if start else end - datetime.timedelta(hours=24)
    if start >= end:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start must be before end.",
        )
    points = await services.store.endpoint_series(
        auth.hotel_id,
        window,
        start,
        end,
        method=method.upper() if method else None,
        path=normalize_path(path) if path else None,
    )
    return [SeriesPointOut.model_validate(point) for point in points]


# ── 4. Rate limits ──────────────────────────────────────────
@router.get(
    "/rate-limits",
    summary="Current rate-limit counters against their limits",
    description="Tenant scope always; user and key scopes when asked for.",
)
async def get_rate_limits(
    auth: Auth,
    services: ServicesDep,
    key_id: str | None = None,
    user_id: str | None = None,
) -> dict[str, dict[str, dict[str, int]]]:
    quota = None
    if key_id is not None:
        try:
            quota = (await services.keys.get(auth.hotel_id, key_id)).quota
        except APIKeyNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found.") from None
    try:
        return await services.limiter.status(auth.hotel_id, user_id=user_id, key_id=key_id, key_quota=quota)
    except TransientStoreError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate-limit counters are unavailable.",
        ) from None


@router.post(
    "/rate-limits/reset",
    response_model=RateLimitResetOut,
    summary="Clear the counters of one rate-limit scope",
)
async def reset_rate_limits(
    body: RateLimitResetIn,
    auth: Auth,
    services: ServicesDep,
) -> RateLimitResetOut:
    if body.scope != "tenant" and not body.identifier:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"identifier is required for the {body.scope} scope.",
        )
    if body.scope == "key":
        try:
            await services.keys.get(auth.hotel_id, body.identifier)
        except APIKeyNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found.") from None
    try:
        removed = await services.limiter.reset(body.scope, body.identifier, auth.hotel_id)
    except TransientStoreError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate-limit counters are unavailable.",
        ) from None
    return RateLimitResetOut(scope=body.scope, identifier=body.identifier, removed=removed)


# ── 5. Pipeline health ──────────────────────────────────────
@router.get(
    "/health",
    response_model=PipelineHealthOut,
    summary="Observation pipeline and rate limiter counters",
)
async def get_pipeline_health(_auth: Auth, services: ServicesDep) -> PipelineHealthOut:
    aggregator = services.aggregator
    return PipelineHealthOut(
        queue_depth=len(services.queue),
        submitted_observations=services.queue.submitted,
        dropped_observations=services.queue.dropped_observations,
        live_aggregates=len(aggregator.live),
        ingested_observations=aggregator.ingested,
        untracked_observations=aggregator.untracked,
        flushed_aggregates=aggregator.flushed_aggregates,
        dropped_aggregates=aggregator.dropped_aggregates,
        background_tasks=len(services.tasks),
        failed_background_tasks=services.tasks.failed,
        purged_rows=services.scheduler.purged_rows,
        rate_limits=await services.limiter.counters(),
    )


# ── 6. Export ───────────────────────────────────────────────
_EXPORT_COLUMNS = list(ExportRowOut.model_fields)


@router.get(
    "/export",
    summary="Download stored metric rows",
    description=(
        "Rows of one window between start and end, newest first, as a JSON or "
        "CSV attachment. endpoints is a comma-separated list of paths."
    ),
)
async def export_metrics(
    auth: Auth,
    services: ServicesDep,
    start: datetime.datetime,
    end: datetime.datetime,
    export_format: Literal["json", "csv"] = Query(default="json", alias="format"),
    window: Window = Query(default=Window.MINUTE),
    endpoints: str | None = None,
) -> Response:
    start, end = as_utc(start), as_utc(end)
    if start >= end:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start must be before end.",
        )
    paths = [normalize_path(p.strip()) for p in (endpoints or "").split(",") if p.strip()]
    aggregates = await services.store.export(
        auth.hotel_id, window, start, end, paths, limit=services.settings.EXPORT_MAX_ROWS,
    )
    rows = [ExportRowOut.from_aggregate(aggregate) for aggregate in aggregates]

    if export_format == "csv":
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=_EXPORT_COLUMNS)
        writer.writeheader()
        for row in rows:
            writer.writerow(row.model_dump(mode="json"))
        return Response(
            content=buffer.getvalue(),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="api-metrics.csv"'},
        )
    return JSONResponse(
        content=[row.model_dump(mode="json") for row in rows],
        headers={"Content-Disposition": 'attachment; filename="api-metrics.json"'},
    )
