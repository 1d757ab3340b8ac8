"""
SQLAlchemy model for persisted request aggregates.

One table holds every granularity; `window` is the discriminator.

Design notes:
  • Composite primary key = (tenant, window, method, path, bucket_start),
    the aggregate identity, so upserts and rollups are idempotent by
    construction.
  • Map-shaped counters (by status code, per key, per role, …) are JSONB
    objects with string keys and integer values.
  • `sample` holds at most 100 response times (ms); percentiles are
    recomputed from it on every write.
"""

import datetime

from sqlalchemy import BigInteger, Double, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class APIMetric(Base):
    """
    Request counters for one endpoint of one hotel in one bucket.

    PK: (tenant, window, method, path, bucket_start)
    """

    __tablename__ = "api_metrics"
    __table_args__ = (
        Index("ix_api_metrics_window_bucket", "window", "bucket_start"),
    )

    tenant: Mapped[str] = mapped_column(String(64), primary_key=True)
    window: Mapped[str] = mapped_column(String(10), primary_key=True)
    method: Mapped[str] = mapped_column(String(10), primary_key=True)
    path: Mapped[str] = mapped_column(Text, primary_key=True)
    bucket_start: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True), primary_key=True,
    )
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="other")

    # ── Counters ────────────────────────────────────────────
    total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    successful: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    rate_limited: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    auth_failures: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    authenticated: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    anonymous: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    request_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    response_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    by_status_class: Mapped[dict[str, int]] = mapped_column(JSONB, nullable=False, default=dict)
    by_status_code: Mapped[dict[str, int]] = mapped_column(JSONB, nullable=False, default=dict)
    per_key: Mapped[dict[str, int]] = mapped_column(JSONB, nullable=False, default=dict)
    per_role: Mapped[dict[str, int]] = mapped_column(JSONB, nullable=False, default=dict)
    errors_by_type: Mapped[dict[str, int]] = mapped_column(JSONB, nullable=False, default=dict)
    by_country: Mapped[dict[str, int]] = mapped_column(JSONB, nullable=False, default=dict)

    # ── Response times (ms) ─────────────────────────────────
    response_time_sum: Mapped[float] = mapped_column(Double, nullable=False, default=0.0)
    min_response_time: Mapped[float | None] = mapped_column(Double, nullable=True)
    max_response_time: Mapped[float | None] = mapped_column(Double, nullable=True)
    sample: Mapped[list[float]] = mapped_column(JSONB, nullable=False, default=list)
    p50: Mapped[float | None] = mapped_column(Double, nullable=True)
    p95: Mapped[float | None] = mapped_column(Double, nullable=True)
    p99: Mapped[float | None] = mapped_column(Double, nullable=True)

    updated_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<APIMetric {self.window} {self.method} {self.path} "
            f"@{self.bucket_start:%Y-%m-%dT%H:%M} total={self.total}>"
        )
