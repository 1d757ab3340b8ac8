"""
Request observations and time-bucketed aggregates.

Pure data: no I/O, nothing here suspends.

  • RequestObservation — facts about one request, produced by the interceptor
    (or synthesised for webhook deliveries).
  • Aggregate          — counters for one (tenant, window, method, path,
    bucket_start). Minute aggregates are built live by the aggregator;
    hour/day/month aggregates are produced by combine().

Invariants:
  • successful + failed == total
  • the response-time sample keeps at most SAMPLE_SIZE values, oldest first
  • percentiles come from a sorted copy of the sample, never the full stream
"""

from __future__ import annotations

import datetime
import math
import re
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from app.core.clock import Window

SAMPLE_SIZE = 100

WEBHOOK_METHOD = "WEBHOOK"

# 24-hex object ids and purely numeric ids collapse to ":id"
_ID_SEGMENT = re.compile(r"^(?:[0-9a-fA-F]{24}|[0-9]+)$")

# First keyword found in the path wins
_CATEGORY_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("booking", "reservation"), "reservations"),
    (("room",), "rooms"),
    (("guest",), "guests"),
    (("payment",), "payments"),
    (("inventory",), "inventory"),
    (("report",), "reports"),
    (("webhook",), "webhooks"),
    (("auth",), "authentication"),
)


def normalize_path(raw_path: str) -> str:
    """Strip the query string and replace id-like segments with ':id'."""
    path = raw_path.split("?", 1)[0].split("#", 1)[0]
    segments = [":id" if _ID_SEGMENT.match(segment) else segment for segment in path.split("/")]
    return "/".join(segments) or "/"


def categorize_endpoint(path: str) -> str:
    lowered = path.lower()
    for keywords, category in _CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return "other"


def status_class(status: int) -> int:
    return status // 100 * 100


def error_type(status: int) -> str | None:
    """Error bucket for a failed status; None for 2xx/3xx."""
    if 200 <= status < 400:
        return None
    if status == 400:
        return "validation"
    if status in (401, 403):
        return "authentication"
    if status == 404:
        return "not_found"
    if status == 408:
        return "timeout"
    if status == 429:
        return "rate_limit"
    if status >= 500:
        return "server_error"
    return "unknown"


def percentile(sorted_values: list[float], q: float) -> float | None:
    """Nearest-rank percentile on an already sorted list."""
    if not sorted_values:
        return None
    index = min(len(sorted_values) - 1, math.floor(len(sorted_values) * q))
    return sorted_values[index]


@dataclass(frozen=True, slots=True)
class RequestObservation:
    tenant: str | None
    method: str
    path: str
    status: int
    response_time_ms: float
    timestamp: datetime.datetime
    request_bytes: int = 0
    response_bytes: int = 0
    key_id: str | None = None
    user_id: str | None = None
    user_role: str | None = None
    country: str | None = None
    client_ip: str | None = None
    category: str | None = None

    @classmethod
    def for_webhook(
        cls,
        tenant: str,
        event: str,
        status: int,
        duration_ms: float,
        timestamp: datetime.datetime,
        request_bytes: int = 0,
    ) -> RequestObservation:
        """Delivery outcome as a pseudo-request on 'WEBHOOK <event>'."""
        return cls(
            tenant=tenant,
            method=WEBHOOK_METHOD,
            path=event,
            status=status,
            response_time_ms=duration_ms,
            timestamp=timestamp,
            request_bytes=request_bytes,
            category="webhooks",
        )


def _add_counts(target: dict[str, int], source: dict[str, int]) -> None:
    for key, value in source.items():
        target[key] = target.get(key, 0) + value


def _bump(target: dict[str, int], key: str) -> None:
    target[key] = target.get(key, 0) + 1


@dataclass(slots=True)
class Aggregate:
    tenant: str
    window: Window
    method: str
    path: str
    bucket_start: datetime.datetime
    category: str = "other"

    total: int = 0
    successful: int = 0
    failed: int = 0
    rate_limited: int = 0
    auth_failures: int = 0
    authenticated: int = 0
    anonymous: int = 0
    request_bytes: int = 0
    response_bytes: int = 0

    by_status_class: dict[str, int] = field(default_factory=dict)
    by_status_code: dict[str, int] = field(default_factory=dict)
    per_key: dict[str, int] = field(default_factory=dict)
    per_role: dict[str, int] = field(default_factory=dict)
    errors_by_type: dict[str, int] = field(default_factory=dict)
    by_country: dict[str, int] = field(default_factory=dict)

    response_time_sum: float = 0.0
    min_response_time: float | None = None
    max_response_time: float | None = None
    sample: deque[float] = field(default_factory=lambda: deque(maxlen=SAMPLE_SIZE))

    @property
    def identity(self) -> tuple[str, str, str, str, datetime.datetime]:
        return (self.tenant, self.window.value, self.method, self.path, self.bucket_start)

    @property
    def endpoint(self) -> str:
        return f"{self.method} {self.path}"

    @property
    def bandwidth(self) -> int:
        return self.request_bytes + self.response_bytes

    @property
    def avg_response_time(self) -> float | None:
        return self.response_time_sum / self.total if self.total else None

    def percentiles(self) -> dict[str, float | None]:
        ordered = sorted(self.sample)
        return {
            "p50": percentile(ordered, 0.50),
            "p95": percentile(ordered, 0.95),
            "p99": percentile(ordered, 0.99),
        }

    def add(self, obs: RequestObservation) -> None:
        """Fold one observation into the counters."""
        status = obs.status
        self.total += 1
        if 200 <= status < 400:
            self.successful += 1
        else:
            self.failed += 1
            _bump(self.errors_by_type, error_type(status) or "unknown")
        _bump(self.by_status_class, str(status_class(status)))
        _bump(self.by_status_code, str(status))
        if status == 429:
            self.rate_limited += 1
        if status in (401, 403):
            self.auth_failures += 1

        if obs.key_id or obs.user_id:
            self.authenticated += 1
        else:
            self.anonymous += 1
        if obs.key_id:
            _bump(self.per_key, obs.key_id)
        if obs.user_role:
            _bump(self.per_role, obs.user_role)
        if obs.country:
            _bump(self.by_country, obs.country)

        self.request_bytes += obs.request_bytes
        self.response_bytes += obs.response_bytes

        elapsed = float(obs.response_time_ms)
        self.response_time_sum += elapsed
        self.sample.append(elapsed)
        if self.min_response_time is None or elapsed < self.min_response_time:
            self.min_response_time = elapsed
        if self.max_response_time is None or elapsed > self.max_response_time:
            self.max_response_time = elapsed

    def merge(self, other: Aggregate) -> None:
        """Additive merge of counters; the sample is replaced by `other`'s."""
        self._add_counters(other)
        self.sample = deque(other.sample, maxlen=SAMPLE_SIZE)

    def _add_counters(self, other: Aggregate) -> None:
        self.total += other.total
        self.successful += other.successful
        self.failed += other.failed
        self.rate_limited += other.rate_limited
        self.auth_failures += other.auth_failures
        self.authenticated += other.authenticated
        self.anonymous += other.anonymous
        self.request_bytes += other.request_bytes
        self.response_bytes += other.response_bytes
        _add_counts(self.by_status_class, other.by_status_class)
        _add_counts(self.by_status_code, other.by_status_code)
        _add_counts(self.per_key, other.per_key)
        _add_counts(self.per_role, other.per_role)
        _add_counts(self.errors_by_type, other.errors_by_type)
        _add_counts(self.by_country, other.by_country)
        self.response_time_sum += other.response_time_sum
        if other.min_response_time is not None and (
            self.min_response_time is None or other.min_response_time < self.min_response_time
        ):
            self.min_response_time = other.min_response_time
        if other.max_response_time is not None and (
            self.max_response_time is None or other.max_response_time > self.max_response_time
        ):
            self.max_response_time = other.max_response_time

    def copy(self) -> Aggregate:
        clone = Aggregate(
            tenant=self.tenant,
            window=self.window,
            method=self.method,
            path=self.path,
            bucket_start=self.bucket_start,
            category=self.category,
        )
        clone.merge(self)
        return clone


def combine(
    parts: Iterable[Aggregate],
    window: Window,
    bucket_start: datetime.datetime,
) -> Aggregate:
    """Reduce same-endpoint aggregates into one `window` aggregate.

    Counters sum; the sample is the most recent SAMPLE_SIZE values of the
    parts' samples taken in bucket order.
    """
    ordered = sorted(parts, key=lambda part: part.bucket_start)
    if not ordered:
        raise ValueError("combine() needs at least one aggregate")
    first = ordered[0]
    result = Aggregate(
        tenant=first.tenant,
        window=window,
        method=first.method,
        path=first.path,
        bucket_start=bucket_start,
        category=first.category,
    )
    for part in ordered:
        result._add_counters(part)
        result.sample.extend(part.sample)
    return result
