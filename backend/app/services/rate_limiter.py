"""
Multi-scope, multi-window rate limiter.

Scopes are checked in a fixed order and the first one over its limit wins:
  1. tenant   × {minute, hour, day}
  2. user     × {minute, hour, day}
  3. key      × {minute, hour, day}   (quota from the key, else default)
  4. category × {hour, day}           (promotional, emergency)
  5. channel  × {minute, hour, day}   (sms, email, push, webhook:<id>)

priority="urgent" skips user, key and category scopes; the tenant scope
always applies to inbound requests. channel_only requests (outbound
webhook deliveries) are checked against their channel caps alone.

Design decisions:
  • Check BEFORE increment — denied requests don't inflate counters.
  • check() and record() are separate so callers can dry-run; enforce()
    runs both under a per-tenant lock so no other check for the same
    tenant interleaves between them.
  • Counters live in buckets aligned to wall time; on deny reset_at is the
    end of the triggering bucket.
  • Counter-store errors and timeouts fail open and are counted.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import zlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from app.core.clock import Clock, Window, WINDOW_SECONDS, next_bucket, normalize, epoch_seconds
from app.services.counter_store import CounterStore, TransientStoreError

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

URGENT = "urgent"

# Counter key namespace per scope
_KEY_PREFIX = {
    "tenant": "hotel",
    "user": "user",
    "key": "key",
    "category": "category",
    "channel": "channel",
}


@dataclass(frozen=True, slots=True)
class Quota:
    """Per-window request allowance. None means "no limit in this window"."""

    per_minute: int | None = None
    per_hour: int | None = None
    per_day: int | None = None

    def items(self) -> list[tuple[Window, int]]:
        pairs = (
            (Window.MINUTE, self.per_minute),
            (Window.HOUR, self.per_hour),
            (Window.DAY, self.per_day),
        )
        return [(window, limit) for window, limit in pairs if limit is not None]

    def for_window(self, window: Window) -> int | None:
        return dict(self.items()).get(window)

    def over(self, default: Quota) -> Quota:
        """This quota with its unset windows taken from `default`."""
        return Quota(
            self.per_minute if self.per_minute is not None else default.per_minute,
            self.per_hour if self.per_hour is not None else default.per_hour,
            self.per_day if self.per_day is not None else default.per_day,
        )


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    tenant: Quota
    user: Quota
    key_default: Quota
    categories: Mapping[str, Quota] = field(default_factory=dict)
    channels: Mapping[str, Quota] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> RateLimitPolicy:
        return cls(
            tenant=Quota(
                settings.TENANT_LIMIT_PER_MINUTE,
                settings.TENANT_LIMIT_PER_HOUR,
                settings.TENANT_LIMIT_PER_DAY,
            ),
            user=Quota(
                settings.USER_LIMIT_PER_MINUTE,
                settings.USER_LIMIT_PER_HOUR,
                settings.USER_LIMIT_PER_DAY,
            ),
            key_default=Quota(
                settings.KEY_LIMIT_PER_MINUTE,
                settings.KEY_LIMIT_PER_HOUR,
                settings.KEY_LIMIT_PER_DAY,
            ),
            categories={
                "promotional": Quota(per_day=settings.PROMOTIONAL_LIMIT_PER_DAY),
                "emergency": Quota(per_hour=settings.EMERGENCY_LIMIT_PER_HOUR),
            },
            channels={
                "sms": Quota(per_day=settings.SMS_LIMIT_PER_DAY),
                "email": Quota(per_hour=settings.EMAIL_LIMIT_PER_HOUR),
                "push": Quota(per_minute=settings.PUSH_LIMIT_PER_MINUTE),
                "webhook": Quota(
                    settings.WEBHOOK_LIMIT_PER_MINUTE,
                    settings.WEBHOOK_LIMIT_PER_HOUR,
                    settings.WEBHOOK_LIMIT_PER_DAY,
                ),
            },
        )


@dataclass(frozen=True, slots=True)
class RateLimitRequest:
    tenant: str
    user_id: str | None = None
    key_id: str | None = None
    key_quota: Quota | None = None
    category: str | None = None
    channels: tuple[str, ...] = ()
    priority: str = "normal"
    # Outbound traffic (webhooks) is capped per channel only
    channel_only: bool = False


@dataclass(frozen=True, slots=True)
class RateDecision:
    """Outcome of a check.

    On deny, scope/window/limit/current describe the triggering counter.
    On allow, the minute_* fields describe the most specific scope with a
    per-minute limit (used for X-RateLimit-* headers).
    """

    allowed: bool
    reason: str | None = None
    reset_at: datetime.datetime | None = None
    scope: str | None = None
    window: Window | None = None
    limit: int | None = None
    current: int = 0
    minute_limit: int | None = None
    minute_remaining: int | None = None
    minute_reset_at: datetime.datetime | None = None
    fail_open: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "resetAt": self.reset_at.isoformat() if self.reset_at else None,
            "scope": self.scope,
            "window": self.window.value if self.window else None,
            "limit": self.limit,
            "current": self.current,
        }


class RateLimited(Exception):
    """Raised by enforce() when a scope is over its limit."""

    def __init__(self, decision: RateDecision) -> None:
        super().__init__(decision.reason)
        self.decision = decision


@dataclass(frozen=True, slots=True)
class _Limit:
    scope: str
    subject: str
    window: Window
    limit: int

    def counter_key(self, now: datetime.datetime) -> str:
        bucket = epoch_seconds(normalize(now, self.window))
        return f"rate:{_KEY_PREFIX[self.scope]}:{self.subject}:{self.window.value}:{bucket}"


class RateLimiter:
    """Owns the scope plan; counters live in the injected CounterStore."""

    LOCK_STRIPES = 64

    def __init__(
        self,
        store: CounterStore,
        clock: Clock,
        policy: RateLimitPolicy,
        timeout: float = 0.5,
    ) -> None:
        self._store = store
        self._clock = clock
        self._policy = policy
        self._timeout = timeout
        self._locks = [asyncio.Lock() for _ in range(self.LOCK_STRIPES)]
        self.fail_open_count = 0
        self.denied_count = 0

    @property
    def policy(self) -> RateLimitPolicy:
        return self._policy

    # ── Plan ────────────────────────────────────────────────
    def _limits(self, request: RateLimitRequest) -> list[_Limit]:
        tenant = request.tenant
        limits: list[_Limit] = []
        if not request.channel_only:
            limits += self._scope("tenant", tenant, self._policy.tenant)

        if request.priority != URGENT and not request.channel_only:
            if request.user_id:
                limits += self._scope("user", f"{tenant}:{request.user_id}", self._policy.user)
            if request.key_id:
                quota = self._policy.key_default
                if request.key_quota is not None:
                    quota = request.key_quota.over(quota)
                limits += self._scope("key", request.key_id, quota)
            category_quota = self._policy.categories.get(request.category or "")
            if category_quota is not None:
                limits += self._scope("category", f"{tenant}:{request.category}", category_quota)

        for channel in request.channels:
            quota = self._policy.channels.get(channel.split(":", 1)[0])
            if quota is None:
                continue
            owner = f"{tenant}:{request.user_id}" if request.user_id else tenant
            limits += self._scope("channel", f"{owner}:{channel}", quota)
        return limits

    @staticmethod
    def _scope(scope: str, subject: str, quota: Quota) -> list[_Limit]:
        return [_Limit(scope, subject, window, limit) for window, limit in quota.items()]

    def _lock_for(self, tenant: str) -> asyncio.Lock:
        return self._locks[zlib.crc32(tenant.encode()) % self.LOCK_STRIPES]

    async def _bounded(self, awaitable):  # type: ignore[no-untyped-def]
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransientStoreError("counter store timed out") from exc

    # ── Public API ──────────────────────────────────────────
    async def check(self, request: RateLimitRequest) -> RateDecision:
        """Dry-run: read every counter in scope order, never increment."""
        now = self._clock.now()
        limits = self._limits(request)
        try:
            counts = await self._bounded(
                asyncio.gather(*(self._store.get(limit.counter_key(now)) for limit in limits))
            )
        except TransientStoreError:
            self.fail_open_count += 1
            logger.warning("Rate-limit check failed open for tenant %s", request.tenant, exc_info=True)
            return RateDecision(allowed=True, fail_open=True)

        for limit, current in zip(limits, counts):
            if current >= limit.limit:
                self.denied_count += 1
                return RateDecision(
                    allowed=False,
                    reason=f"{limit.scope} {limit.window.value} limit exceeded",
                    reset_at=next_bucket(now, limit.window),
                    scope=limit.scope,
                    window=limit.window,
                    limit=limit.limit,
                    current=current,
                )

        return self._allowed(now, limits, counts)

    async def record(self, request: RateLimitRequest) -> None:
        """Increment every limited counter for the request."""
        now = self._clock.now()
        limits = self._limits(request)
        try:
            await self._bounded(
                asyncio.gather(*(
                    self._store.increment_and_get(limit.counter_key(now), WINDOW_SECONDS[limit.window])
                    for limit in limits
                ))
            )
        except TransientStoreError:
            self.fail_open_count += 1
            logger.warning("Rate-limit record failed for tenant %s", request.tenant, exc_info=True)

    async def enforce(self, request: RateLimitRequest) -> RateDecision:
        """check() then record() atomically per tenant. Raises RateLimited on deny."""
        async with self._lock_for(request.tenant):
            decision = await self.check(request)
            if not decision.allowed:
                raise RateLimited(decision)
            if not decision.fail_open:
                await self.record(request)
        return decision

    def _allowed(
        self,
        now: datetime.datetime,
        limits: list[_Limit],
        counts: list[int],
    ) -> RateDecision:
        minute = [
            (limit, current) for limit, current in zip(limits, counts)
            if limit.window is Window.MINUTE
        ]
        if not minute:
            return RateDecision(allowed=True)
        # Most specific scope is planned last
        limit, current = minute[-1]
        return RateDecision(
            allowed=True,
            minute_limit=limit.limit,
            minute_remaining=max(0, limit.limit - current - 1),
            minute_reset_at=next_bucket(now, Window.MINUTE),
        )

    # ── Admin ───────────────────────────────────────────────
    async def status(
        self,
        tenant: str,
        user_id: str | None = None,
        key_id: str | None = None,
        key_quota: Quota | None = None,
    ) -> dict[str, dict[str, dict[str, int]]]:
        """Current count and limit per scope and window."""
        request = RateLimitRequest(tenant=tenant, user_id=user_id, key_id=key_id, key_quota=key_quota)
        now = self._clock.now()
        limits = self._limits(request)
        counts = await self._bounded(
            asyncio.gather(*(self._store.get(limit.counter_key(now)) for limit in limits))
        )
        report: dict[str, dict[str, dict[str, int]]] = {}
        for limit, current in zip(limits, counts):
            report.setdefault(limit.scope, {})[limit.window.value] = {
                "current": current,
                "limit": limit.limit,
            }
        return report

    async def reset(self, scope: str, identifier: str, tenant: str) -> int:
        """Drop every counter of one scope subject. Returns counters removed."""
        if scope == "tenant":
            subject = tenant
        elif scope in ("user", "category"):
            subject = f"{tenant}:{identifier}"
        elif scope == "key":
            subject = identifier
        else:
            raise ValueError(f"Invalid reset scope: {scope}")
        removed = await self._bounded(
            self._store.invalidate_pattern(f"rate:{_KEY_PREFIX[scope]}:{subject}:*")
        )
        logger.info("Reset %s rate limits for %s (%d counters)", scope, subject, removed)
        return removed

    async def counters(self) -> dict[str, object]:
        """Live counter keys grouped by scope, plus fail-open and deny totals."""
        try:
            by_scope = await self._bounded(self._store.count_keys("rate:*"))
        except TransientStoreError:
            logger.warning("Could not scan rate-limit counters", exc_info=True)
            by_scope = {}
        return {
            "total_keys": sum(by_scope.values()),
            "by_scope": by_scope,
            "fail_open_count": self.fail_open_count,
            "denied_count": self.denied_count,
        }
