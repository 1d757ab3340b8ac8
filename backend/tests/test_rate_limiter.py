"""Tests for the multi-scope rate limiter."""
from __future__ import annotations

import asyncio
import datetime
import random

import pytest

from app.core.clock import ManualClock, Window, next_bucket
from app.services.counter_store import MemoryCounterStore, TransientStoreError
from app.services.rate_limiter import (
    Quota,
    RateLimited,
    RateLimiter,
    RateLimitPolicy,
    RateLimitRequest,
)

POLICY = RateLimitPolicy(
    tenant=Quota(per_minute=20, per_hour=100, per_day=1_000),
    user=Quota(per_minute=4),
    key_default=Quota(per_minute=10),
    categories={"promotional": Quota(per_day=5), "emergency": Quota(per_hour=20)},
    channels={"sms": Quota(per_day=50), "push": Quota(per_minute=5), "webhook": Quota(per_minute=2)},
)


class _BrokenStore:
    """Counter store whose back-end is unreachable."""

    async def increment_and_get(self, key: str, window_seconds: int) -> int:
        raise TransientStoreError("down")

    async def get(self, key: str) -> int:
        raise TransientStoreError("down")

    async def invalidate_pattern(self, pattern: str) -> int:
        raise TransientStoreError("down")

    async def purge_expired(self) -> int:
        return 0

    async def count_keys(self, pattern: str) -> dict[str, int]:
        raise TransientStoreError("down")


@pytest.fixture
def limiter(clock: ManualClock) -> RateLimiter:
    return RateLimiter(MemoryCounterStore(clock), clock, POLICY)


async def _allowed(limiter: RateLimiter, request: RateLimitRequest) -> bool:
    try:
        await limiter.enforce(request)
    except RateLimited:
        return False
    return True


@pytest.mark.anyio
async def test_allowed_pairs_never_exceed_limit(limiter: RateLimiter) -> None:
    rng = random.Random(11)
    request = RateLimitRequest(tenant="hotel-a", user_id="u1")
    allowed = 0
    for _ in range(40):
        decision = await limiter.check(request)
        # Callers may dry-run any number of times
        for _ in range(rng.randint(0, 2)):
            await limiter.check(request)
        if decision.allowed:
            await limiter.record(request)
            allowed += 1

    assert allowed == POLICY.user.per_minute


@pytest.mark.anyio
async def test_concurrent_enforce_respects_limit(limiter: RateLimiter) -> None:
    request = RateLimitRequest(tenant="hotel-a", key_id="key-1", key_quota=Quota(per_minute=5))

    results = await asyncio.gather(*(_allowed(limiter, request) for _ in range(30)))

    assert results.count(True) == 5


@pytest.mark.anyio
async def test_deny_reports_scope_and_bucket_end(limiter: RateLimiter, clock: ManualClock) -> None:
    request = RateLimitRequest(tenant="hotel-a", user_id="u1")
    for _ in range(4):
        await limiter.enforce(request)

    with pytest.raises(RateLimited) as excinfo:
        await limiter.enforce(request)

    decision = excinfo.value.decision
    assert decision.allowed is False
    assert decision.scope == "user"
    assert decision.window is Window.MINUTE
    assert decision.reset_at == next_bucket(clock.now(), Window.MINUTE)
    assert decision.reason == "user minute limit exceeded"

    # A new minute bucket starts from zero
    clock.advance(60)
    assert (await limiter.check(request)).allowed


@pytest.mark.anyio
async def test_tenant_scope_is_checked_first(limiter: RateLimiter) -> None:
    for i in range(20):
        await limiter.enforce(RateLimitRequest(tenant="hotel-a", user_id=f"u{i}"))

    decision = await limiter.check(RateLimitRequest(tenant="hotel-a", user_id="fresh"))

    assert decision.scope == "tenant"
    # Other tenants are unaffected
    assert (await limiter.check(RateLimitRequest(tenant="hotel-b", user_id="fresh"))).allowed


@pytest.mark.anyio
async def test_urgent_bypasses_user_key_category_but_not_tenant(limiter: RateLimiter) -> None:
    normal = RateLimitRequest(tenant="hotel-a", user_id="u1", category="promotional")
    for _ in range(4):
        await limiter.enforce(normal)
    assert not (await limiter.check(normal)).allowed

    urgent = RateLimitRequest(tenant="hotel-a", user_id="u1", category="promotional", priority="urgent")
    for _ in range(16):
        await limiter.enforce(urgent)

    decision = await limiter.check(urgent)
    assert decision.allowed is False
    assert decision.scope == "tenant"


@pytest.mark.anyio
async def test_promotional_category_is_capped_per_day(limiter: RateLimiter, clock: ManualClock) -> None:
    for i in range(5):
        await limiter.enforce(RateLimitRequest(tenant="hotel-a", user_id=f"u{i}", category="promotional"))
        clock.advance(minutes=1)

    decision = await limiter.check(RateLimitRequest(tenant="hotel-a", user_id="u9", category="promotional"))

    assert decision.scope == "category"
    assert decision.window is Window.DAY
    assert decision.reset_at == datetime.datetime(2026, 3, 11, tzinfo=datetime.timezone.utc)


@pytest.mark.anyio
async def test_channel_only_requests_skip_tenant_quota(limiter: RateLimiter) -> None:
    webhook = RateLimitRequest(tenant="hotel-a", channels=("webhook:ep-1",), channel_only=True)
    await limiter.enforce(webhook)
    await limiter.enforce(webhook)

    with pytest.raises(RateLimited) as excinfo:
        await limiter.enforce(webhook)
    assert excinfo.value.decision.scope == "channel"

    status = await limiter.status("hotel-a")
    assert status["tenant"]["minute"]["current"] == 0


@pytest.mark.anyio
async def test_allowed_decision_carries_minute_headers(limiter: RateLimiter) -> None:
    request = RateLimitRequest(tenant="hotel-a", key_id="key-1", key_quota=Quota(per_minute=3))

    first = await limiter.enforce(request)
    second = await limiter.enforce(request)

    assert (first.minute_limit, first.minute_remaining) == (3, 2)
    assert (second.minute_limit, second.minute_remaining) == (3, 1)


@pytest.mark.anyio
async def test_store_failure_fails_open_and_is_counted(clock: ManualClock) -> None:
    limiter = RateLimiter(_BrokenStore(), clock, POLICY)

    decision = await limiter.enforce(RateLimitRequest(tenant="hotel-a", user_id="u1"))

    assert decision.allowed is True
    assert decision.fail_open is True
    assert limiter.fail_open_count == 1
    assert (await limiter.counters())["fail_open_count"] == 1


@pytest.mark.anyio
async def test_reset_clears_one_scope(limiter: RateLimiter) -> None:
    request = RateLimitRequest(tenant="hotel-a", user_id="u1")
    for _ in range(4):
        await limiter.enforce(request)

    removed = await limiter.reset("user", "u1", "hotel-a")

    assert removed == 1
    assert (await limiter.check(request)).allowed
    status = await limiter.status("hotel-a", user_id="u1")
    assert status["tenant"]["minute"] == {"current": 4, "limit": 20}
    assert status["user"]["minute"] == {"current": 0, "limit": 4}

    with pytest.raises(ValueError):
        await limiter.reset("channel", "sms", "hotel-a")


@pytest.mark.anyio
async def test_key_quota_windows_fall_back_to_the_default(clock: ManualClock) -> None:
    policy = RateLimitPolicy(
        tenant=Quota(per_minute=100),
        user=Quota(),
        key_default=Quota(per_minute=10, per_hour=2),
    )
    limiter = RateLimiter(MemoryCounterStore(clock), clock, policy)
    request = RateLimitRequest(tenant="hotel-a", key_id="key-1", key_quota=Quota(per_minute=50))

    results = [await _allowed(limiter, request) for _ in range(4)]

    assert results == [True, True, False, False]
    assert Quota(per_minute=50).over(policy.key_default) == Quota(per_minute=50, per_hour=2)
