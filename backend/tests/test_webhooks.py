"""Tests for webhook registration, signing, retries and per-endpoint ordering."""
from __future__ import annotations

import json
import random
from collections.abc import Callable, Iterator
from decimal import Decimal

import httpx
import pytest

from app.core.clock import ManualClock
from app.services.aggregates import WEBHOOK_METHOD, RequestObservation
from app.services.counter_store import MemoryCounterStore
from app.services.rate_limiter import Quota, RateLimiter, RateLimitPolicy
from app.services.webhooks import (
    DeliveryStatus,
    EndpointNotFound,
    EndpointRecord,
    MemoryWebhookRepository,
    WebhookDispatcher,
    attempt_budget,
    sign_payload,
)
from support import HOTEL_A, HOTEL_B

URL = "https://pms.example.com/hooks"

Handler = Callable[[httpx.Request], httpx.Response]


class _Consumer:
    """Records every request and answers with the queued statuses (200 once exhausted)."""

    def __init__(self, statuses: tuple[int, ...] = ()) -> None:
        self.requests: list[httpx.Request] = []
        self._statuses: Iterator[int] = iter(statuses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(next(self._statuses, 200))


def _dispatcher(
    clock: ManualClock,
    handler: Handler,
    observations: list[RequestObservation],
    webhook_quota: Quota = Quota(per_minute=60),
) -> WebhookDispatcher:
    policy = RateLimitPolicy(
        tenant=Quota(per_minute=1_000),
        user=Quota(),
        key_default=Quota(),
        channels={"webhook": webhook_quota},
    )
    return WebhookDispatcher(
        MemoryWebhookRepository(),
        RateLimiter(MemoryCounterStore(clock), clock, policy),
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        clock,
        submit=observations.append,
        rng=random.Random(7),
    )


async def _head(dispatcher: WebhookDispatcher, endpoint: EndpointRecord):
    (delivery, *_) = await dispatcher.deliveries(endpoint.hotel_id, endpoint.id)
    return delivery


@pytest.mark.anyio
async def test_retries_with_backoff_until_success(clock: ManualClock) -> None:
    consumer = _Consumer((500, 500, 200))
    observations: list[RequestObservation] = []
    dispatcher = _dispatcher(clock, consumer, observations)
    endpoint = await dispatcher.register(HOTEL_A, URL, ["booking.*"])
    await dispatcher.publish(HOTEL_A, "booking.created", {"bookingId": "b-1"})

    await dispatcher.process_due()
    first = await _head(dispatcher, endpoint)
    assert first.status is DeliveryStatus.FAILED
    assert 0.8 <= (first.next_attempt_at - clock.now()).total_seconds() <= 1.2

    # Not due yet
    assert await dispatcher.process_due() == 0

    clock.set(first.next_attempt_at)
    await dispatcher.process_due()
    second = await _head(dispatcher, endpoint)
    assert second.status is DeliveryStatus.FAILED
    assert 1.6 <= (second.next_attempt_at - clock.now()).total_seconds() <= 2.4

    clock.set(second.next_attempt_at)
    await dispatcher.process_due()
    done = await _head(dispatcher, endpoint)

    assert done.status is DeliveryStatus.SUCCEEDED
    assert done.attempts == 3
    assert [r.headers["X-Webhook-Attempt"] for r in consumer.requests] == ["1", "2", "3"]
    assert [o.status for o in observations] == [500, 500, 200]
    assert {(o.method, o.path) for o in observations} == {(WEBHOOK_METHOD, "booking.created")}


@pytest.mark.anyio
async def test_request_is_signed(clock: ManualClock) -> None:
    consumer = _Consumer()
    dispatcher = _dispatcher(clock, consumer, [])
    endpoint = await dispatcher.register(HOTEL_A, URL, ["rate.updated"], name="Channel manager")
    await dispatcher.publish(HOTEL_A, "rate.updated", {"roomType": "deluxe", "amount": 189})

    await dispatcher.process_due()

    (request,) = consumer.requests
    body = request.content.decode("utf-8")
    timestamp = request.headers["X-Webhook-Timestamp"]
    assert request.headers["X-Webhook-Signature"] == "sha256=" + sign_payload(endpoint.secret, timestamp, body)
    assert request.headers["User-Agent"] == "HotelMS-Webhooks/1.0"
    assert request.headers["X-Webhook-Event"] == "rate.updated"
    assert timestamp == str(int(clock.now().timestamp()))

    payload = json.loads(body)
    assert payload["event"] == "rate.updated"
    assert payload["hotelId"] == HOTEL_A
    assert payload["data"] == {"roomType": "deluxe", "amount": 189}
    assert payload["id"] == request.headers["X-Webhook-ID"]


@pytest.mark.anyio
async def test_throttled_delivery_waits_without_spending_an_attempt(clock: ManualClock) -> None:
    consumer = _Consumer()
    dispatcher = _dispatcher(clock, consumer, [], webhook_quota=Quota(per_minute=2))
    endpoint = await dispatcher.register(HOTEL_A, URL, ["inventory.*"])
    for i in range(3):
        await dispatcher.publish(HOTEL_A, "inventory.low", {"sku": i})

    for _ in range(3):
        await dispatcher.process_due()

    throttled = await _head(dispatcher, endpoint)
    assert len(consumer.requests) == 2
    assert throttled.status is DeliveryStatus.PENDING
    assert throttled.attempts == 0
    # START is 12:00:10, the minute bucket resets at 12:01
    assert throttled.next_attempt_at == clock.now().replace(minute=1, second=0)

    clock.set(throttled.next_attempt_at)
    await dispatcher.process_due()
    delivered = await _head(dispatcher, endpoint)
    assert (delivered.status, delivered.attempts) == (DeliveryStatus.SUCCEEDED, 1)


@pytest.mark.anyio
async def test_abandoned_after_attempt_budget(clock: ManualClock) -> None:
    consumer = _Consumer((503,) * 10)
    dispatcher = _dispatcher(clock, consumer, [])
    endpoint = await dispatcher.register(HOTEL_A, URL, ["guest.*"])
    await dispatcher.publish(HOTEL_A, "guest.checked_in", {"guestId": "g-1"})

    for _ in range(attempt_budget("guest.checked_in")):
        delivery = await _head(dispatcher, endpoint)
        clock.set(max(clock.now(), delivery.next_attempt_at))
        await dispatcher.process_due()

    delivery = await _head(dispatcher, endpoint)
    assert delivery.status is DeliveryStatus.ABANDONED
    assert delivery.attempts == 3
    assert delivery.last_status_code == 503

    clock.advance(minutes=10)
    assert await dispatcher.process_due() == 0
    assert len(consumer.requests) == 3

    stats = await dispatcher.stats(HOTEL_A)
    assert (stats.total_deliveries, stats.failed_deliveries) == (3, 3)
    assert stats.success_rate == Decimal("0.00")
    assert stats.queue == {"abandoned": 1}


@pytest.mark.anyio
async def test_deliveries_to_one_endpoint_stay_in_order(clock: ManualClock) -> None:
    consumer = _Consumer((500,))
    dispatcher = _dispatcher(clock, consumer, [])
    endpoint = await dispatcher.register(HOTEL_A, URL, ["booking.*"])
    first, = await dispatcher.publish(HOTEL_A, "booking.created", {"n": 1})
    second, = await dispatcher.publish(HOTEL_A, "booking.cancelled", {"n": 2})

    await dispatcher.process_due()
    await dispatcher.process_due()

    # The second delivery is due but waits behind the failed first one
    assert [r.headers["X-Webhook-ID"] for r in consumer.requests] == [first.id]
    newest, oldest = await dispatcher.deliveries(HOTEL_A, endpoint.id)
    assert (newest.id, newest.status) == (second.id, DeliveryStatus.PENDING)

    clock.set(oldest.next_attempt_at)
    await dispatcher.process_due()
    await dispatcher.process_due()
    assert [r.headers["X-Webhook-ID"] for r in consumer.requests] == [first.id, first.id, second.id]


@pytest.mark.anyio
async def test_timeout_is_reported_as_504(clock: ManualClock) -> None:
    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("consumer too slow", request=request)

    observations: list[RequestObservation] = []
    dispatcher = _dispatcher(clock, slow, observations)
    endpoint = await dispatcher.register(HOTEL_A, URL, ["booking.created"])
    await dispatcher.publish(HOTEL_A, "booking.created", {})

    await dispatcher.process_due()

    delivery = await _head(dispatcher, endpoint)
    assert delivery.status is DeliveryStatus.FAILED
    assert delivery.last_status_code == 504
    assert [o.status for o in observations] == [504]


@pytest.mark.anyio
async def test_inactive_endpoint_deliveries_are_abandoned(clock: ManualClock) -> None:
    consumer = _Consumer()
    dispatcher = _dispatcher(clock, consumer, [])
    endpoint = await dispatcher.register(HOTEL_A, URL, ["booking.created"])
    await dispatcher.publish(HOTEL_A, "booking.created", {})
    await dispatcher.deactivate(HOTEL_A, endpoint.id)

    await dispatcher.process_due()

    assert consumer.requests == []
    assert (await _head(dispatcher, endpoint)).status is DeliveryStatus.ABANDONED
    # Nothing is queued for it afterwards
    assert await dispatcher.publish(HOTEL_A, "booking.created", {}) == []


@pytest.mark.anyio
async def test_publish_fans_out_to_subscribed_endpoints_of_the_hotel(clock: ManualClock) -> None:
    dispatcher = _dispatcher(clock, _Consumer(), [])
    bookings = await dispatcher.register(HOTEL_A, URL, ["booking.*"])
    everything = await dispatcher.register(HOTEL_A, URL + "/all", ["*"])
    await dispatcher.register(HOTEL_A, URL + "/rates", ["rate.updated"])
    await dispatcher.register(HOTEL_B, URL, ["*"])

    deliveries = await dispatcher.publish(HOTEL_A, "booking.created", {})

    assert {d.endpoint_id for d in deliveries} == {bookings.id, everything.id}
    assert all(d.max_attempts == 3 for d in deliveries)


def test_subscription_patterns(clock: ManualClock) -> None:
    endpoint = EndpointRecord(
        id="ep-1",
        hotel_id=HOTEL_A,
        url=URL,
        secret="whsec_x",
        events=("booking.*", "rate.updated"),
        created_at=clock.now(),
    )

    assert endpoint.subscribes("booking.created")
    assert endpoint.subscribes("rate.updated")
    assert not endpoint.subscribes("bookings.created")
    assert not endpoint.subscribes("rate.deleted")


@pytest.mark.anyio
async def test_register_validates_input(clock: ManualClock) -> None:
    dispatcher = _dispatcher(clock, _Consumer(), [])

    with pytest.raises(ValueError):
        await dispatcher.register(HOTEL_A, URL, [])
    with pytest.raises(ValueError):
        await dispatcher.register(HOTEL_A, "ftp://pms.example.com", ["booking.created"])


@pytest.mark.anyio
async def test_update_changes_target_and_reactivates(clock: ManualClock) -> None:
    consumer = _Consumer()
    dispatcher = _dispatcher(clock, consumer, [])
    endpoint = await dispatcher.register(HOTEL_A, URL, ["booking.created"])
    await dispatcher.deactivate(HOTEL_A, endpoint.id)

    updated = await dispatcher.update(
        HOTEL_A, endpoint.id, url=URL + "/v2", events=["rate.*", "rate.*"], name="Rates", is_active=True,
    )
    await dispatcher.publish(HOTEL_A, "rate.updated", {})
    await dispatcher.process_due()

    assert (updated.url, updated.events, updated.name, updated.is_active) == (URL + "/v2", ("rate.*",), "Rates", True)
    assert updated.secret == endpoint.secret
    assert [str(r.url) for r in consumer.requests] == [URL + "/v2"]
    assert await dispatcher.publish(HOTEL_A, "booking.created", {}) == []

    with pytest.raises(ValueError):
        await dispatcher.update(HOTEL_A, endpoint.id, events=[" "])
    with pytest.raises(EndpointNotFound):
        await dispatcher.update(HOTEL_B, endpoint.id, name="mine")


@pytest.mark.anyio
async def test_endpoints_are_scoped_to_their_hotel(clock: ManualClock) -> None:
    dispatcher = _dispatcher(clock, _Consumer(), [])
    endpoint = await dispatcher.register(HOTEL_A, URL, ["booking.created"])

    with pytest.raises(EndpointNotFound):
        await dispatcher.get_endpoint(HOTEL_B, endpoint.id)
    with pytest.raises(EndpointNotFound):
        await dispatcher.deactivate(HOTEL_B, endpoint.id)
    assert await dispatcher.list_endpoints(HOTEL_B) == []


@pytest.mark.anyio
async def test_test_endpoint_sends_immediately(clock: ManualClock) -> None:
    consumer = _Consumer()
    observations: list[RequestObservation] = []
    dispatcher = _dispatcher(clock, consumer, observations)
    endpoint = await dispatcher.register(HOTEL_A, URL, ["booking.created"], name="Front desk")
    old_secret = endpoint.secret

    result = await dispatcher.test_endpoint(HOTEL_A, endpoint.id)

    assert result.success and result.status_code == 200
    assert consumer.requests[0].headers["X-Webhook-Event"] == "system.webhook_test"
    assert json.loads(consumer.requests[0].content)["data"]["endpoint"]["name"] == "Front desk"
    assert observations[0].path == "system.webhook_test"
    assert (await dispatcher.stats(HOTEL_A)).success_rate == Decimal("100.00")

    rotated = await dispatcher.regenerate_secret(HOTEL_A, endpoint.id)
    assert rotated.secret != old_secret
    assert rotated.secret.startswith("whsec_")
