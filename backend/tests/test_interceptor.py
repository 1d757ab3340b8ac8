"""End-to-end tests of the request interceptor in front of stub hotel routes."""
from __future__ import annotations

from collections.abc import AsyncIterator
from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.responses import StreamingResponse
from fastapi.testclient import TestClient

from app.core.clock import ManualClock, Window, epoch_seconds, next_bucket
from app.core.services import Services
from app.middleware.interceptor import _observed
from app.services.aggregates import RequestObservation
from app.services.api_keys import KeyType
from app.services.rate_limiter import Quota
from support import HOTEL_A, HOTEL_B, make_client, settle


@pytest.mark.anyio
async def test_key_quota_is_enforced_with_headers(app: FastAPI, services: Services, clock: ManualClock) -> None:
    _, raw_key = await services.keys.issue(HOTEL_A, KeyType.READ, "test", quota=Quota(per_minute=3))
    reset = str(epoch_seconds(next_bucket(clock.now(), Window.MINUTE)))

    async with make_client(app) as client:
        responses = [
            await client.get("/api/v1/rooms/101", headers={"X-API-Key": raw_key})
            for _ in range(5)
        ]

    assert [r.status_code for r in responses] == [200, 200, 200, 429, 429]
    first = responses[0]
    assert first.headers["X-RateLimit-Limit-Minute"] == "3"
    assert first.headers["X-RateLimit-Remaining-Minute"] == "2"
    assert first.headers["X-RateLimit-Reset"] == reset
    assert responses[2].headers["X-RateLimit-Remaining-Minute"] == "0"

    denied = responses[3]
    assert denied.headers["X-RateLimit-Reset"] == reset
    assert denied.json()["scope"] == "key"
    assert denied.json()["error"] == "Too Many Requests"

    await settle(services)
    (row,) = await services.store.scan(Window.MINUTE, clock.now().replace(second=0), clock.now().replace(minute=1))
    assert (row.total, row.successful, row.rate_limited) == (5, 3, 2)


@pytest.mark.anyio
async def test_ids_collapse_into_one_aggregate(app: FastAPI, services: Services) -> None:
    _, raw_key = await services.keys.issue(HOTEL_A, KeyType.READ, "test")

    async with make_client(app) as client:
        for room_id in ("507f1f77bcf86cd799439011", "507f1f77bcf86cd799439012"):
            response = await client.get(f"/api/v1/rooms/{room_id}", headers={"Authorization": f"Bearer {raw_key}"})
            assert response.status_code == 200

    await services.tasks.wait_idle()
    await services.queue.drain()

    (aggregate,) = services.aggregator.live.values()
    assert aggregate.endpoint == "GET /api/v1/rooms/:id"
    assert aggregate.category == "rooms"
    assert aggregate.total == 2


@pytest.mark.anyio
async def test_upstream_failure_is_recorded_as_server_error(app: FastAPI, services: Services) -> None:
    _, reader = await services.keys.issue(HOTEL_A, KeyType.READ, "test")
    _, admin = await services.keys.issue(HOTEL_A, KeyType.ADMIN, "test")

    async with make_client(app) as client:
        response = await client.get("/api/v1/inventory/sync", headers={"X-API-Key": reader})
        assert response.status_code == 503

        await services.tasks.wait_idle()
        await services.queue.drain()
        (aggregate,) = services.aggregator.live.values()
        assert aggregate.failed == 1
        assert aggregate.by_status_class == {"500": 1}
        assert list(aggregate.sample) == [120.0]

        await services.aggregator.flush()
        dashboard = await client.get(
            "/api/v1/api-management/metrics", params={"range": "1h"}, headers={"X-API-Key": admin},
        )

    assert dashboard.status_code == 200
    body = dashboard.json()
    assert body["total_requests"] == 1
    assert Decimal(str(body["error_rate"])) == 100
    assert body["avg_response_time"] == 120


@pytest.mark.anyio
async def test_hotels_only_see_their_own_traffic(app: FastAPI, services: Services) -> None:
    busy, busy_key = await services.keys.issue(
        HOTEL_A, KeyType.READ, "test", quota=Quota(per_minute=200, per_hour=2_000, per_day=20_000),
    )
    _, quiet_key = await services.keys.issue(HOTEL_B, KeyType.READ, "test")
    _, quiet_admin = await services.keys.issue(HOTEL_B, KeyType.ADMIN, "test")

    async with make_client(app) as client:
        for n in range(100):
            response = await client.get(f"/api/v1/guests/{n}", headers={"X-API-Key": busy_key})
            assert response.status_code == 200
        assert (await client.get("/api/v1/rooms/7", headers={"X-API-Key": quiet_key})).status_code == 200

        await settle(services)

        for range_spec in ("1h", "24h", "7d", "30d"):
            dashboard = await client.get(
                "/api/v1/api-management/metrics",
                params={"range": range_spec},
                headers={"X-API-Key": quiet_admin},
            )
            assert dashboard.json()["total_requests"] == 1

        top = await client.get("/api/v1/api-management/top-endpoints", headers={"X-API-Key": quiet_admin})

    assert [e["endpoint"] for e in top.json()] == ["GET /api/v1/rooms/:id"]
    assert (await services.keys.get(HOTEL_A, busy.id)).total_requests == 100


@pytest.mark.anyio
async def test_authentication_failures(app: FastAPI, services: Services) -> None:
    record, raw_key = await services.keys.issue(HOTEL_A, KeyType.READ, "test")
    await services.keys.revoke(HOTEL_A, record.id)

    async with make_client(app) as client:
        revoked = await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})
        unknown = await client.get("/api/v1/rooms/1", headers={"X-API-Key": "rk_test_" + "0" * 64})

    for response in (revoked, unknown):
        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid or missing API key."}
        assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.anyio
async def test_read_key_cannot_write(app: FastAPI, services: Services) -> None:
    _, reader = await services.keys.issue(HOTEL_A, KeyType.READ, "test")
    _, writer = await services.keys.issue(HOTEL_A, KeyType.WRITE, "test")

    async with make_client(app) as client:
        denied = await client.post("/api/v1/bookings", json={"room": "101"}, headers={"X-API-Key": reader})
        created = await client.post("/api/v1/bookings", json={"room": "101"}, headers={"X-API-Key": writer})

    assert denied.status_code == 403
    assert created.status_code == 201
    assert created.json()["booking"] == {"room": "101"}


def test_health_is_not_tracked(app: FastAPI, services: Services) -> None:
    client = TestClient(app)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
    assert services.queue.submitted == 0


def test_lifespan_flushes_on_shutdown(app: FastAPI, services: Services) -> None:
    with TestClient(app) as client:
        assert client.get("/api/v1/rooms/1").status_code == 200

    # Without a key the request cannot be attributed to a hotel
    assert services.queue.submitted == 1
    assert len(services.queue) == 0
    assert services.aggregator.untracked == 1


@pytest.mark.anyio
async def test_streamed_body_bytes_are_counted(app: FastAPI, services: Services) -> None:
    @app.get("/api/v1/reports/occupancy")
    async def occupancy_report() -> StreamingResponse:
        async def rows() -> AsyncIterator[bytes]:
            for floor in range(3):
                yield f"floor-{floor},0.8\n".encode()

        return StreamingResponse(rows(), media_type="text/csv")

    _, raw_key = await services.keys.issue(HOTEL_A, KeyType.READ, "test")
    async with make_client(app) as client:
        response = await client.get("/api/v1/reports/occupancy", headers={"X-API-Key": raw_key})

    await services.tasks.wait_idle()
    await services.queue.drain()
    (aggregate,) = services.aggregator.live.values()
    assert aggregate.response_bytes == len(response.content) == 36
    assert aggregate.category == "reports"


@pytest.mark.anyio
async def test_abandoned_body_is_observed_once_with_the_bytes_sent() -> None:
    async def chunks() -> AsyncIterator[bytes]:
        for _ in range(3):
            yield b"x" * 10

    observed: list[tuple[int, int]] = []
    body = _observed(chunks(), 200, lambda status, size: observed.append((status, size)))

    assert await body.__anext__() == b"x" * 10
    # Client went away after the first chunk
    await body.aclose()

    assert observed == [(200, 10)]


@pytest.mark.anyio
async def test_body_failure_is_observed_as_server_error() -> None:
    async def chunks() -> AsyncIterator[bytes]:
        yield b"x" * 10
        raise ConnectionResetError("upstream closed")

    observed: list[tuple[int, int]] = []
    body = _observed(chunks(), 200, lambda status, size: observed.append((status, size)))

    with pytest.raises(ConnectionResetError):
        async for _ in body:
            pass

    assert observed == [(500, 10)]


@pytest.mark.anyio
async def test_key_store_failure_is_observed(
    app: FastAPI,
    services: Services,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def unreachable(plaintext: str | None) -> None:
        raise ConnectionError("key store unreachable")

    submitted: list[RequestObservation] = []
    monkeypatch.setattr(services.keys, "authenticate", unreachable)
    monkeypatch.setattr(services.queue, "submit", submitted.append)

    async with make_client(app) as client:
        with pytest.raises(ConnectionError):
            await client.get("/api/v1/rooms/1", headers={"X-API-Key": "rk_test_" + "0" * 64})

    assert [(obs.status, obs.path, obs.key_id) for obs in submitted] == [(500, "/api/v1/rooms/:id", None)]
