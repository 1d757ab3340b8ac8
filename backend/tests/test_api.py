"""Tests for the admin routes: API keys, dashboards, exports, rate limits and webhooks."""
from __future__ import annotations

import csv
import io

import httpx
import pytest
from fastapi import FastAPI

from app.core.clock import ManualClock
from app.core.config import Settings
from app.core.services import Services, build_services
from app.main import create_app
from app.services.api_keys import KeyType
from app.services.rate_limiter import Quota
from support import HOTEL_A, HOTEL_B, add_domain_routes, make_client, settle


@pytest.fixture
async def admin_key(services: Services) -> str:
    _, raw_key = await services.keys.issue(HOTEL_A, KeyType.ADMIN, "test", name="ops")
    return raw_key


# ── API keys ────────────────────────────────────────────────
@pytest.mark.anyio
async def test_key_lifecycle_over_http(app: FastAPI, admin_key: str) -> None:
    admin = {"X-API-Key": admin_key}
    async with make_client(app) as client:
        created = await client.post("/api/v1/api-keys", headers=admin, json={
            "name": "PMS sync",
            "type": "write",
            "environment": "test",
            "rate_limits": {"per_minute": 5},
        })
        assert created.status_code == 201
        body = created.json()
        key_id, raw_key = body["id"], body["key"]
        assert raw_key.startswith("wk_test_")
        assert body["prefix"] == raw_key[:20]
        assert body["status"] == "active"
        assert body["rate_limits"]["per_minute"] == 5

        listed = await client.get("/api/v1/api-keys", headers=admin, params={"type": "write"})
        assert [k["id"] for k in listed.json()] == [key_id]
        assert "key" not in listed.json()[0]

        fetched = await client.get(f"/api/v1/api-keys/{key_id}", headers=admin)
        assert fetched.json()["name"] == "PMS sync"

        paused = await client.patch(f"/api/v1/api-keys/{key_id}/status", headers=admin, json={"is_active": False})
        assert paused.json()["status"] == "inactive"
        assert (await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})).status_code == 401

        revoked = await client.delete(f"/api/v1/api-keys/{key_id}", headers=admin)
        assert revoked.json()["status"] == "revoked"
        reactivate = await client.patch(f"/api/v1/api-keys/{key_id}/status", headers=admin, json={"is_active": True})
        assert reactivate.status_code == 409


@pytest.mark.anyio
async def test_keys_of_other_hotels_are_not_found(app: FastAPI, services: Services, admin_key: str) -> None:
    other, _ = await services.keys.issue(HOTEL_B, KeyType.READ, "test")

    async with make_client(app) as client:
        fetched = await client.get(f"/api/v1/api-keys/{other.id}", headers={"X-API-Key": admin_key})
        revoked = await client.delete(f"/api/v1/api-keys/{other.id}", headers={"X-API-Key": admin_key})

    assert fetched.status_code == 404
    assert revoked.status_code == 404
    assert (await services.keys.get(HOTEL_B, other.id)).revoked_at is None


@pytest.mark.anyio
async def test_admin_routes_need_an_admin_key(app: FastAPI, services: Services) -> None:
    _, reader = await services.keys.issue(HOTEL_A, KeyType.READ, "test")

    async with make_client(app) as client:
        missing = await client.get("/api/v1/api-keys")
        as_reader = await client.get("/api/v1/api-keys", headers={"X-API-Key": reader})
        dashboard_as_reader = await client.get("/api/v1/api-management/metrics", headers={"X-API-Key": reader})

    assert missing.status_code == 401
    assert as_reader.status_code == 403
    assert dashboard_as_reader.status_code == 403


@pytest.mark.anyio
async def test_issue_rejects_past_expiry(app: FastAPI, admin_key: str) -> None:
    async with make_client(app) as client:
        response = await client.post("/api/v1/api-keys", headers={"X-API-Key": admin_key}, json={
            "expires_at": "2020-01-01T00:00:00Z",
        })

    assert response.status_code == 422


@pytest.mark.anyio
async def test_updated_quota_applies_to_the_next_request(app: FastAPI, services: Services, admin_key: str) -> None:
    record, raw_key = await services.keys.issue(HOTEL_A, KeyType.READ, "test", quota=Quota(per_minute=5))
    admin = {"X-API-Key": admin_key}

    async with make_client(app) as client:
        assert (await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})).status_code == 200

        updated = await client.patch(f"/api/v1/api-keys/{record.id}", headers=admin, json={
            "rate_limits": {"per_minute": 1},
            "allowed_domains": ["Booking.Example.com"],
        })
        assert updated.status_code == 200
        assert updated.json()["rate_limits"] == {"per_minute": 1, "per_hour": None, "per_day": None}
        assert updated.json()["allowed_domains"] == ["booking.example.com"]
        assert updated.json()["name"] == ""

        denied = await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})
        assert denied.status_code == 429
        assert denied.json()["scope"] == "key"

        restored = await client.patch(f"/api/v1/api-keys/{record.id}", headers=admin, json={"rate_limits": {}})
        assert restored.json()["rate_limits"] is None
        assert (await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})).status_code == 200


@pytest.mark.anyio
async def test_key_update_is_validated(app: FastAPI, services: Services, admin_key: str) -> None:
    record, _ = await services.keys.issue(HOTEL_A, KeyType.READ, "test")
    other, _ = await services.keys.issue(HOTEL_B, KeyType.READ, "test")
    admin = {"X-API-Key": admin_key}

    async with make_client(app) as client:
        expiry = await client.patch(
            f"/api/v1/api-keys/{record.id}", headers=admin, json={"expires_at": "2030-01-01T00:00:00Z"},
        )
        bad_ip = await client.patch(f"/api/v1/api-keys/{record.id}", headers=admin, json={"allowed_ips": ["lobby"]})
        foreign = await client.patch(f"/api/v1/api-keys/{other.id}", headers=admin, json={"name": "mine"})
        await client.delete(f"/api/v1/api-keys/{record.id}", headers=admin)
        revoked = await client.patch(f"/api/v1/api-keys/{record.id}", headers=admin, json={"name": "again"})

    assert expiry.status_code == 422
    assert bad_ip.status_code == 422
    assert foreign.status_code == 404
    assert revoked.status_code == 409


@pytest.mark.anyio
async def test_partial_key_quota_keeps_default_windows(clock: ManualClock) -> None:
    settings = Settings(
        _env_file=None, DATABASE_URL=None, REDIS_URL=None, COUNTER_BACKEND="memory", KEY_LIMIT_PER_HOUR=2,
    )
    services = build_services(settings, clock=clock, http_client=httpx.AsyncClient(transport=httpx.MockTransport(
        lambda request: httpx.Response(200),
    )))
    app = create_app(settings, services)
    add_domain_routes(app)
    _, admin_key = await services.keys.issue(HOTEL_A, KeyType.ADMIN, "test")

    async with make_client(app) as client:
        created = await client.post("/api/v1/api-keys", headers={"X-API-Key": admin_key}, json={
            "rate_limits": {"per_minute": 50},
        })
        raw_key = created.json()["key"]
        statuses = [
            (await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})).status_code
            for _ in range(4)
        ]

    assert statuses == [200, 200, 429, 429]


@pytest.mark.anyio
async def test_key_usage_report(app: FastAPI, services: Services, admin_key: str) -> None:
    reader, raw_key = await services.keys.issue(HOTEL_A, KeyType.READ, "test", name="kiosk")

    async with make_client(app) as client:
        for _ in range(3):
            await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})
        await settle(services)
        usage = await client.get("/api/v1/api-keys/usage", headers={"X-API-Key": admin_key})

    (row,) = usage.json()
    assert row["key_id"] == reader.id
    assert row["name"] == "kiosk"
    assert row["requests"] == 3
    assert row["total_requests"] == 3


# ── Dashboards ──────────────────────────────────────────────
@pytest.mark.anyio
async def test_endpoint_drill_down(app: FastAPI, services: Services, admin_key: str) -> None:
    _, raw_key = await services.keys.issue(HOTEL_A, KeyType.READ, "test")
    admin = {"X-API-Key": admin_key}

    async with make_client(app) as client:
        await client.get("/api/v1/rooms/12", headers={"X-API-Key": raw_key})
        await client.get("/api/v1/rooms/13", headers={"X-API-Key": raw_key})
        await settle(services)

        usage = await client.get(
            "/api/v1/api-management/endpoint-usage",
            headers=admin,
            params={"method": "get", "path": "/api/v1/rooms/99"},
        )
        missing = await client.get(
            "/api/v1/api-management/endpoint-usage",
            headers=admin,
            params={"method": "DELETE", "path": "/api/v1/rooms/99"},
        )
        bad_range = await client.get("/api/v1/api-management/metrics", headers=admin, params={"range": "2w"})

    assert usage.status_code == 200
    body = usage.json()
    assert (body["path"], body["total"], body["category"]) == ("/api/v1/rooms/:id", 2, "rooms")
    assert body["by_status_code"] == {"200": 2}
    assert missing.status_code == 404
    assert bad_range.status_code == 422


@pytest.mark.anyio
async def test_pipeline_health(app: FastAPI, services: Services, admin_key: str) -> None:
    async with make_client(app) as client:
        response = await client.get("/api/v1/api-management/health", headers={"X-API-Key": admin_key})

    body = response.json()
    assert response.status_code == 200
    assert body["dropped_observations"] == 0
    assert body["rate_limits"]["fail_open_count"] == 0
    assert body["rate_limits"]["by_scope"]["hotel"] == 3


# ── Rate limits ─────────────────────────────────────────────
@pytest.mark.anyio
async def test_rate_limit_status_and_reset(app: FastAPI, services: Services, admin_key: str) -> None:
    reader, raw_key = await services.keys.issue(HOTEL_A, KeyType.READ, "test", quota=Quota(per_minute=3))
    admin = {"X-API-Key": admin_key}

    async with make_client(app) as client:
        for _ in range(3):
            await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})
        assert (await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})).status_code == 429

        report = await client.get("/api/v1/api-management/rate-limits", headers=admin, params={"key_id": reader.id})
        assert report.json()["key"]["minute"] == {"current": 3, "limit": 3}

        reset = await client.post(
            "/api/v1/api-management/rate-limits/reset",
            headers=admin,
            json={"scope": "key", "identifier": reader.id},
        )
        assert reset.json() == {"scope": "key", "identifier": reader.id, "removed": 3}
        assert (await client.get("/api/v1/rooms/1", headers={"X-API-Key": raw_key})).status_code == 200

        no_identifier = await client.post(
            "/api/v1/api-management/rate-limits/reset", headers=admin, json={"scope": "user"},
        )
        assert no_identifier.status_code == 422


# ── Webhooks ────────────────────────────────────────────────
@pytest.mark.anyio
async def test_webhook_admin_flow(
    app: FastAPI,
    services: Services,
    admin_key: str,
    webhook_requests: list[httpx.Request],
) -> None:
    admin = {"X-API-Key": admin_key}
    async with make_client(app) as client:
        created = await client.post("/api/v1/webhooks", headers=admin, json={
            "url": "https://pms.example.com/hooks",
            "name": "PMS",
            "events": ["booking.*"],
        })
        assert created.status_code == 201
        endpoint = created.json()
        assert endpoint["secret"].startswith("whsec_")

        listed = await client.get("/api/v1/webhooks", headers=admin)
        assert [e["id"] for e in listed.json()] == [endpoint["id"]]
        assert "secret" not in listed.json()[0]

        published = await client.post("/api/v1/webhooks/events", headers=admin, json={
            "event": "booking.created",
            "data": {"bookingId": "b-1"},
        })
        assert published.status_code == 202
        assert [d["status"] for d in published.json()["deliveries"]] == ["pending"]

        await services.dispatcher.process_due()
        deliveries = await client.get(f"/api/v1/webhooks/{endpoint['id']}/deliveries", headers=admin)
        assert [(d["event"], d["status"], d["attempts"]) for d in deliveries.json()] == [
            ("booking.created", "succeeded", 1),
        ]

        tested = await client.post(f"/api/v1/webhooks/{endpoint['id']}/test", headers=admin)
        assert tested.json()["success"] is True

        stats = await client.get("/api/v1/webhooks/stats", headers=admin)
        assert stats.json()["total_deliveries"] == 2
        assert stats.json()["queue"] == {"succeeded": 1}

        deleted = await client.delete(f"/api/v1/webhooks/{endpoint['id']}", headers=admin)
        assert deleted.json()["is_active"] is False

    assert [r.headers["X-Webhook-Event"] for r in webhook_requests] == ["booking.created", "system.webhook_test"]


@pytest.mark.anyio
async def test_webhooks_of_other_hotels_are_not_found(app: FastAPI, services: Services, admin_key: str) -> None:
    other = await services.dispatcher.register(HOTEL_B, "https://other.example.com/hooks", ["*"])

    async with make_client(app) as client:
        fetched = await client.get(f"/api/v1/webhooks/{other.id}", headers={"X-API-Key": admin_key})
        tested = await client.post(f"/api/v1/webhooks/{other.id}/test", headers={"X-API-Key": admin_key})

    assert fetched.status_code == 404
    assert tested.status_code == 404


@pytest.mark.anyio
async def test_webhook_registration_is_validated(app: FastAPI, admin_key: str) -> None:
    async with make_client(app) as client:
        no_events = await client.post("/api/v1/webhooks", headers={"X-API-Key": admin_key}, json={
            "url": "https://pms.example.com/hooks",
            "events": [],
        })
        bad_event = await client.post("/api/v1/webhooks/events", headers={"X-API-Key": admin_key}, json={
            "event": "Booking Created",
        })

    assert no_events.status_code == 422
    assert bad_event.status_code == 422


@pytest.mark.anyio
async def test_webhook_update_over_http(app: FastAPI, services: Services, admin_key: str) -> None:
    admin = {"X-API-Key": admin_key}
    endpoint = await services.dispatcher.register(HOTEL_A, "https://pms.example.com/hooks", ["booking.*"])
    other = await services.dispatcher.register(HOTEL_B, "https://other.example.com/hooks", ["*"])

    async with make_client(app) as client:
        await client.delete(f"/api/v1/webhooks/{endpoint.id}", headers=admin)
        updated = await client.patch(f"/api/v1/webhooks/{endpoint.id}", headers=admin, json={
            "url": "https://pms.example.com/hooks/v2",
            "events": ["rate.updated"],
            "is_active": True,
        })
        bad_url = await client.patch(f"/api/v1/webhooks/{endpoint.id}", headers=admin, json={"url": "not a url"})
        no_events = await client.patch(f"/api/v1/webhooks/{endpoint.id}", headers=admin, json={"events": []})
        foreign = await client.patch(f"/api/v1/webhooks/{other.id}", headers=admin, json={"name": "mine"})

    assert updated.status_code == 200
    body = updated.json()
    assert (body["url"], body["events"], body["is_active"]) == ("https://pms.example.com/hooks/v2", ["rate.updated"], True)
    assert "secret" not in body
    assert bad_url.status_code == 422
    assert no_events.status_code == 422
    assert foreign.status_code == 404


# ── Export ──────────────────────────────────────────────────
@pytest.mark.anyio
async def test_export_metrics(app: FastAPI, services: Services, clock: ManualClock, admin_key: str) -> None:
    _, reader = await services.keys.issue(HOTEL_A, KeyType.READ, "test")
    _, outsider = await services.keys.issue(HOTEL_B, KeyType.READ, "test")
    admin = {"X-API-Key": admin_key}
    window = {"start": "2026-03-10T12:00:00Z", "end": "2026-03-10T12:02:00Z"}

    async with make_client(app) as client:
        await client.get("/api/v1/rooms/1", headers={"X-API-Key": reader})
        await client.get("/api/v1/rooms/2", headers={"X-API-Key": reader})
        await client.get("/api/v1/guests/3", headers={"X-API-Key": reader})
        await client.get("/api/v1/guests/4", headers={"X-API-Key": outsider})
        clock.advance(60)
        await client.get("/api/v1/rooms/1", headers={"X-API-Key": reader})
        await settle(services)

        as_json = await client.get("/api/v1/api-management/export", headers=admin, params=window)
        as_csv = await client.get("/api/v1/api-management/export", headers=admin, params={
            **window, "format": "csv", "endpoints": "/api/v1/rooms/7",
        })
        services.settings.EXPORT_MAX_ROWS = 1
        capped = await client.get("/api/v1/api-management/export", headers=admin, params=window)
        backwards = await client.get("/api/v1/api-management/export", headers=admin, params={
            "start": window["end"], "end": window["start"],
        })

    assert as_json.status_code == 200
    assert as_json.headers["Content-Disposition"] == 'attachment; filename="api-metrics.json"'
    assert [(r["bucket_start"][11:16], r["path"], r["requests"]) for r in as_json.json()] == [
        ("12:01", "/api/v1/rooms/:id", 1),
        ("12:00", "/api/v1/guests/:id", 1),
        ("12:00", "/api/v1/rooms/:id", 2),
    ]

    assert as_csv.headers["content-type"].startswith("text/csv")
    assert as_csv.headers["Content-Disposition"] == 'attachment; filename="api-metrics.csv"'
    rows = list(csv.DictReader(io.StringIO(as_csv.text)))
    assert [(r["method"], r["path"], r["requests"]) for r in rows] == [
        ("GET", "/api/v1/rooms/:id", "1"),
        ("GET", "/api/v1/rooms/:id", "2"),
    ]

    assert len(capped.json()) == 1
    assert backwards.status_code == 422
