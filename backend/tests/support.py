"""Shared constants and helpers for the test modules."""

import datetime

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.services import Services

HOTEL_A = "64b7f0c2a1e4d3f5a6b7c8d9"
HOTEL_B = "64b7f0c2a1e4d3f5a6b7c8da"

START = datetime.datetime(2026, 3, 10, 12, 0, 10, tzinfo=datetime.timezone.utc)


def add_domain_routes(app: FastAPI) -> None:
    """Stand-ins for the hotel API the interceptor sits in front of."""

    @app.get("/api/v1/rooms/{room_id}")
    async def get_room(room_id: str) -> dict[str, str]:
        return {"id": room_id, "type": "double"}

    @app.get("/api/v1/guests/{guest_id}")
    async def get_guest(guest_id: str) -> dict[str, str]:
        return {"id": guest_id}

    @app.post("/api/v1/bookings", status_code=201)
    async def create_booking(request: Request) -> dict[str, object]:
        return {"id": "b-1", "booking": await request.json()}

    @app.get("/api/v1/inventory/sync")
    async def sync_inventory(request: Request) -> JSONResponse:
        # Upstream channel manager takes 120 ms and then gives up
        request.app.state.services.clock.advance(0.120)
        return JSONResponse({"detail": "channel manager unavailable"}, status_code=503)


def make_client(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


async def settle(services: Services) -> None:
    """Run the post-response work the background workers would do."""
    await services.tasks.wait_idle()
    await services.queue.drain()
    await services.aggregator.flush()
