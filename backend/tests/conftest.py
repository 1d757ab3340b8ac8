import random

import httpx
import pytest
from fastapi import FastAPI

from app.core.clock import ManualClock
from app.core.config import Settings
from app.core.services import Services, build_services
from app.main import create_app
from support import START, add_domain_routes


@pytest.fixture
def anyio_backend() -> str:
    """Force anyio-based tests to run with asyncio backend only."""

    return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=None,
        REDIS_URL=None,
        COUNTER_BACKEND="memory",
    )


@pytest.fixture
def webhook_requests() -> list[httpx.Request]:
    """Every request the stub webhook consumer received."""
    return []


@pytest.fixture
def services(settings: Settings, clock: ManualClock, webhook_requests: list[httpx.Request]) -> Services:
    def consumer(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(200, json={"received": True})

    return build_services(
        settings,
        clock=clock,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(consumer)),
        rng=random.Random(7),
    )


@pytest.fixture
def app(settings: Settings, services: Services) -> FastAPI:
    application = create_app(settings, services)
    add_domain_routes(application)
    return application
