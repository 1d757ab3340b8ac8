"""
FastAPI application entrypoint.

Lifespan:
  • On startup: verify DB connectivity (when configured), start the
    observation worker, webhook dispatcher and rollup scheduler.
  • On shutdown: stop them, flush what the aggregator still holds,
    dispose the engine.

Routers:
  • /api/v1/api-keys        — API key administration
  • /api/v1/api-management  — dashboards and rate-limit administration
  • /api/v1/webhooks        — webhook endpoints and deliveries
  • /health                 — shallow liveness probe

Every request outside the skip list passes through RequestInterceptor.
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from sqlalchemy import text

from app.core.config import Settings, settings
from app.core.services import Services, build_services
from app.middleware.interceptor import RequestInterceptor
from app.routers.api_keys import router as api_keys_router
from app.routers.api_management import router as api_management_router
from app.routers.webhooks import router as webhooks_router

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    services: Services = app.state.services

    # Startup — verify DB is reachable
    if services.engine is not None:
        try:
            async with services.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connection verified ✓")
        except Exception:
            logger.warning(
                "Could not reach the database on startup. "
                "The app will start, but requests will fail until the DB is available."
            )
    else:
        logger.info("DATABASE_URL not set — using in-memory stores")

    # Startup — background workers
    services.start()
    logger.info("Background workers started ✓")

    yield  # ← application runs here

    # Shutdown — drain observations, close connections
    await services.stop()
    logger.info("Background workers stopped ✓")


# ── App ─────────────────────────────────────────────────────
def create_app(app_settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the application around one set of services.

    Tests pass their own services (manual clock, stub HTTP client);
    otherwise they are composed from settings.
    """
    app_settings = app_settings or settings
    app = FastAPI(
        title=app_settings.APP_NAME,
        version="0.1.0",
        description=(
            "Hotel API gateway — API keys, rate limiting, "
            "request metrics and webhook delivery."
        ),
        lifespan=lifespan,
    )
    app.state.services = services or build_services(app_settings)

    app.add_middleware(RequestInterceptor, skip_paths=app_settings.TRACKING_SKIP_PATHS)

    # Mount routers
    app.include_router(api_keys_router, prefix="/api/v1/api-keys")
    app.include_router(api_management_router, prefix="/api/v1/api-management")
    app.include_router(webhooks_router, prefix="/api/v1/webhooks")

    # ── Health check ────────────────────────────────────────
    @app.get(
        "/health",
        tags=["System"],
        summary="Liveness probe",
    )
    async def health_check() -> dict[str, str]:
        """Shallow health check — confirms the process is alive."""
        return {"status": "healthy"}

    return app


app = create_app()
