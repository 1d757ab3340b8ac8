"""
Dev bootstrap script — create a hotel and an admin API key for local development.

Usage:
    python -m scripts.bootstrap_dev

This will:
  1. Create a new hotel named "Dev Hotel"
  2. Issue an admin API key for it
  3. Print the raw key ONCE (only its salted hash is stored)

The admin key can issue further keys through /api/v1/api-keys.
"""

import asyncio
import sys

# Ensure the project root is on the path
sys.path.insert(0, ".")

from app.core.clock import Clock
from app.core.config import settings
from app.core.database import build_engine, build_session_factory
from app.models.hotel import Hotel
from app.services.api_keys import APIKeyRegistry, KeyType, SQLAPIKeyRepository


async def main() -> None:
    if not settings.DATABASE_URL:
        sys.exit("DATABASE_URL is not set — nothing to bootstrap.")

    hotel_name = "Dev Hotel"
    engine = build_engine(settings.DATABASE_URL)
    sessions = build_session_factory(engine)

    # ── Create hotel ────────────────────────────────────────
    async with sessions() as session:
        hotel = Hotel(name=hotel_name)
        session.add(hotel)
        await session.commit()
        hotel_id = hotel.id

    # ── Issue admin key ─────────────────────────────────────
    registry = APIKeyRegistry(SQLAPIKeyRepository(sessions), Clock())
    record, raw_key = await registry.issue(
        hotel_id, KeyType.ADMIN, "test", name="bootstrap",
    )

    # ── Print results ───────────────────────────────────────
    print()
    print("=" * 60)
    print("  Dev Bootstrap Complete")
    print("=" * 60)
    print()
    print(f"  Hotel:      {hotel_name}")
    print(f"  Hotel ID:   {hotel_id}")
    print()
    print(f"  Key ID:     {record.id}")
    print(f"  API Key:    {raw_key}")
    print()
    print("  ⚠  Copy this key now — it will NEVER be shown again.")
    print("=" * 60)
    print()

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
