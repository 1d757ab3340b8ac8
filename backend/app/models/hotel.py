"""
Hotel model — the tenant.

A hotel owns API keys and webhook endpoints. Metrics rows carry the hotel
id as a plain string so observations for hotels managed elsewhere are
still recorded.
"""

import datetime
import secrets

from sqlalchemy import String, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def new_hotel_id() -> str:
    """24 hex chars, the same shape as the ids the booking side issues."""
    return secrets.token_hex(12)


class Hotel(Base):
    """One hotel (tenant) — the top-level isolation boundary."""

    __tablename__ = "hotels"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=new_hotel_id,
    )
    name: Mapped[str] = mapped_column(
        Text, nullable=False,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Hotel id={self.id!s:.8} name={self.name!r}>"
