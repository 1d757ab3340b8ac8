"""
Rate-limit counter model for the SQL counter back-end.

Each row is one counter key, e.g. "rate:hotel:<id>:minute:<bucket epoch>".
The key already names its bucket; `expires_at` is the bucket end so expired
rows can be ignored on read and purged by maintenance.

Atomic increments via INSERT … ON CONFLICT DO UPDATE … RETURNING ensure
two concurrent increments never observe the same value.
"""

import datetime

from sqlalchemy import BigInteger, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class RateCounter(Base):
    """One expiring counter."""

    __tablename__ = "rate_counters"

    key: Mapped[str] = mapped_column(
        Text,
        primary_key=True,
    )
    count: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )
    expires_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<RateCounter key={self.key!r} count={self.count}>"
