"""
Pydantic v2 schemas for API key administration.

Separation:
  • APIKeyCreate  — what the admin sends. Type, environment, quotas and
    restrictions only; hashes and prefixes are server-side.
  • APIKeyUpdate  — name, quota and restrictions an admin may replace later.
  • APIKeyOut     — the stored key as shown in listings (never the secret).
  • APIKeyCreated — APIKeyOut plus the plaintext key, returned exactly once.
"""

from __future__ import annotations

import datetime
import ipaddress
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from app.services.api_keys import APIKeyRecord, KeyStatus, KeyType
from app.services.rate_limiter import Quota


class QuotaIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    per_minute: int | None = Field(default=None, ge=1)
    per_hour: int | None = Field(default=None, ge=1)
    per_day: int | None = Field(default=None, ge=1)

    def to_quota(self) -> Quota | None:
        if self.per_minute is None and self.per_hour is None and self.per_day is None:
            return None
        return Quota(self.per_minute, self.per_hour, self.per_day)


class QuotaOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    per_minute: int | None
    per_hour: int | None
    per_day: int | None


def _valid_networks(value: list[str]) -> list[str]:
    for entry in value:
        ipaddress.ip_network(entry, strict=False)
    return value


def _lowercase_domains(value: list[str]) -> list[str]:
    return [entry.strip().lower() for entry in value if entry.strip()]


AllowedIPs = Annotated[list[str], AfterValidator(_valid_networks)]
AllowedDomains = Annotated[list[str], AfterValidator(_lowercase_domains)]


# ── Request schemas ─────────────────────────────────────────
class APIKeyCreate(BaseModel):
    """
    Payload accepted by POST /api/v1/api-keys.

    extra="forbid" so a client cannot smuggle in a hotel_id or a hash.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="", max_length=100, examples=["Channel manager"])
    type: KeyType = Field(
        default=KeyType.READ,
        description="read → safe methods; write → any method; admin → key, metrics and webhook admin.",
    )
    environment: Literal["live", "test"] = "live"
    rate_limits: QuotaIn | None = Field(
        default=None,
        description="Per-key quota. Omitted windows fall back to the server default.",
    )
    allowed_ips: AllowedIPs = Field(default_factory=list, examples=[["203.0.113.7", "10.0.0.0/8"]])
    allowed_domains: AllowedDomains = Field(default_factory=list, examples=[["booking.example.com"]])
    expires_at: datetime.datetime | None = None


class APIKeyUpdate(BaseModel):
    """
    Payload accepted by PATCH /api/v1/api-keys/{id}.

    Only the fields sent are changed. rate_limits replaces the key's whole
    quota; {} drops it so the server default applies. Type, environment
    and expiry are fixed at issue time.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, max_length=100)
    rate_limits: QuotaIn | None = None
    allowed_ips: AllowedIPs | None = None
    allowed_domains: AllowedDomains | None = None


class APIKeyStatusUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_active: bool


# ── Response schemas ────────────────────────────────────────
class APIKeyOut(BaseModel):
    id: str
    hotel_id: str
    name: str
    type: KeyType
    environment: str
    prefix: str
    status: KeyStatus
    rate_limits: QuotaOut | None
    allowed_ips: list[str]
    allowed_domains: list[str]
    expires_at: datetime.datetime | None
    revoked_at: datetime.datetime | None
    created_by: str | None
    created_at: datetime.datetime
    total_requests: int
    last_used_at: datetime.datetime | None
    last_used_ip: str | None
    last_used_endpoint: str | None

    @classmethod
    def from_record(cls, record: APIKeyRecord, now: datetime.datetime) -> APIKeyOut:
        return cls(
            id=record.id,
            hotel_id=record.hotel_id,
            name=record.name,
            type=record.key_type,
            environment=record.environment,
            prefix=record.prefix,
            status=record.status_at(now),
            rate_limits=QuotaOut.model_validate(record.quota) if record.quota else None,
            allowed_ips=list(record.allowed_ips),
            allowed_domains=list(record.allowed_domains),
            expires_at=record.expires_at,
            revoked_at=record.revoked_at,
            created_by=record.created_by,
            created_at=record.created_at,
            total_requests=record.total_requests,
            last_used_at=record.last_used_at,
            last_used_ip=record.last_used_ip,
            last_used_endpoint=record.last_used_endpoint,
        )


class APIKeyCreated(APIKeyOut):
    key: str = Field(description="Plaintext key. Shown once; store it now.")


class KeyUsageOut(BaseModel):
    """Requests per key over a dashboard range, plus the key's soft usage hints."""

    key_id: str
    prefix: str | None
    name: str | None
    requests: int
    total_requests: int | None
    last_used_at: datetime.datetime | None
