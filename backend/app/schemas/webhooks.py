"""
Pydantic v2 schemas for webhook administration.

The signing secret appears only in WebhookSecretOut, returned when an
endpoint is created or its secret is regenerated.
"""

from __future__ import annotations

import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from app.services.webhooks import DeliveryStatus


# ── Request schemas ─────────────────────────────────────────
class WebhookCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: HttpUrl
    name: str = Field(default="", max_length=100)
    events: list[str] = Field(
        ...,
        min_length=1,
        examples=[["booking.created", "booking.*"]],
        description='Event names. "*" subscribes to everything, "booking.*" to a family.',
    )


class WebhookUpdate(BaseModel):
    """Fields left out are unchanged. is_active=true re-enables a deactivated endpoint."""

    model_config = ConfigDict(extra="forbid")

    url: HttpUrl | None = None
    name: str | None = Field(default=None, max_length=100)
    events: list[str] | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class WebhookEventIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9_]+(\.[a-z0-9_]+)*$")
    data: dict[str, Any] = Field(default_factory=dict)


# ── Response schemas ────────────────────────────────────────
class WebhookOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    hotel_id: str
    name: str
    url: str
    events: list[str]
    is_active: bool
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    consecutive_failures: int
    last_attempt_at: datetime.datetime | None
    last_success_at: datetime.datetime | None
    last_status_code: int | None
    last_error: str | None
    created_at: datetime.datetime


class WebhookSecretOut(WebhookOut):
    secret: str


class DeliveryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    endpoint_id: str
    event: str
    status: DeliveryStatus
    attempts: int
    max_attempts: int
    next_attempt_at: datetime.datetime
    last_status_code: int | None
    last_error: str | None
    duration_ms: float | None
    created_at: datetime.datetime
    delivered_at: datetime.datetime | None


class PublishOut(BaseModel):
    event: str
    deliveries: list[DeliveryOut]


class TestDeliveryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    status_code: int | None
    duration_ms: float
    error: str | None


class WebhookStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    endpoints: int
    active_endpoints: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: Decimal
    queue: dict[str, int]
