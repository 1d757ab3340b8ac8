"""
Webhook dispatcher.

Publishing an event creates one delivery per active endpoint of the tenant
that subscribes to it. A single worker task walks the due deliveries and
POSTs them, signed, to the consumer.

Delivery state machine:
    pending → in_flight → succeeded
                        → failed → (due again after backoff) → in_flight …
                        → abandoned (attempt budget spent)

Rules:
  • Deliveries to one endpoint go out strictly in creation order: only the
    oldest open delivery of an endpoint is ever attempted.
  • Each attempt first takes a slot from the endpoint's channel limit
    ("webhook:<endpoint_id>"). A denied slot reschedules the delivery to
    the limiter's reset time and does not use up an attempt.
  • Backoff after failed attempt i (0-based):
        min(max_delay, initial_delay * multiplier**i) * (1 ± jitter)
  • Signature: X-Webhook-Signature = "sha256=" + HMAC-SHA256(secret,
    "<timestamp>.<body>"), timestamp in X-Webhook-Timestamp.
  • Every attempt is reported to the metrics pipeline as a WEBHOOK
    observation on the event name.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import enum
import hashlib
import hmac
import json
import logging
import random
import secrets
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from itertools import count
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import Clock, epoch_seconds
from app.models.webhook import WebhookDelivery, WebhookEndpoint
from app.services.aggregates import RequestObservation
from app.services.rate_limiter import RateLimited, RateLimiter, RateLimitRequest

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

TEST_EVENT = "system.webhook_test"

# Event-name prefix → attempt budget; first match wins
ATTEMPT_BUDGETS: tuple[tuple[str, int], ...] = (
    ("booking.", 3),
    ("rate.", 5),
    ("inventory.", 5),
)
DEFAULT_ATTEMPT_BUDGET = 3

# Stand-in statuses for attempts that got no HTTP response
TIMEOUT_STATUS = 504
NETWORK_ERROR_STATUS = 502


def attempt_budget(event: str) -> int:
    for prefix, budget in ATTEMPT_BUDGETS:
        if event.startswith(prefix):
            return budget
    return DEFAULT_ATTEMPT_BUDGET


def sign_payload(secret: str, timestamp: str, body: str) -> str:
    """Hex HMAC-SHA256 of "<timestamp>.<body>"."""
    message = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _checked_events(events: Iterable[str]) -> tuple[str, ...]:
    cleaned = tuple(dict.fromkeys(e.strip() for e in events if e.strip()))
    if not cleaned:
        raise ValueError("an endpoint must subscribe to at least one event")
    return cleaned


def _checked_url(url: str) -> str:
    if not url.startswith(("http://", "https://")):
        raise ValueError("webhook URL must be http(s)")
    return url


def new_secret() -> str:
    return "whsec_" + secrets.token_hex(32)


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


# Not yet settled; FAILED means "waiting for the next attempt"
OPEN_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.IN_FLIGHT, DeliveryStatus.FAILED)


class DeliveryError(Exception):
    """A delivery attempt did not end in a 2xx response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def metric_status(self) -> int:
        return self.status_code or NETWORK_ERROR_STATUS


class EndpointNotFound(Exception):
    pass


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            initial_delay=settings.WEBHOOK_INITIAL_DELAY_SECONDS,
            multiplier=settings.WEBHOOK_BACKOFF_MULTIPLIER,
            max_delay=settings.WEBHOOK_MAX_DELAY_SECONDS,
            jitter=settings.WEBHOOK_JITTER,
        )

    def base_delay(self, failed_attempt: int) -> float:
        return min(self.max_delay, self.initial_delay * self.multiplier ** failed_attempt)

    def delay(self, failed_attempt: int, rng: random.Random) -> float:
        return self.base_delay(failed_attempt) * (1 + rng.uniform(-self.jitter, self.jitter))


@dataclass(slots=True)
class EndpointRecord:
    id: str
    hotel_id: str
    url: str
    secret: str
    events: tuple[str, ...]
    created_at: datetime.datetime
    name: str = ""
    is_active: bool = True
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    consecutive_failures: int = 0
    last_attempt_at: datetime.datetime | None = None
    last_success_at: datetime.datetime | None = None
    last_status_code: int | None = None
    last_error: str | None = None

    def subscribes(self, event: str) -> bool:
        """Exact names, "*" and "prefix.*" patterns."""
        for pattern in self.events:
            if pattern == "*" or pattern == event:
                return True
            if pattern.endswith(".*") and event.startswith(pattern[:-1]):
                return True
        return False


@dataclass(slots=True)
class DeliveryRecord:
    id: str
    endpoint_id: str
    hotel_id: str
    event: str
    payload: dict[str, Any]
    max_attempts: int
    next_attempt_at: datetime.datetime
    created_at: datetime.datetime
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    last_status_code: int | None = None
    duration_ms: float | None = None
    delivered_at: datetime.datetime | None = None
    sequence: int = 0


@dataclass(slots=True)
class AttemptResult:
    success: bool
    status_code: int | None
    duration_ms: float
    error: str | None = None


class WebhookRepository(Protocol):
    async def add_endpoint(self, record: EndpointRecord) -> None: ...

    async def get_endpoint(self, endpoint_id: str) -> EndpointRecord | None: ...

    async def list_endpoints(self, hotel_id: str) -> list[EndpointRecord]: ...

    async def save_endpoint(self, record: EndpointRecord) -> None: ...

    async def record_attempt(
        self,
        endpoint_id: str,
        at: datetime.datetime,
        result: AttemptResult,
    ) -> None: ...

    async def add_deliveries(self, records: Sequence[DeliveryRecord]) -> None: ...

    async def save_delivery(self, record: DeliveryRecord) -> None: ...

    async def open_heads(self) -> list[DeliveryRecord]: ...

    async def list_deliveries(self, endpoint_id: str, limit: int) -> list[DeliveryRecord]: ...

    async def delivery_counts(self, hotel_id: str) -> dict[str, int]: ...


# ── Repositories ────────────────────────────────────────────
class MemoryWebhookRepository:
    """Endpoints and deliveries in dicts. Hands out copies only."""

    def __init__(self) -> None:
        self._endpoints: dict[str, EndpointRecord] = {}
        self._deliveries: dict[str, DeliveryRecord] = {}
        self._sequence = count(1)

    async def add_endpoint(self, record: EndpointRecord) -> None:
        self._endpoints[record.id] = dataclasses.replace(record)

    async def get_endpoint(self, endpoint_id: str) -> EndpointRecord | None:
        record = self._endpoints.get(endpoint_id)
        return dataclasses.replace(record) if record else None

    async def list_endpoints(self, hotel_id: str) -> list[EndpointRecord]:
        records = [dataclasses.replace(r) for r in self._endpoints.values() if r.hotel_id == hotel_id]
        return sorted(records, key=lambda r: r.created_at)

    async def save_endpoint(self, record: EndpointRecord) -> None:
        self._endpoints[record.id] = dataclasses.replace(record)

    async def record_attempt(
        self,
        endpoint_id: str,
        at: datetime.datetime,
        result: AttemptResult,
    ) -> None:
        record = self._endpoints.get(endpoint_id)
        if record is None:
            return
        _apply_attempt(record, at, result)

    async def add_deliveries(self, records: Sequence[DeliveryRecord]) -> None:
        for record in records:
            record.sequence = next(self._sequence)
            self._deliveries[record.id] = dataclasses.replace(record)

    async def save_delivery(self, record: DeliveryRecord) -> None:
        self._deliveries[record.id] = dataclasses.replace(record)

    async def open_heads(self) -> list[DeliveryRecord]:
        heads: dict[str, DeliveryRecord] = {}
        for record in sorted(self._deliveries.values(), key=lambda r: r.sequence):
            if record.status in OPEN_STATUSES and record.endpoint_id not in heads:
                heads[record.endpoint_id] = dataclasses.replace(record)
        return list(heads.values())

    async def list_deliveries(self, endpoint_id: str, limit: int) -> list[DeliveryRecord]:
        records = [r for r in self._deliveries.values() if r.endpoint_id == endpoint_id]
        records.sort(key=lambda r: r.sequence, reverse=True)
        return [dataclasses.replace(r) for r in records[:limit]]

    async def delivery_counts(self, hotel_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self._deliveries.values():
            if record.hotel_id == hotel_id:
                counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts


def _apply_attempt(record: EndpointRecord, at: datetime.datetime, result: AttemptResult) -> None:
    record.total_deliveries += 1
    record.last_attempt_at = at
    record.last_status_code = result.status_code
    record.last_error = result.error
    if result.success:
        record.successful_deliveries += 1
        record.consecutive_failures = 0
        record.last_success_at = at
    else:
        record.failed_deliveries += 1
        record.consecutive_failures += 1


def _endpoint_record(row: WebhookEndpoint) -> EndpointRecord:
    return EndpointRecord(
        id=row.id,
        hotel_id=row.hotel_id,
        url=row.url,
        secret=row.secret,
        events=tuple(row.events or ()),
        created_at=row.created_at,
        name=row.name,
        is_active=row.is_active,
        total_deliveries=row.total_deliveries,
        successful_deliveries=row.successful_deliveries,
        failed_deliveries=row.failed_deliveries,
        consecutive_failures=row.consecutive_failures,
        last_attempt_at=row.last_attempt_at,
        last_success_at=row.last_success_at,
        last_status_code=row.last_status_code,
        last_error=row.last_error,
    )


def _delivery_record(row: WebhookDelivery) -> DeliveryRecord:
    return DeliveryRecord(
        id=row.id,
        endpoint_id=row.endpoint_id,
        hotel_id=row.hotel_id,
        event=row.event,
        payload=dict(row.payload or {}),
        max_attempts=row.max_attempts,
        next_attempt_at=row.next_attempt_at,
        created_at=row.created_at,
        status=DeliveryStatus(row.status),
        attempts=row.attempts,
        last_error=row.last_error,
        last_status_code=row.last_status_code,
        duration_ms=row.duration_ms,
        delivered_at=row.delivered_at,
        sequence=row.sequence or 0,
    )


class SQLWebhookRepository:
    """Endpoints and deliveries in the webhook_* tables."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def add_endpoint(self, record: EndpointRecord) -> None:
        row = WebhookEndpoint(
            id=record.id,
            hotel_id=record.hotel_id,
            name=record.name,
            url=record.url,
            secret=record.secret,
            events=list(record.events),
            is_active=record.is_active,
            created_at=record.created_at,
        )
        async with self._sessions() as session:
            session.add(row)
            await session.commit()

    async def get_endpoint(self, endpoint_id: str) -> EndpointRecord | None:
        async with self._sessions() as session:
            row = await session.get(WebhookEndpoint, endpoint_id)
            return _endpoint_record(row) if row else None

    async def list_endpoints(self, hotel_id: str) -> list[EndpointRecord]:
        stmt = (
            select(WebhookEndpoint)
            .where(WebhookEndpoint.hotel_id == hotel_id)
            .order_by(WebhookEndpoint.created_at)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_endpoint_record(row) for row in rows]

    async def save_endpoint(self, record: EndpointRecord) -> None:
        # Delivery counters are only touched by record_attempt()
        stmt = (
            update(WebhookEndpoint)
            .where(WebhookEndpoint.id == record.id)
            .values(
                name=record.name,
                url=record.url,
                secret=record.secret,
                events=list(record.events),
                is_active=record.is_active,
            )
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def record_attempt(
        self,
        endpoint_id: str,
        at: datetime.datetime,
        result: AttemptResult,
    ) -> None:
        values: dict[str, Any] = {
            "total_deliveries": WebhookEndpoint.total_deliveries + 1,
            "last_attempt_at": at,
            "last_status_code": result.status_code,
            "last_error": result.error,
        }
        if result.success:
            values["successful_deliveries"] = WebhookEndpoint.successful_deliveries + 1
            values["consecutive_failures"] = 0
            values["last_success_at"] = at
        else:
            values["failed_deliveries"] = WebhookEndpoint.failed_deliveries + 1
            values["consecutive_failures"] = WebhookEndpoint.consecutive_failures + 1
        stmt = update(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id).values(**values)
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def add_deliveries(self, records: Sequence[DeliveryRecord]) -> None:
        rows = [
            WebhookDelivery(
                id=record.id,
                endpoint_id=record.endpoint_id,
                hotel_id=record.hotel_id,
                event=record.event,
                payload=record.payload,
                status=record.status.value,
                attempts=record.attempts,
                max_attempts=record.max_attempts,
                next_attempt_at=record.next_attempt_at,
                created_at=record.created_at,
            )
            for record in records
        ]
        async with self._sessions() as session:
            # One row per flush keeps the identity sequence in list order
            for row in rows:
                session.add(row)
                await session.flush()
            await session.commit()
        for record, row in zip(records, rows):
            record.sequence = row.sequence or 0

    async def save_delivery(self, record: DeliveryRecord) -> None:
        stmt = (
            update(WebhookDelivery)
            .where(WebhookDelivery.id == record.id)
            .values(
                status=record.status.value,
                attempts=record.attempts,
                next_attempt_at=record.next_attempt_at,
                last_error=record.last_error,
                last_status_code=record.last_status_code,
                duration_ms=record.duration_ms,
                delivered_at=record.delivered_at,
            )
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def open_heads(self) -> list[DeliveryRecord]:
        stmt = (
            select(WebhookDelivery)
            .where(WebhookDelivery.status.in_([s.value for s in OPEN_STATUSES]))
            .order_by(WebhookDelivery.endpoint_id, WebhookDelivery.sequence)
            .distinct(WebhookDelivery.endpoint_id)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_delivery_record(row) for row in rows]

    async def list_deliveries(self, endpoint_id: str, limit: int) -> list[DeliveryRecord]:
        stmt = (
            select(WebhookDelivery)
            .where(WebhookDelivery.endpoint_id == endpoint_id)
            .order_by(WebhookDelivery.sequence.desc())
            .limit(limit)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_delivery_record(row) for row in rows]

    async def delivery_counts(self, hotel_id: str) -> dict[str, int]:
        stmt = (
            select(WebhookDelivery.status, func.count())
            .where(WebhookDelivery.hotel_id == hotel_id)
            .group_by(WebhookDelivery.status)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
            return {status: int(total) for status, total in rows}


# ── Dispatcher ──────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class WebhookStats:
    endpoints: int
    active_endpoints: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: Decimal
    queue: dict[str, int] = field(default_factory=dict)


class WebhookDispatcher:
    def __init__(
        self,
        repository: WebhookRepository,
        limiter: RateLimiter,
        client: httpx.AsyncClient,
        clock: Clock,
        submit: Callable[[RequestObservation], None],
        policy: RetryPolicy | None = None,
        timeout: float = 10.0,
        rng: random.Random | None = None,
        user_agent: str = "HotelMS-Webhooks/1.0",
        poll_interval: float = 1.0,
    ) -> None:
        self._repository = repository
        self._limiter = limiter
        self._client = client
        self._clock = clock
        self._submit = submit
        self.policy = policy or RetryPolicy()
        self._timeout = timeout
        self._rng = rng or random.Random()
        self._user_agent = user_agent
        self._poll_interval = poll_interval
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # ── Endpoint admin ──────────────────────────────────────
    async def register(
        self,
        hotel_id: str,
        url: str,
        events: Iterable[str],
        name: str = "",
    ) -> EndpointRecord:
        record = EndpointRecord(
            id=str(uuid.uuid4()),
            hotel_id=hotel_id,
            url=_checked_url(url),
            secret=new_secret(),
            events=_checked_events(events),
            created_at=self._clock.now(),
            name=name,
        )
        await self._repository.add_endpoint(record)
        logger.info("Registered webhook %s for hotel %s (%s)", record.id, hotel_id, ", ".join(events))
        return record

    async def get_endpoint(self, hotel_id: str, endpoint_id: str) -> EndpointRecord:
        record = await self._repository.get_endpoint(endpoint_id)
        if record is None or record.hotel_id != hotel_id:
            raise EndpointNotFound(endpoint_id)
        return record

    async def list_endpoints(self, hotel_id: str) -> list[EndpointRecord]:
        return await self._repository.list_endpoints(hotel_id)

    async def deactivate(self, hotel_id: str, endpoint_id: str) -> EndpointRecord:
        record = await self.get_endpoint(hotel_id, endpoint_id)
        if record.is_active:
            record.is_active = False
            await self._repository.save_endpoint(record)
            logger.info("Deactivated webhook %s", endpoint_id)
        return record

    async def update(
        self,
        hotel_id: str,
        endpoint_id: str,
        *,
        url: str | None = None,
        events: Iterable[str] | None = None,
        name: str | None = None,
        is_active: bool | None = None,
    ) -> EndpointRecord:
        """Change the fields given. Deliveries already queued keep their payload."""
        record = await self.get_endpoint(hotel_id, endpoint_id)
        if url is not None:
            record.url = _checked_url(url)
        if events is not None:
            record.events = _checked_events(events)
        if name is not None:
            record.name = name
        if is_active is not None:
            record.is_active = is_active
        await self._repository.save_endpoint(record)
        logger.info("Updated webhook %s", endpoint_id)
        return record

    async def regenerate_secret(self, hotel_id: str, endpoint_id: str) -> EndpointRecord:
        record = await self.get_endpoint(hotel_id, endpoint_id)
        record.secret = new_secret()
        await self._repository.save_endpoint(record)
        logger.info("Rotated secret for webhook %s", endpoint_id)
        return record

    async def deliveries(self, hotel_id: str, endpoint_id: str, limit: int = 50) -> list[DeliveryRecord]:
        await self.get_endpoint(hotel_id, endpoint_id)
        return await self._repository.list_deliveries(endpoint_id, limit)

    async def stats(self, hotel_id: str) -> WebhookStats:
        endpoints = await self._repository.list_endpoints(hotel_id)
        total = sum(e.total_deliveries for e in endpoints)
        successful = sum(e.successful_deliveries for e in endpoints)
        rate = Decimal(0)
        if total:
            rate = (Decimal(successful) * 100 / Decimal(total)).quantize(
                Decimal("0.01"), rounding=ROUND_HALF_UP,
            )
        return WebhookStats(
            endpoints=len(endpoints),
            active_endpoints=sum(1 for e in endpoints if e.is_active),
            total_deliveries=total,
            successful_deliveries=successful,
            failed_deliveries=sum(e.failed_deliveries for e in endpoints),
            success_rate=rate,
            queue=await self._repository.delivery_counts(hotel_id),
        )

    # ── Publishing ──────────────────────────────────────────
    async def publish(self, hotel_id: str, event: str, data: dict[str, Any]) -> list[DeliveryRecord]:
        """Queue `event` for every active endpoint of the hotel subscribed to it."""
        now = self._clock.now()
        endpoints = [
            e for e in await self._repository.list_endpoints(hotel_id)
            if e.is_active and e.subscribes(event)
        ]
        deliveries = []
        for endpoint in endpoints:
            delivery_id = str(uuid.uuid4())
            deliveries.append(DeliveryRecord(
                id=delivery_id,
                endpoint_id=endpoint.id,
                hotel_id=hotel_id,
                event=event,
                payload={
                    "id": delivery_id,
                    "event": event,
                    "data": data,
                    "hotelId": hotel_id,
                    "createdAt": now.isoformat(),
                },
                max_attempts=attempt_budget(event),
                next_attempt_at=now,
                created_at=now,
            ))
        if deliveries:
            await self._repository.add_deliveries(deliveries)
            self._wakeup.set()
        logger.debug("Published %s for hotel %s to %d endpoints", event, hotel_id, len(deliveries))
        return deliveries

    async def process_due(self) -> int:
        """Attempt the head delivery of every endpoint whose turn has come.

        Endpoints are attempted concurrently; each endpoint contributes at
        most one delivery per call. Returns how many were looked at.
        """
        now = self._clock.now()
        due = [d for d in await self._repository.open_heads() if d.next_attempt_at <= now]
        results = await asyncio.gather(*(self._process(d) for d in due), return_exceptions=True)
        for delivery, result in zip(due, results):
            if isinstance(result, Exception):
                logger.error("Delivery %s failed unexpectedly", delivery.id, exc_info=result)
        return len(due)

    async def _process(self, delivery: DeliveryRecord) -> DeliveryRecord:
        endpoint = await self._repository.get_endpoint(delivery.endpoint_id)
        if endpoint is None or not endpoint.is_active:
            delivery.status = DeliveryStatus.ABANDONED
            delivery.last_error = "endpoint inactive"
            await self._repository.save_delivery(delivery)
            return delivery

        try:
            await self._limiter.enforce(RateLimitRequest(
                tenant=endpoint.hotel_id,
                channels=(f"webhook:{endpoint.id}",),
                channel_only=True,
            ))
        except RateLimited as exc:
            delivery.next_attempt_at = exc.decision.reset_at or self._clock.now()
            await self._repository.save_delivery(delivery)
            logger.info("Webhook %s throttled until %s", endpoint.id, delivery.next_attempt_at)
            return delivery

        delivery.status = DeliveryStatus.IN_FLIGHT
        delivery.attempts += 1
        await self._repository.save_delivery(delivery)

        result = await self._attempt(endpoint, delivery.event, delivery.id, delivery.payload, delivery.attempts)

        now = self._clock.now()
        delivery.last_status_code = result.status_code
        delivery.last_error = result.error
        delivery.duration_ms = result.duration_ms
        if result.success:
            delivery.status = DeliveryStatus.SUCCEEDED
            delivery.delivered_at = now
        elif delivery.attempts >= delivery.max_attempts:
            delivery.status = DeliveryStatus.ABANDONED
            logger.warning(
                "Abandoned %s delivery %s after %d attempts: %s",
                delivery.event, delivery.id, delivery.attempts, result.error,
            )
        else:
            delay = self.policy.delay(delivery.attempts - 1, self._rng)
            delivery.status = DeliveryStatus.FAILED
            delivery.next_attempt_at = now + datetime.timedelta(seconds=delay)
        await self._repository.save_delivery(delivery)
        return delivery

    async def _attempt(
        self,
        endpoint: EndpointRecord,
        event: str,
        delivery_id: str,
        payload: dict[str, Any],
        attempt: int,
    ) -> AttemptResult:
        """POST once, then report the outcome to the endpoint and the metrics."""
        body = json.dumps(payload, separators=(",", ":"), default=str)
        started = self._clock.now()
        try:
            response = await self._send(endpoint, event, delivery_id, body, attempt)
            result = AttemptResult(True, response.status_code, self._elapsed_ms(started))
            metric_status = response.status_code
        except DeliveryError as exc:
            result = AttemptResult(False, exc.status_code, self._elapsed_ms(started), str(exc))
            metric_status = exc.metric_status

        now = self._clock.now()
        await self._repository.record_attempt(endpoint.id, now, result)
        self._submit(RequestObservation.for_webhook(
            tenant=endpoint.hotel_id,
            event=event,
            status=metric_status,
            duration_ms=result.duration_ms,
            timestamp=now,
            request_bytes=len(body.encode("utf-8")),
        ))
        return result

    async def _send(
        self,
        endpoint: EndpointRecord,
        event: str,
        delivery_id: str,
        body: str,
        attempt: int,
    ) -> httpx.Response:
        timestamp = str(epoch_seconds(self._clock.now()))
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Webhook-Signature": f"sha256={sign_payload(endpoint.secret, timestamp, body)}",
            "X-Webhook-Timestamp": timestamp,
            "X-Webhook-Event": event,
            "X-Webhook-Attempt": str(attempt),
            "X-Webhook-ID": delivery_id,
        }
        try:
            response = await self._client.post(
                endpoint.url, content=body, headers=headers, timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"timed out after {self._timeout}s", TIMEOUT_STATUS) from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            raise DeliveryError(f"HTTP {response.status_code}", response.status_code)
        return response

    async def test_endpoint(self, hotel_id: str, endpoint_id: str) -> AttemptResult:
        """Send a system.webhook_test event right away, outside the queue."""
        endpoint = await self.get_endpoint(hotel_id, endpoint_id)
        delivery_id = str(uuid.uuid4())
        payload = {
            "id": delivery_id,
            "event": TEST_EVENT,
            "data": {
                "test": True,
                "message": "This is a test webhook delivery",
                "endpoint": {"id": endpoint.id, "name": endpoint.name},
            },
            "hotelId": hotel_id,
            "createdAt": self._clock.now().isoformat(),
        }
        return await self._attempt(endpoint, TEST_EVENT, delivery_id, payload, attempt=1)

    def _elapsed_ms(self, started: datetime.datetime) -> float:
        return round((self._clock.now() - started).total_seconds() * 1000, 3)

    # ── Worker ──────────────────────────────────────────────
    async def run(self) -> None:
        while True:
            try:
                await self.process_due()
            except Exception:
                logger.exception("Webhook dispatch pass failed")
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="webhook-dispatcher")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
