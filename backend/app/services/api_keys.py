"""
API key registry.

Issues keys, verifies presented credentials, decides whether a verified key
may make a given request, and keeps soft usage hints on the key record.

Flow on every request (driven by the interceptor):
  1. authenticate() — format check, prefix lookup, constant-time digest
     comparison, lifecycle check (active / inactive / expired / revoked)
  2. authorize()    — permission tier for the endpoint, IP and domain lists
  3. record_use()   — after the response, off the request path

Security:
  • Exactly one hmac.compare_digest per lookup when the prefix is unique;
    a dummy comparison runs when nothing matches the prefix so timing does
    not depend on where a wrong key differs.
  • Raw keys are never logged; only the display prefix is.
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import ipaddress
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlsplit

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.auth.errors import (
    APIKeyNotFound,
    AuthenticationError,
    AuthorizationError,
    InvalidKeyTransition,
)
from app.auth.hashing import (
    KEY_PATTERN,
    digests_match,
    generate_api_key,
    hash_api_key,
    key_prefix,
)
from app.core.clock import Clock
from app.models.api_key import APIKey
from app.services.aggregates import RequestObservation
from app.services.rate_limiter import Quota

logger = logging.getLogger(__name__)


class KeyType(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


class KeyStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    REVOKED = "revoked"


TYPE_CODES = {KeyType.READ: "rk", KeyType.WRITE: "wk", KeyType.ADMIN: "ak"}
ENVIRONMENTS = ("live", "test")

_TIER_RANK = {KeyType.READ: 0, KeyType.WRITE: 1, KeyType.ADMIN: 2}
_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
ADMIN_PATH_PREFIXES = (
    "/api/v1/api-keys",
    "/api/v1/api-management",
    "/api/v1/webhooks",
)

# Compared against when no stored key shares the presented prefix
_DUMMY_SALT = "0" * 32
_DUMMY_HASH = hash_api_key("rk_test_" + "0" * 64, _DUMMY_SALT)


def required_tier(method: str, path: str) -> KeyType:
    """Permission tier a key needs for `method path`."""
    if path.startswith(ADMIN_PATH_PREFIXES):
        return KeyType.ADMIN
    if method.upper() in _SAFE_METHODS:
        return KeyType.READ
    return KeyType.WRITE


@dataclass(slots=True)
class APIKeyRecord:
    id: str
    hotel_id: str
    key_type: KeyType
    environment: str
    prefix: str
    key_hash: str
    salt: str
    created_at: datetime.datetime
    name: str = ""
    quota: Quota | None = None
    allowed_ips: tuple[str, ...] = ()
    allowed_domains: tuple[str, ...] = ()
    is_active: bool = True
    expires_at: datetime.datetime | None = None
    revoked_at: datetime.datetime | None = None
    created_by: str | None = None
    total_requests: int = 0
    last_used_at: datetime.datetime | None = None
    last_used_ip: str | None = None
    last_used_endpoint: str | None = None

    def status_at(self, now: datetime.datetime) -> KeyStatus:
        if self.revoked_at is not None:
            return KeyStatus.REVOKED
        if self.expires_at is not None and self.expires_at <= now:
            return KeyStatus.EXPIRED
        if not self.is_active:
            return KeyStatus.INACTIVE
        return KeyStatus.ACTIVE


class APIKeyRepository(Protocol):
    async def add(self, record: APIKeyRecord) -> None: ...

    async def get(self, key_id: str) -> APIKeyRecord | None: ...

    async def find_by_prefix(self, prefix: str) -> list[APIKeyRecord]: ...

    async def list_for_hotel(self, hotel_id: str) -> list[APIKeyRecord]: ...

    async def save(self, record: APIKeyRecord) -> None: ...

    async def add_usage(
        self,
        key_id: str,
        at: datetime.datetime,
        ip: str | None,
        endpoint: str,
    ) -> None: ...


# ── Repositories ────────────────────────────────────────────
class MemoryAPIKeyRepository:
    """Keys in a dict, indexed by prefix. Hands out copies only."""

    def __init__(self) -> None:
        self._keys: dict[str, APIKeyRecord] = {}
        self._by_prefix: dict[str, set[str]] = {}

    async def add(self, record: APIKeyRecord) -> None:
        self._keys[record.id] = dataclasses.replace(record)
        self._by_prefix.setdefault(record.prefix, set()).add(record.id)

    async def get(self, key_id: str) -> APIKeyRecord | None:
        record = self._keys.get(key_id)
        return dataclasses.replace(record) if record else None

    async def find_by_prefix(self, prefix: str) -> list[APIKeyRecord]:
        return [dataclasses.replace(self._keys[key_id]) for key_id in self._by_prefix.get(prefix, ())]

    async def list_for_hotel(self, hotel_id: str) -> list[APIKeyRecord]:
        records = [dataclasses.replace(r) for r in self._keys.values() if r.hotel_id == hotel_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def save(self, record: APIKeyRecord) -> None:
        self._keys[record.id] = dataclasses.replace(record)

    async def add_usage(
        self,
        key_id: str,
        at: datetime.datetime,
        ip: str | None,
        endpoint: str,
    ) -> None:
        record = self._keys.get(key_id)
        if record is None:
            return
        record.total_requests += 1
        record.last_used_at = at
        record.last_used_ip = ip
        record.last_used_endpoint = endpoint


def _to_record(row: APIKey) -> APIKeyRecord:
    quota = None
    if any(v is not None for v in (row.rate_limit_per_minute, row.rate_limit_per_hour, row.rate_limit_per_day)):
        quota = Quota(row.rate_limit_per_minute, row.rate_limit_per_hour, row.rate_limit_per_day)
    return APIKeyRecord(
        id=row.id,
        hotel_id=row.hotel_id,
        key_type=KeyType(row.key_type),
        environment=row.environment,
        prefix=row.prefix,
        key_hash=row.key_hash,
        salt=row.salt,
        created_at=row.created_at,
        name=row.name,
        quota=quota,
        allowed_ips=tuple(row.allowed_ips or ()),
        allowed_domains=tuple(row.allowed_domains or ()),
        is_active=row.is_active,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
        created_by=row.created_by,
        total_requests=row.total_requests,
        last_used_at=row.last_used_at,
        last_used_ip=row.last_used_ip,
        last_used_endpoint=row.last_used_endpoint,
    )


class SQLAPIKeyRepository:
    """Keys in the api_keys table."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def add(self, record: APIKeyRecord) -> None:
        quota = record.quota or Quota()
        row = APIKey(
            id=record.id,
            hotel_id=record.hotel_id,
            name=record.name,
            key_type=record.key_type.value,
            environment=record.environment,
            prefix=record.prefix,
            key_hash=record.key_hash,
            salt=record.salt,
            rate_limit_per_minute=quota.per_minute,
            rate_limit_per_hour=quota.per_hour,
            rate_limit_per_day=quota.per_day,
            allowed_ips=list(record.allowed_ips),
            allowed_domains=list(record.allowed_domains),
            is_active=record.is_active,
            expires_at=record.expires_at,
            created_by=record.created_by,
            created_at=record.created_at,
        )
        async with self._sessions() as session:
            session.add(row)
            await session.commit()

    async def get(self, key_id: str) -> APIKeyRecord | None:
        async with self._sessions() as session:
            row = await session.get(APIKey, key_id)
            return _to_record(row) if row else None

    async def find_by_prefix(self, prefix: str) -> list[APIKeyRecord]:
        stmt = select(APIKey).where(APIKey.prefix == prefix)
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]

    async def list_for_hotel(self, hotel_id: str) -> list[APIKeyRecord]:
        stmt = (
            select(APIKey)
            .where(APIKey.hotel_id == hotel_id)
            .order_by(APIKey.created_at.desc())
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_record(row) for row in rows]

    async def save(self, record: APIKeyRecord) -> None:
        quota = record.quota or Quota()
        stmt = (
            update(APIKey)
            .where(APIKey.id == record.id)
            .values(
                name=record.name,
                rate_limit_per_minute=quota.per_minute,
                rate_limit_per_hour=quota.per_hour,
                rate_limit_per_day=quota.per_day,
                allowed_ips=list(record.allowed_ips),
                allowed_domains=list(record.allowed_domains),
                is_active=record.is_active,
                revoked_at=record.revoked_at,
            )
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def add_usage(
        self,
        key_id: str,
        at: datetime.datetime,
        ip: str | None,
        endpoint: str,
    ) -> None:
        stmt = (
            update(APIKey)
            .where(APIKey.id == key_id)
            .values(
                total_requests=APIKey.total_requests + 1,
                last_used_at=at,
                last_used_ip=ip,
                last_used_endpoint=endpoint,
            )
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()


# ── Registry ────────────────────────────────────────────────
def _ip_allowed(client_ip: str | None, allowed: Sequence[str]) -> bool:
    if not client_ip:
        return False
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowed:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring malformed allowed-IP entry %r", entry)
    return False


def _domain_allowed(origin: str, allowed: Sequence[str]) -> bool:
    host = (urlsplit(origin).hostname or origin).lower()
    for entry in allowed:
        entry = entry.lower()
        if entry.startswith("*."):
            if host.endswith(entry[1:]) or host == entry[2:]:
                return True
        elif host == entry:
            return True
    return False


class APIKeyRegistry:
    def __init__(self, repository: APIKeyRepository, clock: Clock) -> None:
        self._repository = repository
        self._clock = clock

    async def issue(
        self,
        hotel_id: str,
        key_type: KeyType = KeyType.READ,
        environment: str = "live",
        *,
        name: str = "",
        created_by: str | None = None,
        quota: Quota | None = None,
        allowed_ips: Sequence[str] = (),
        allowed_domains: Sequence[str] = (),
        expires_at: datetime.datetime | None = None,
    ) -> tuple[APIKeyRecord, str]:
        """Create a key. Returns (record, plaintext); the plaintext is not kept."""
        if environment not in ENVIRONMENTS:
            raise ValueError(f"environment must be one of {ENVIRONMENTS}")
        key_type = KeyType(key_type)
        raw_key, salt, key_hash = generate_api_key(TYPE_CODES[key_type], environment)
        record = APIKeyRecord(
            id=str(uuid.uuid4()),
            hotel_id=hotel_id,
            key_type=key_type,
            environment=environment,
            prefix=key_prefix(raw_key),
            key_hash=key_hash,
            salt=salt,
            created_at=self._clock.now(),
            name=name,
            quota=quota,
            allowed_ips=tuple(allowed_ips),
            allowed_domains=tuple(allowed_domains),
            expires_at=expires_at,
            created_by=created_by,
        )
        await self._repository.add(record)
        logger.info("Issued %s key %s for hotel %s", key_type.value, record.prefix, hotel_id)
        return record, raw_key

    async def authenticate(self, plaintext: str | None) -> APIKeyRecord:
        """Resolve a presented key or raise AuthenticationError."""
        candidates: list[APIKeyRecord] = []
        if plaintext and KEY_PATTERN.match(plaintext):
            candidates = await self._repository.find_by_prefix(key_prefix(plaintext))

        matched: APIKeyRecord | None = None
        if not candidates:
            digests_match(_DUMMY_HASH, hash_api_key(plaintext or "", _DUMMY_SALT))
        for candidate in candidates:
            if digests_match(candidate.key_hash, hash_api_key(plaintext or "", candidate.salt)):
                matched = candidate

        if matched is None:
            raise AuthenticationError("unknown key")

        key_status = matched.status_at(self._clock.now())
        if key_status is not KeyStatus.ACTIVE:
            raise AuthenticationError(f"key {matched.prefix} is {key_status.value}")
        return matched

    async def verify(self, plaintext: str | None) -> APIKeyRecord | None:
        try:
            return await self.authenticate(plaintext)
        except AuthenticationError:
            return None

    def authorize(
        self,
        record: APIKeyRecord,
        method: str,
        path: str,
        client_ip: str | None = None,
        origin: str | None = None,
    ) -> None:
        """Raise AuthorizationError if `record` may not call `method path`."""
        needed = required_tier(method, path)
        if _TIER_RANK[record.key_type] < _TIER_RANK[needed]:
            raise AuthorizationError(
                f"{record.key_type.value} key cannot call {method} {path}"
            )
        if record.allowed_ips and not _ip_allowed(client_ip, record.allowed_ips):
            raise AuthorizationError(f"client IP {client_ip} not allowed for key {record.prefix}")
        # Domain restrictions apply to browser calls, which carry an Origin
        if record.allowed_domains and origin and not _domain_allowed(origin, record.allowed_domains):
            raise AuthorizationError(f"origin {origin} not allowed for key {record.prefix}")

    async def record_use(
        self,
        key_id: str,
        observation: RequestObservation,
    ) -> None:
        await self._repository.add_usage(
            key_id,
            observation.timestamp,
            observation.client_ip,
            f"{observation.method} {observation.path}",
        )

    # ── Admin ───────────────────────────────────────────────
    async def get(self, hotel_id: str, key_id: str) -> APIKeyRecord:
        record = await self._repository.get(key_id)
        if record is None or record.hotel_id != hotel_id:
            raise APIKeyNotFound(key_id)
        return record

    async def list(
        self,
        hotel_id: str,
        key_status: KeyStatus | None = None,
        key_type: KeyType | None = None,
        search: str | None = None,
    ) -> list[APIKeyRecord]:
        now = self._clock.now()
        records = await self._repository.list_for_hotel(hotel_id)
        if key_status is not None:
            records = [r for r in records if r.status_at(now) is key_status]
        if key_type is not None:
            records = [r for r in records if r.key_type is key_type]
        if search:
            needle = search.lower()
            records = [r for r in records if needle in r.name.lower() or needle in r.prefix]
        return records

    async def update(
        self,
        hotel_id: str,
        key_id: str,
        *,
        name: str | None = None,
        quota: Quota | None = None,
        allowed_ips: Sequence[str] | None = None,
        allowed_domains: Sequence[str] | None = None,
    ) -> APIKeyRecord:
        """Replace the given settings of a key; None leaves a field as it is.

        An empty Quota() drops the key's own quota so the server default applies.
        """
        record = await self.get(hotel_id, key_id)
        if record.revoked_at is not None:
            raise InvalidKeyTransition("revoked keys cannot be changed")
        if name is not None:
            record.name = name
        if quota is not None:
            record.quota = quota if quota.items() else None
        if allowed_ips is not None:
            record.allowed_ips = tuple(allowed_ips)
        if allowed_domains is not None:
            record.allowed_domains = tuple(allowed_domains)
        await self._repository.save(record)
        logger.info("Key %s updated", record.prefix)
        return record

    async def set_active(self, hotel_id: str, key_id: str, active: bool) -> APIKeyRecord:
        record = await self.get(hotel_id, key_id)
        if record.revoked_at is not None:
            raise InvalidKeyTransition("revoked keys cannot be re-activated")
        record.is_active = active
        await self._repository.save(record)
        logger.info("Key %s set %s", record.prefix, "active" if active else "inactive")
        return record

    async def revoke(self, hotel_id: str, key_id: str) -> APIKeyRecord:
        record = await self.get(hotel_id, key_id)
        if record.revoked_at is None:
            record.revoked_at = self._clock.now()
            record.is_active = False
            await self._repository.save(record)
            logger.info("Key %s revoked", record.prefix)
        return record
