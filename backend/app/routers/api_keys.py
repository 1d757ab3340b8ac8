"""
API key router — issue, list, inspect, toggle and revoke keys.

Every route needs an admin key; the caller's hotel scopes all reads and
writes, so keys of other hotels are indistinguishable from missing ones.

Endpoints:
  POST   /api/v1/api-keys              — issue a key (plaintext returned once)
  GET    /api/v1/api-keys              — list keys, filter by status / type / search
  GET    /api/v1/api-keys/usage        — requests per key over a range
  GET    /api/v1/api-keys/{id}         — one key
  PATCH  /api/v1/api-keys/{id}         — replace name, quota, IP / domain lists
  PATCH  /api/v1/api-keys/{id}/status  — activate / deactivate
  DELETE /api/v1/api-keys/{id}         — revoke (terminal)
"""

import logging

from fastapi import APIRouter, HTTPException, Query, status

from app.auth.dependencies import Auth, ServicesDep
from app.auth.errors import APIKeyNotFound, InvalidKeyTransition
from app.core.clock import as_utc
from app.schemas.api_keys import (
    APIKeyCreate,
    APIKeyCreated,
    APIKeyOut,
    APIKeyStatusUpdate,
    APIKeyUpdate,
    KeyUsageOut,
)
from app.schemas.metrics import RangeSpec
from app.services.api_keys import KeyStatus, KeyType
from app.services.rate_limiter import Quota

logger = logging.getLogger(__name__)

router = APIRouter(tags=["API Keys"])

_KEY_NOT_FOUND = HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found.")


@router.post(
    "",
    response_model=APIKeyCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Issue an API key",
    description="The plaintext key is in the response and is never shown again.",
)
async def create_api_key(body: APIKeyCreate, auth: Auth, services: ServicesDep) -> APIKeyCreated:
    now = services.clock.now()
    expires_at = as_utc(body.expires_at) if body.expires_at else None
    if expires_at is not None and expires_at <= now:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="expires_at must be in the future.",
        )

    record, raw_key = await services.keys.issue(
        auth.hotel_id,
        body.type,
        body.environment,
        name=body.name,
        created_by=auth.api_key.id,
        quota=body.rate_limits.to_quota() if body.rate_limits else None,
        allowed_ips=body.allowed_ips,
        allowed_domains=body.allowed_domains,
        expires_at=expires_at,
    )
    return APIKeyCreated(**APIKeyOut.from_record(record, now).model_dump(), key=raw_key)


@router.get(
    "",
    response_model=list[APIKeyOut],
    summary="List the hotel's API keys",
)
async def list_api_keys(
    auth: Auth,
    services: ServicesDep,
    key_status: KeyStatus | None = Query(default=None, alias="status"),
    key_type: KeyType | None = Query(default=None, alias="type"),
    search: str | None = Query(default=None, max_length=100),
) -> list[APIKeyOut]:
    now = services.clock.now()
    records = await services.keys.list(auth.hotel_id, key_status, key_type, search)
    return [APIKeyOut.from_record(record, now) for record in records]


@router.get(
    "/usage",
    response_model=list[KeyUsageOut],
    summary="Requests per API key",
    description="Counted from request metrics over the range; busiest keys first.",
)
async def get_key_usage(
    auth: Auth,
    services: ServicesDep,
    range_spec: RangeSpec = Query(default="24h", alias="range"),
) -> list[KeyUsageOut]:
    usage = await services.store.key_usage(auth.hotel_id, range_spec)
    records = {r.id: r for r in await services.keys.list(auth.hotel_id)}

    rows = []
    for key_id, requests in sorted(usage.items(), key=lambda item: (-item[1], item[0])):
        record = records.get(key_id)
        rows.append(KeyUsageOut(
            key_id=key_id,
            prefix=record.prefix if record else None,
            name=record.name if record else None,
            requests=requests,
            total_requests=record.total_requests if record else None,
            last_used_at=record.last_used_at if record else None,
        ))
    return rows


@router.get(
    "/{key_id}",
    response_model=APIKeyOut,
    summary="Get one API key",
)
async def get_api_key(key_id: str, auth: Auth, services: ServicesDep) -> APIKeyOut:
    try:
        record = await services.keys.get(auth.hotel_id, key_id)
    except APIKeyNotFound:
        raise _KEY_NOT_FOUND from None
    return APIKeyOut.from_record(record, services.clock.now())


@router.patch(
    "/{key_id}",
    response_model=APIKeyOut,
    summary="Update an API key",
    description=(
        "Replaces the fields sent. rate_limits swaps the whole quota and takes "
        "effect on the key's next request; {} restores the server default."
    ),
)
async def update_api_key(
    key_id: str,
    body: APIKeyUpdate,
    auth: Auth,
    services: ServicesDep,
) -> APIKeyOut:
    quota = None
    if "rate_limits" in body.model_fields_set:
        quota = (body.rate_limits.to_quota() if body.rate_limits else None) or Quota()
    try:
        record = await services.keys.update(
            auth.hotel_id,
            key_id,
            name=body.name,
            quota=quota,
            allowed_ips=body.allowed_ips,
            allowed_domains=body.allowed_domains,
        )
    except APIKeyNotFound:
        raise _KEY_NOT_FOUND from None
    except InvalidKeyTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from None
    return APIKeyOut.from_record(record, services.clock.now())


@router.patch(
    "/{key_id}/status",
    response_model=APIKeyOut,
    summary="Activate or deactivate an API key",
    description="Revoked keys cannot be re-activated (409).",
)
async def update_api_key_status(
    key_id: str,
    body: APIKeyStatusUpdate,
    auth: Auth,
    services: ServicesDep,
) -> APIKeyOut:
    try:
        record = await services.keys.set_active(auth.hotel_id, key_id, body.is_active)
    except APIKeyNotFound:
        raise _KEY_NOT_FOUND from None
    except InvalidKeyTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from None
    return APIKeyOut.from_record(record, services.clock.now())


@router.delete(
    "/{key_id}",
    response_model=APIKeyOut,
    summary="Revoke an API key",
    description="Revocation is permanent and takes effect on the next request.",
)
async def revoke_api_key(key_id: str, auth: Auth, services: ServicesDep) -> APIKeyOut:
    try:
        record = await services.keys.revoke(auth.hotel_id, key_id)
    except APIKeyNotFound:
        raise _KEY_NOT_FOUND from None
    return APIKeyOut.from_record(record, services.clock.now())
