"""
FastAPI dependencies for the admin surface.

Flow:
  1. Reuse the key the interceptor already verified (request.state.api_key)
  2. Otherwise verify the presented key here; the metrics endpoint is
     skipped by the interceptor so it authenticates on its own
  3. Require an admin key
  4. Return AuthContext (hotel + key); the hotel scopes every admin query

Security:
  • Generic 401 for ALL authentication failures (missing, malformed,
    unknown, inactive, expired, revoked)
  • 403 when a valid key is not an admin key
  • Raw keys are NEVER logged
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from app.core.services import Services
from app.middleware.interceptor import AUTH_FAILED_DETAIL, extract_api_key
from app.services.api_keys import APIKeyRecord, KeyType

logger = logging.getLogger(__name__)

# Generic 401 — same message for all auth failures to avoid leaking info
_AUTH_FAILED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail=AUTH_FAILED_DETAIL,
    headers={"WWW-Authenticate": "Bearer"},
)

_ADMIN_REQUIRED = HTTPException(
    status_code=status.HTTP_403_FORBIDDEN,
    detail="An admin API key is required.",
)


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Authenticated admin context.

    Attributes:
        hotel_id: Tenant every query and mutation is scoped to.
        api_key:  The verified key used for this request.
    """

    hotel_id: str
    api_key: APIKeyRecord


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]


async def get_auth_context(request: Request, services: ServicesDep) -> AuthContext:
    """
    Resolve the caller's admin key to an AuthContext.

    Usage in routers:
        Auth = Annotated[AuthContext, Depends(get_auth_context)]
    """
    record: APIKeyRecord | None = getattr(request.state, "api_key", None)
    if record is None:
        record = await services.keys.verify(extract_api_key(request))
    if record is None:
        raise _AUTH_FAILED

    if record.key_type is not KeyType.ADMIN:
        logger.info("Key %s refused on admin route %s", record.prefix, request.url.path)
        raise _ADMIN_REQUIRED

    return AuthContext(hotel_id=record.hotel_id, api_key=record)


Auth = Annotated[AuthContext, Depends(get_auth_context)]
