"""
Request interceptor: authentication, rate limiting and request metrics.

Per request:
  1. Skip paths (health, favicon, the metrics endpoint) pass straight through.
  2. A presented key (Authorization: Bearer … or X-API-Key) is authenticated
     and authorized, then the rate limiter takes a slot for it.
       • unknown / inactive / expired / revoked → 401, no slot taken
       • wrong tier, IP or origin               → 403
       • over a limit                           → 429 {error, reason, resetAt, scope}
       • key store failure                      → observed as a 500, then re-raised
     The verified key is left on request.state.api_key.
  3. The handler runs.
  4. Allowed keyed responses carry X-RateLimit-Limit-Minute,
     X-RateLimit-Remaining-Minute and X-RateLimit-Reset.
  5. Once the body has been written (or the client went away, or the
     handler raised) one RequestObservation goes to the observation queue
     and the key's usage hint is updated in the background.

Nothing after step 3 suspends on a store, so metrics never hold up the
response.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import AsyncIterator, Callable, Iterable

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from app.auth.errors import AuthenticationError, AuthorizationError
from app.core.clock import epoch_seconds
from app.core.services import Services
from app.services.aggregates import RequestObservation, normalize_path
from app.services.api_keys import APIKeyRecord
from app.services.rate_limiter import RateDecision, RateLimited, RateLimitRequest

logger = logging.getLogger(__name__)

AUTH_FAILED_DETAIL = "Invalid or missing API key."


def extract_api_key(request: Request) -> str | None:
    """Bearer token first, then X-API-Key."""
    authorization = request.headers.get("authorization")
    if authorization:
        parts = authorization.split(" ", maxsplit=1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1].strip()
    return request.headers.get("x-api-key")


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def rate_limit_headers(decision: RateDecision) -> dict[str, str]:
    if decision.minute_limit is None or decision.minute_reset_at is None:
        return {}
    return {
        "X-RateLimit-Limit-Minute": str(decision.minute_limit),
        "X-RateLimit-Remaining-Minute": str(decision.minute_remaining),
        "X-RateLimit-Reset": str(epoch_seconds(decision.minute_reset_at)),
    }


def rate_limited_response(decision: RateDecision, now_epoch: float) -> JSONResponse:
    headers = {}
    if decision.reset_at is not None:
        reset_epoch = epoch_seconds(decision.reset_at)
        headers["X-RateLimit-Reset"] = str(reset_epoch)
        headers["Retry-After"] = str(max(0, int(reset_epoch - now_epoch)))
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "Too Many Requests",
            "reason": decision.reason,
            "resetAt": decision.reset_at.isoformat() if decision.reset_at else None,
            "scope": decision.scope,
        },
        headers=headers,
    )


class RequestInterceptor(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, skip_paths: Iterable[str] = ()) -> None:
        super().__init__(app)
        self._skip_paths = frozenset(skip_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self._skip_paths:
            return await call_next(request)

        services: Services = request.app.state.services
        started = services.clock.now()
        record: APIKeyRecord | None = None
        decision: RateDecision | None = None

        def observe(status_code: int, response_bytes: int) -> None:
            self._submit(request, services, record, started, status_code, response_bytes)

        raw_key = extract_api_key(request)
        if raw_key is not None:
            try:
                record = await services.keys.authenticate(raw_key)
                services.keys.authorize(
                    record,
                    request.method,
                    request.url.path,
                    client_ip=client_ip(request),
                    origin=request.headers.get("origin"),
                )
                decision = await services.limiter.enforce(RateLimitRequest(
                    tenant=record.hotel_id,
                    user_id=getattr(request.state, "user_id", None),
                    key_id=record.id,
                    key_quota=record.quota,
                ))
            except AuthenticationError:
                record = None
                response = JSONResponse(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    content={"detail": AUTH_FAILED_DETAIL},
                    headers={"WWW-Authenticate": "Bearer"},
                )
                observe(response.status_code, len(response.body))
                return response
            except AuthorizationError as exc:
                logger.info("Forbidden: %s", exc)
                response = JSONResponse(
                    status_code=status.HTTP_403_FORBIDDEN,
                    content={"detail": "API key is not allowed to call this endpoint."},
                )
                observe(response.status_code, len(response.body))
                return response
            except RateLimited as exc:
                response = rate_limited_response(exc.decision, started.timestamp())
                observe(response.status_code, len(response.body))
                return response
            except Exception:
                # Key store unreachable; still counted, as a server error
                observe(status.HTTP_500_INTERNAL_SERVER_ERROR, 0)
                raise

            request.state.api_key = record
            request.state.hotel_id = record.hotel_id

        try:
            response = await call_next(request)
        except Exception:
            observe(status.HTTP_500_INTERNAL_SERVER_ERROR, 0)
            raise

        if decision is not None:
            response.headers.update(rate_limit_headers(decision))
        response.body_iterator = _observed(response.body_iterator, response.status_code, observe)  # type: ignore[attr-defined]
        return response

    @staticmethod
    def _submit(
        request: Request,
        services: Services,
        record: APIKeyRecord | None,
        started: datetime.datetime,
        status_code: int,
        response_bytes: int,
    ) -> None:
        elapsed = services.clock.now() - started
        state = request.state
        obs = RequestObservation(
            tenant=record.hotel_id if record else getattr(state, "hotel_id", None),
            method=request.method,
            path=normalize_path(request.url.path),
            status=status_code,
            response_time_ms=round(elapsed.total_seconds() * 1000, 3),
            timestamp=started,
            request_bytes=_content_length(request),
            response_bytes=response_bytes,
            key_id=record.id if record else None,
            user_id=getattr(state, "user_id", None),
            user_role=getattr(state, "user_role", None),
            country=request.headers.get("cf-ipcountry") or getattr(state, "country", None),
            client_ip=client_ip(request),
        )
        services.queue.submit(obs)
        if record is not None:
            services.tasks.spawn(services.keys.record_use(record.id, obs), name="key-usage")


async def _observed(
    body: AsyncIterator[bytes],
    status_code: int,
    observe: Callable[[int, int], None],
) -> AsyncIterator[bytes]:
    """Pass the body through, then report once it is done or abandoned."""
    sent = 0
    failed = False
    try:
        async for chunk in body:
            sent += len(chunk)
            yield chunk
    except Exception:
        failed = True
        raise
    finally:
        observe(status.HTTP_500_INTERNAL_SERVER_ERROR if failed else status_code, sent)


def _content_length(request: Request) -> int:
    try:
        return int(request.headers.get("content-length", 0))
    except ValueError:
        return 0
