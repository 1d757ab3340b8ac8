"""
Webhook router — endpoint management, publishing and delivery audit.

Endpoints:
  POST   /api/v1/webhooks                            — register an endpoint (secret returned)
  GET    /api/v1/webhooks                            — list endpoints
  GET    /api/v1/webhooks/stats                      — delivery totals and queue status
  POST   /api/v1/webhooks/events                     — publish an event to subscribers
  GET    /api/v1/webhooks/{id}                       — one endpoint
  PATCH  /api/v1/webhooks/{id}                       — change URL, events or name; reactivate
  DELETE /api/v1/webhooks/{id}                       — deactivate (deliveries are kept)
  POST   /api/v1/webhooks/{id}/test                  — send system.webhook_test now
  POST   /api/v1/webhooks/{id}/regenerate-secret     — rotate the signing secret
  GET    /api/v1/webhooks/{id}/deliveries            — recent deliveries, newest first
"""

from fastapi import APIRouter, HTTPException, Query, status

from app.auth.dependencies import Auth, ServicesDep
from app.schemas.webhooks import (
    DeliveryOut,
    PublishOut,
    TestDeliveryOut,
    WebhookCreate,
    WebhookEventIn,
    WebhookOut,
    WebhookSecretOut,
    WebhookStatsOut,
    WebhookUpdate,
)
from app.services.webhooks import EndpointNotFound

router = APIRouter(tags=["Webhooks"])

_ENDPOINT_NOT_FOUND = HTTPException(
    status_code=status.HTTP_404_NOT_FOUND,
    detail="Webhook endpoint not found.",
)


@router.post(
    "",
    response_model=WebhookSecretOut,
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook endpoint",
    description="The signing secret is returned here and by regenerate-secret only.",
)
async def create_webhook(body: WebhookCreate, auth: Auth, services: ServicesDep) -> WebhookSecretOut:
    try:
        record = await services.dispatcher.register(
            auth.hotel_id, str(body.url), body.events, name=body.name,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from None
    return WebhookSecretOut.model_validate(record)


@router.get(
    "",
    response_model=list[WebhookOut],
    summary="List webhook endpoints",
)
async def list_webhooks(auth: Auth, services: ServicesDep) -> list[WebhookOut]:
    records = await services.dispatcher.list_endpoints(auth.hotel_id)
    return [WebhookOut.model_validate(record) for record in records]


@router.get(
    "/stats",
    response_model=WebhookStatsOut,
    summary="Delivery totals, success rate and queue status",
)
async def get_webhook_stats(auth: Auth, services: ServicesDep) -> WebhookStatsOut:
    return WebhookStatsOut.model_validate(await services.dispatcher.stats(auth.hotel_id))


@router.post(
    "/events",
    response_model=PublishOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Publish an event",
    description="Queues one delivery per active endpoint subscribed to the event.",
)
async def publish_event(body: WebhookEventIn, auth: Auth, services: ServicesDep) -> PublishOut:
    deliveries = await services.dispatcher.publish(auth.hotel_id, body.event, body.data)
    return PublishOut(
        event=body.event,
        deliveries=[DeliveryOut.model_validate(delivery) for delivery in deliveries],
    )


@router.get(
    "/{endpoint_id}",
    response_model=WebhookOut,
    summary="Get one webhook endpoint",
)
async def get_webhook(endpoint_id: str, auth: Auth, services: ServicesDep) -> WebhookOut:
    try:
        record = await services.dispatcher.get_endpoint(auth.hotel_id, endpoint_id)
    except EndpointNotFound:
        raise _ENDPOINT_NOT_FOUND from None
    return WebhookOut.model_validate(record)


@router.patch(
    "/{endpoint_id}",
    response_model=WebhookOut,
    summary="Update a webhook endpoint",
)
async def update_webhook(
    endpoint_id: str,
    body: WebhookUpdate,
    auth: Auth,
    services: ServicesDep,
) -> WebhookOut:
    try:
        record = await services.dispatcher.update(
            auth.hotel_id,
            endpoint_id,
            url=str(body.url) if body.url else None,
            events=body.events,
            name=body.name,
            is_active=body.is_active,
        )
    except EndpointNotFound:
        raise _ENDPOINT_NOT_FOUND from None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from None
    return WebhookOut.model_validate(record)


@router.delete(
    "/{endpoint_id}",
    response_model=WebhookOut,
    summary="Deactivate a webhook endpoint",
    description="Open deliveries for the endpoint are abandoned; history is kept.",
)
async def delete_webhook(endpoint_id: str, auth: Auth, services: ServicesDep) -> WebhookOut:
    try:
        record = await services.dispatcher.deactivate(auth.hotel_id, endpoint_id)
    except EndpointNotFound:
        raise _ENDPOINT_NOT_FOUND from None
    return WebhookOut.model_validate(record)


@router.post(
    "/{endpoint_id}/test",
    response_model=TestDeliveryOut,
    summary="Send a test delivery now",
)
async def test_webhook(endpoint_id: str, auth: Auth, services: ServicesDep) -> TestDeliveryOut:
    try:
        result = await services.dispatcher.test_endpoint(auth.hotel_id, endpoint_id)
    except EndpointNotFound:
        raise _ENDPOINT_NOT_FOUND from None
    return TestDeliveryOut.model_validate(result)


@router.post(
    "/{endpoint_id}/regenerate-secret",
    response_model=WebhookSecretOut,
    summary="Rotate the signing secret",
)
async def regenerate_webhook_secret(
    endpoint_id: str,
    auth: Auth,
    services: ServicesDep,
) -> WebhookSecretOut:
    try:
        record = await services.dispatcher.regenerate_secret(auth.hotel_id, endpoint_id)
    except EndpointNotFound:
        raise _ENDPOINT_NOT_FOUND from None
    return WebhookSecretOut.model_validate(record)


@router.get(
    "/{endpoint_id}/deliveries",
    response_model=list[DeliveryOut],
    summary="Recent deliveries for an endpoint",
)
async def list_webhook_deliveries(
    endpoint_id: str,
    auth: Auth,
    services: ServicesDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[DeliveryOut]:
    try:
        deliveries = await services.dispatcher.deliveries(auth.hotel_id, endpoint_id, limit)
    except EndpointNotFound:
        raise _ENDPOINT_NOT_FOUND from None
    return [DeliveryOut.model_validate(delivery) for delivery in deliveries]
