"""Webhook subscription and delivery API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status

from guardsync.core.errors import GuardSyncError
from guardsync.engine.engine import Engine
from guardsync.server.api.deps import get_engine, http_error, require_api_token
from guardsync.server.schemas import (
    DeliveryResponse,
    WebhookCreateRequest,
    WebhookCreateResponse,
    WebhookResponse,
    WebhookUpdateRequest,
    delivery_to_response,
    webhook_to_response,
)

router = APIRouter(prefix="/api", tags=["webhooks"], dependencies=[Depends(require_api_token)])


@router.post(
    "/families/{family_id}/webhooks",
    response_model=WebhookCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_webhook(
    family_id: str,
    request: WebhookCreateRequest,
    engine: Engine = Depends(get_engine),
) -> WebhookCreateResponse:
    """Subscribe a URL to events; the signing secret is not shown again."""
    try:
        webhook = engine.webhooks.create_webhook(family_id, request.url, request.events)
    except GuardSyncError as e:
        raise http_error(e) from e
    return WebhookCreateResponse(secret=webhook.secret, webhook=webhook_to_response(webhook))


@router.get("/families/{family_id}/webhooks", response_model=list[WebhookResponse])
def list_webhooks(family_id: str, engine: Engine = Depends(get_engine)) -> list[WebhookResponse]:
    return [webhook_to_response(w) for w in engine.db.list_webhooks(family_id)]


@router.get("/families/{family_id}/deliveries/failed", response_model=list[DeliveryResponse])
def list_failed_deliveries(
    family_id: str, engine: Engine = Depends(get_engine)
) -> list[DeliveryResponse]:
    """List deliveries that exhausted their retries."""
    return [delivery_to_response(d) for d in engine.webhooks.list_failed(family_id)]


@router.get("/webhooks/{webhook_id}", response_model=WebhookResponse)
def get_webhook(webhook_id: str, engine: Engine = Depends(get_engine)) -> WebhookResponse:
    try:
        webhook = engine.webhooks.get_webhook(webhook_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return webhook_to_response(webhook)


@router.patch("/webhooks/{webhook_id}", response_model=WebhookResponse)
def update_webhook(
    webhook_id: str,
    request: WebhookUpdateRequest,
    engine: Engine = Depends(get_engine),
) -> WebhookResponse:
    try:
        webhook = engine.webhooks.update_webhook(
            webhook_id, url=request.url, events=request.events, active=request.active
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return webhook_to_response(webhook)


@router.delete("/webhooks/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_webhook(webhook_id: str, engine: Engine = Depends(get_engine)) -> Response:
    try:
        engine.webhooks.delete_webhook(webhook_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/webhooks/{webhook_id}/test", response_model=DeliveryResponse)
def test_webhook(webhook_id: str, engine: Engine = Depends(get_engine)) -> DeliveryResponse:
    """Send a test event synchronously and return the delivery outcome."""
    try:
        delivery = engine.webhooks.send_test(webhook_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return delivery_to_response(delivery)


@router.get("/webhooks/{webhook_id}/deliveries", response_model=list[DeliveryResponse])
def list_deliveries(
    webhook_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    engine: Engine = Depends(get_engine),
) -> list[DeliveryResponse]:
    try:
        deliveries = engine.webhooks.list_deliveries(webhook_id, limit)
    except GuardSyncError as e:
        raise http_error(e) from e
    return [delivery_to_response(d) for d in deliveries]
