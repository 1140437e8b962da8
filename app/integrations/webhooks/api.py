from __future__ import annotations

import uuid

import httpx
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.integrations.webhooks.schemas import WebhookCreate, WebhookDeliveryRead, WebhookRead, WebhookUpdate
from app.integrations.webhooks.service import get_webhook_http_client, webhook_service
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context, require_organization


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("", response_model=WebhookRead, status_code=status.HTTP_201_CREATED)
def create_webhook(
    payload: WebhookCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> WebhookRead:
    return webhook_service.create_webhook(session, ctx, require_organization(ctx), payload)


@router.get("", response_model=list[WebhookRead])
def list_webhooks(session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> list[WebhookRead]:
    return webhook_service.list_webhooks(session, ctx, require_organization(ctx))


@router.post("/deliveries/{delivery_id}/retry", response_model=WebhookDeliveryRead)
def retry_delivery(
    delivery_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    client: httpx.Client = Depends(get_webhook_http_client),
) -> WebhookDeliveryRead:
    return webhook_service.retry_delivery(session, ctx, delivery_id, client)


@router.get("/{webhook_id}", response_model=WebhookRead)
def get_webhook(
    webhook_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> WebhookRead:
    return webhook_service.get_webhook(session, ctx, webhook_id)


@router.patch("/{webhook_id}", response_model=WebhookRead)
def update_webhook(
    webhook_id: uuid.UUID,
    payload: WebhookUpdate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> WebhookRead:
    return webhook_service.update_webhook(session, ctx, webhook_id, payload)


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_webhook(
    webhook_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    webhook_service.delete_webhook(session, ctx, webhook_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{webhook_id}/test", response_model=WebhookDeliveryRead)
def send_test_event(
    webhook_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    client: httpx.Client = Depends(get_webhook_http_client),
) -> WebhookDeliveryRead:
    return webhook_service.send_test_event(session, ctx, webhook_id, client)


@router.get("/{webhook_id}/deliveries", response_model=list[WebhookDeliveryRead])
def list_deliveries(
    webhook_id: uuid.UUID,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[WebhookDeliveryRead]:
    return webhook_service.list_deliveries(
        session, ctx, webhook_id, status_filter=status_filter, limit=limit, offset=offset
    )
