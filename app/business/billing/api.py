from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.business.billing.gateway import StripeGateway, StripeNotConfiguredError, StripeSignatureError, get_stripe_gateway
from app.business.billing.schemas import CheckoutSessionCreate, CheckoutSessionRead, PortalSessionRead, WebhookAck
from app.business.billing.service import billing_service, stripe_webhook_service
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context, require_organization


router = APIRouter(prefix="/api/billing", tags=["billing"])
webhook_router = APIRouter(prefix="/api/webhooks", tags=["billing"])


@router.post("/checkout", response_model=CheckoutSessionRead, status_code=status.HTTP_201_CREATED)
def create_checkout_session(
    payload: CheckoutSessionCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CheckoutSessionRead:
    organization_id = require_organization(ctx)
    return billing_service.create_checkout_session(session, ctx, organization_id, payload, gateway)


@router.post("/portal", response_model=PortalSessionRead)
def create_portal_session(
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> PortalSessionRead:
    organization_id = require_organization(ctx)
    return billing_service.create_portal_session(session, ctx, organization_id, gateway)


@webhook_router.post("/stripe", response_model=WebhookAck)
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
    session: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> WebhookAck:
    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing stripe-signature header")
    # Only the raw body read needs the event loop; verification and the DB work run on the threadpool.
    payload = await request.body()
    return await run_in_threadpool(_process_stripe_webhook, session, gateway, payload, stripe_signature)


def _process_stripe_webhook(session: Session, gateway: StripeGateway, payload: bytes, signature: str) -> WebhookAck:
    try:
        event = gateway.construct_event(payload, signature)
    except StripeSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Webhook Error: {exc}")
    except StripeNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return stripe_webhook_service.handle_event(session, event, gateway)
