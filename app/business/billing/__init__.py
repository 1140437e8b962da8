from app.business.billing.api import router, webhook_router
from app.business.billing.gateway import StripeGateway, get_stripe_gateway
from app.business.billing.models import StripeEvent
from app.business.billing.service import (
    STATUS_MAP,
    BillingService,
    StripeWebhookService,
    billing_service,
    stripe_webhook_service,
)

__all__ = [
    "router",
    "webhook_router",
    "StripeGateway",
    "get_stripe_gateway",
    "StripeEvent",
    "STATUS_MAP",
    "BillingService",
    "StripeWebhookService",
    "billing_service",
    "stripe_webhook_service",
]
