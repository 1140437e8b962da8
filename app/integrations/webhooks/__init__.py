from app.integrations.webhooks.api import router
from app.integrations.webhooks.models import WebhookConfiguration, WebhookDelivery
from app.integrations.webhooks.service import RETRY_DELAYS_MINUTES, WebhookService, sign_payload, webhook_service

__all__ = [
    "router",
    "WebhookConfiguration",
    "WebhookDelivery",
    "RETRY_DELAYS_MINUTES",
    "WebhookService",
    "sign_payload",
    "webhook_service",
]
