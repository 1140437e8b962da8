from __future__ import annotations

from app.platform.security.repository import BaseRepository


class WebhookRepository(BaseRepository):
    resource = "integrations.webhook"


class WebhookDeliveryRepository(BaseRepository):
    resource = "integrations.webhook_delivery"
