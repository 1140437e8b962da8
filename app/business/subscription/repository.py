from __future__ import annotations

from app.platform.security.repository import BaseRepository


class PlanRepository(BaseRepository):
    resource = "subscription.plan"


class SubscriptionRepository(BaseRepository):
    resource = "subscription.subscription"


class InvoiceRepository(BaseRepository):
    resource = "subscription.invoice"
