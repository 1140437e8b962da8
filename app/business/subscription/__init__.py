from app.business.subscription.api import router
from app.business.subscription.models import OrganizationSubscription, SubscriptionInvoice, SubscriptionPlan
from app.business.subscription.schemas import (
    FeatureAccessRead,
    InvoiceCreate,
    InvoiceRead,
    PlanCreate,
    PlanRead,
    SubscriptionCreate,
    SubscriptionRead,
)
from app.business.subscription.service import SubscriptionService, subscription_service

__all__ = [
    "router",
    "SubscriptionPlan",
    "OrganizationSubscription",
    "SubscriptionInvoice",
    "FeatureAccessRead",
    "InvoiceCreate",
    "InvoiceRead",
    "PlanCreate",
    "PlanRead",
    "SubscriptionCreate",
    "SubscriptionRead",
    "SubscriptionService",
    "subscription_service",
]
