from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.business.subscription import plans as catalog
from app.business.subscription.admin import subscription_admin_service
from app.business.subscription.premium import premium_tier_service
from app.business.subscription.schemas import (
    AdminCancelRequest,
    ChangePlanRequest,
    FeatureAccessRead,
    InvoiceCreate,
    InvoiceRead,
    InvoiceUpdate,
    LimitCheckRead,
    OrganizationMetricsRead,
    PlanCreate,
    PlanRead,
    PlanUpdate,
    PricingCalculatorRead,
    SubscriptionAnalyticsRead,
    SubscriptionCreate,
    SubscriptionRead,
    SubscriptionUpdate,
    TierComparisonRead,
    TierRecommendationRead,
    TrialSubscriptionCreate,
)
from app.business.subscription.service import subscription_service
from app.core.database import get_db
from app.crm.models import Contact
from app.platform.organizations.service import OrganizationService
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context, require_organization


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.get("/catalog")
def get_catalog(is_organization: bool | None = Query(default=None)) -> dict[str, object]:
    if is_organization is None:
        definitions = list(catalog.PLANS)
    elif is_organization:
        definitions = catalog.get_organization_plans()
    else:
        definitions = catalog.get_individual_plans()
    return {
        "plans": [catalog.plan_as_dict(item) for item in definitions],
        "topup_packages": [catalog.package_as_dict(item) for item in catalog.TOPUP_PACKAGES],
    }


@router.get("/plans", response_model=list[PlanRead])
def list_plans(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[PlanRead]:
    return subscription_service.get_subscription_plans(db, ctx)


@router.get("/plans/{plan_id}", response_model=PlanRead)
def get_plan(
    plan_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PlanRead:
    return subscription_service.get_plan_by_id(db, ctx, plan_id)


@router.get("/current", response_model=SubscriptionRead | None)
def get_current_subscription(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead | None:
    return subscription_service.get_organization_subscription(db, ctx, require_organization(ctx))


@router.get("/current/plan", response_model=PlanRead | None)
def get_current_plan(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PlanRead | None:
    return subscription_service.get_organization_subscription_plan(db, ctx, require_organization(ctx))


@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.create_subscription(db, ctx, require_organization(ctx), payload)


@router.post("/trial", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_trial_subscription(
    payload: TrialSubscriptionCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.create_trial_subscription(db, ctx, require_organization(ctx), payload)


@router.get("/features", response_model=FeatureAccessRead)
def get_feature_access(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> FeatureAccessRead:
    return subscription_service.get_organization_feature_access(db, ctx, require_organization(ctx))


@router.get("/limits/users", response_model=LimitCheckRead)
def check_user_limit(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> LimitCheckRead:
    organization_id = require_organization(ctx)
    current = OrganizationService.count_members(db, organization_id)
    return subscription_service.can_add_more_users(db, ctx, organization_id, current)


@router.get("/limits/contacts", response_model=LimitCheckRead)
def check_contact_limit(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> LimitCheckRead:
    organization_id = require_organization(ctx)
    current = int(
        db.scalar(select(func.count()).select_from(Contact).where(Contact.organization_id == organization_id)) or 0
    )
    return subscription_service.can_add_more_contacts(db, ctx, organization_id, current)


@router.get("/invoices", response_model=list[InvoiceRead])
def list_invoices(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[InvoiceRead]:
    return subscription_service.get_organization_invoices(db, ctx, require_organization(ctx))


@router.post("/invoices", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return subscription_service.create_invoice(db, ctx, require_organization(ctx), payload)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceRead)
def update_invoice(
    invoice_id: uuid.UUID,
    payload: InvoiceUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return subscription_service.update_invoice(db, ctx, invoice_id, payload)


@router.post("/invoices/{invoice_id}/pay", response_model=InvoiceRead)
def mark_invoice_paid(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return subscription_service.mark_invoice_as_paid(db, ctx, invoice_id)


@router.get("/premium/metrics", response_model=OrganizationMetricsRead)
def get_premium_metrics(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrganizationMetricsRead:
    return premium_tier_service.get_organization_metrics(db, ctx, require_organization(ctx))


@router.get("/premium/recommendation", response_model=TierRecommendationRead)
def get_premium_recommendation(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TierRecommendationRead:
    return premium_tier_service.get_tier_recommendation(db, ctx, require_organization(ctx))


@router.get("/premium/comparison", response_model=TierComparisonRead)
def compare_premium_tiers(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TierComparisonRead:
    return premium_tier_service.compare_tiers(db, ctx, require_organization(ctx))


@router.get("/premium/pricing-calculator", response_model=PricingCalculatorRead)
def get_pricing_calculator(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PricingCalculatorRead:
    return premium_tier_service.get_pricing_calculator(db, ctx, require_organization(ctx))


@router.get("/admin/plans", response_model=list[PlanRead])
def admin_list_plans(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[PlanRead]:
    return subscription_admin_service.list_plans(db, ctx, include_inactive=include_inactive)


@router.post("/admin/plans", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
def admin_create_plan(
    payload: PlanCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PlanRead:
    return subscription_admin_service.create_plan(db, ctx, payload)


@router.post("/admin/plans/initialize")
def admin_initialize_plans(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> dict[str, list[str]]:
    return subscription_admin_service.initialize_predefined_plans(db, ctx)


@router.patch("/admin/plans/{plan_id}", response_model=PlanRead)
def admin_update_plan(
    plan_id: uuid.UUID,
    payload: PlanUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PlanRead:
    return subscription_admin_service.update_plan(db, ctx, plan_id, payload)


@router.get("/admin/analytics", response_model=SubscriptionAnalyticsRead)
def admin_analytics(
    start: datetime | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionAnalyticsRead:
    start = start or datetime.now(timezone.utc) - timedelta(days=365)
    return subscription_admin_service.get_subscription_analytics(db, ctx, start)


@router.post("/admin/{subscription_id}/change-plan", response_model=SubscriptionRead)
def admin_change_plan(
    subscription_id: uuid.UUID,
    payload: ChangePlanRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_admin_service.change_plan(db, ctx, subscription_id, payload.subscription_plan_id)


@router.post("/admin/{subscription_id}/cancel", response_model=SubscriptionRead)
def admin_cancel_subscription(
    subscription_id: uuid.UUID,
    payload: AdminCancelRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_admin_service.cancel_subscription(
        db, ctx, subscription_id, cancel_at_period_end=payload.cancel_at_period_end
    )


@router.post("/admin/{subscription_id}/reactivate", response_model=SubscriptionRead)
def admin_reactivate_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_admin_service.reactivate_subscription(db, ctx, subscription_id)


@router.get("/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.get_subscription_by_id(db, ctx, subscription_id)


@router.patch("/{subscription_id}", response_model=SubscriptionRead)
def update_subscription(
    subscription_id: uuid.UUID,
    payload: SubscriptionUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.update_subscription(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return subscription_service.cancel_subscription(db, ctx, subscription_id)
