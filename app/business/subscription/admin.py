from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.business.subscription import plans as catalog
from app.business.subscription.models import OrganizationSubscription, SubscriptionPlan
from app.business.subscription.repository import PlanRepository
from app.business.subscription.schemas import (
    CohortRetentionRead,
    PlanCreate,
    PlanRead,
    PlanUpdate,
    SubscriptionAnalyticsRead,
    SubscriptionRead,
)
from app.business.subscription.service import add_months, subscription_service
from app.platform.organizations.models import OrganizationMember
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError
from app.platform.security.rls import is_admin_bypass

logger = logging.getLogger(__name__)

MONTH_KEYS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
TRIAL_STATUSES = frozenset({"trialing", "trial"})
# Lifetime assumed when estimating customer value.
AVERAGE_LIFETIME_MONTHS = 12


def _round_half_up(value: Decimal | float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _percent(part: int, whole: int) -> int:
    return _round_half_up(Decimal(part) / Decimal(whole) * 100) if whole else 0


@dataclass(slots=True)
class SubscriptionAdminService:
    """Back-office plan catalog and subscription management. Every call requires an admin role."""

    plan_repository: PlanRepository = PlanRepository()

    def list_plans(self, session: Session, ctx: AuthContext, *, include_inactive: bool = False) -> list[PlanRead]:
        self._require_admin(ctx)
        query = select(SubscriptionPlan).order_by(SubscriptionPlan.price.asc(), SubscriptionPlan.name.asc())
        if not include_inactive:
            query = query.where(SubscriptionPlan.is_active.is_(True))
        return [subscription_service.to_plan_read(row, ctx) for row in session.scalars(query).all()]

    def create_plan(self, session: Session, ctx: AuthContext, payload: PlanCreate) -> PlanRead:
        self._require_admin(ctx)
        data = payload.model_dump(mode="python")
        try:
            self.plan_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        plan = SubscriptionPlan(**data)
        session.add(plan)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription plan already exists")
        session.refresh(plan)
        return subscription_service.to_plan_read(plan, ctx)

    def update_plan(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID, payload: PlanUpdate) -> PlanRead:
        self._require_admin(ctx)
        plan = subscription_service.load_plan(session, plan_id)
        changes = payload.model_dump(mode="python", exclude_unset=True, exclude_none=True)
        try:
            self.plan_repository.validate_write_security(changes, ctx, action="update")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        for key, value in changes.items():
            setattr(plan, key, value)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription plan already exists")
        session.refresh(plan)
        return subscription_service.to_plan_read(plan, ctx)

    def initialize_predefined_plans(self, session: Session, ctx: AuthContext) -> dict[str, list[str]]:
        """Upsert the static catalog (monthly plus annual variants) and deactivate unknown plans."""

        self._require_admin(ctx)
        existing = {plan.name: plan for plan in session.scalars(select(SubscriptionPlan)).all()}
        summary: dict[str, list[str]] = {"created": [], "updated": [], "deactivated": []}

        known_names: set[str] = set()
        for definition in catalog.PLANS:
            variants = [(definition.name, Decimal(definition.monthly_price), "monthly")]
            if definition.annual_price > 0 and definition.annual_price != definition.monthly_price:
                variants.append((f"{definition.name} (Annual)", Decimal(definition.annual_price * 12), "yearly"))

            for name, price, interval in variants:
                known_names.add(name)
                plan = existing.get(name)
                if plan is None:
                    session.add(
                        SubscriptionPlan(
                            name=name,
                            description=definition.description,
                            price=price,
                            billing_interval=interval,
                            features=dict(definition.features),
                            is_active=True,
                        )
                    )
                    summary["created"].append(name)
                else:
                    plan.description = definition.description
                    plan.price = price
                    plan.billing_interval = interval
                    plan.features = dict(definition.features)
                    plan.is_active = True
                    summary["updated"].append(name)

        for name, plan in existing.items():
            if name not in known_names and plan.is_active:
                logger.info("subscription.plan.deactivated", extra={"event_name": name})
                plan.is_active = False
                summary["deactivated"].append(name)

        session.commit()
        return summary

    def change_plan(
        self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID, plan_id: uuid.UUID
    ) -> SubscriptionRead:
        self._require_admin(ctx)
        subscription = subscription_service.load_subscription(session, ctx, subscription_id)
        return subscription_service.apply_subscription_changes(
            session, ctx, subscription, {"subscription_plan_id": plan_id}, action_type="subscription.plan_changed"
        )

    def cancel_subscription(
        self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID, *, cancel_at_period_end: bool = True
    ) -> SubscriptionRead:
        self._require_admin(ctx)
        subscription = subscription_service.load_subscription(session, ctx, subscription_id)
        changes: dict[str, object] = {"cancel_at_period_end": cancel_at_period_end}
        if not cancel_at_period_end:
            changes["status"] = "canceled"
        return subscription_service.apply_subscription_changes(
            session, ctx, subscription, changes, action_type="subscription.canceled"
        )

    def reactivate_subscription(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        self._require_admin(ctx)
        subscription = subscription_service.load_subscription(session, ctx, subscription_id)
        return subscription_service.apply_subscription_changes(
            session,
            ctx,
            subscription,
            {"cancel_at_period_end": False, "status": "active"},
            action_type="subscription.reactivated",
        )

    def get_subscription_analytics(self, session: Session, ctx: AuthContext, start: datetime) -> SubscriptionAnalyticsRead:
        """Subscription KPIs for subscriptions created since ``start``.

        MRR counts active and trialing subscriptions, with yearly plans spread
        over twelve months. Cohort retention looks back six further months.
        """

        self._require_admin(ctx)
        rows = session.scalars(
            select(OrganizationSubscription)
            .where(OrganizationSubscription.created_at >= start)
            .order_by(OrganizationSubscription.created_at.asc())
        ).all()

        total = len(rows)
        active = sum(1 for row in rows if row.status == "active")
        trialing = sum(1 for row in rows if row.status in TRIAL_STATUSES)
        canceled = sum(1 for row in rows if row.status == "canceled")

        plan_distribution: dict[str, int] = {}
        plan_revenue: dict[str, Decimal] = {}
        by_month: dict[str, int] = {}
        mrr = Decimal("0")
        for row in rows:
            plan_name = row.plan.name if row.plan is not None else "Unknown"
            plan_distribution[plan_name] = plan_distribution.get(plan_name, 0) + 1
            month_key = MONTH_KEYS[row.created_at.month - 1]
            by_month[month_key] = by_month.get(month_key, 0) + 1
            if (row.status == "active" or row.status in TRIAL_STATUSES) and row.plan is not None:
                price = Decimal(row.plan.price or 0)
                monthly = price / 12 if row.plan.billing_interval == "yearly" else price
                mrr += monthly
                plan_revenue[plan_name] = plan_revenue.get(plan_name, Decimal("0")) + monthly
        plan_distribution.setdefault("Free", 0)

        # Every organization counts at least one user.
        member_counts = session.execute(
            select(OrganizationMember.organization_id, func.count()).group_by(OrganizationMember.organization_id)
        ).all()
        total_users = sum(max(count, 1) for _, count in member_counts)
        average_value = _round_half_up(mrr / active) if active else 0

        return SubscriptionAnalyticsRead(
            total_subscriptions=total,
            active_subscriptions=active,
            trialing_subscriptions=trialing,
            canceled_subscriptions=canceled,
            mrr=_round_half_up(mrr),
            plan_distribution=plan_distribution,
            plan_revenue_distribution={
                name: float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)) for name, value in plan_revenue.items()
            },
            subscriptions_by_month=by_month,
            retention_rate=_percent(active, total),
            churn_rate=_percent(canceled, total),
            conversion_rate=_percent(active, active + trialing) if trialing else 0,
            arpu=_round_half_up(mrr / total_users) if total_users else 0,
            average_subscription_value=average_value,
            estimated_ltv=average_value * AVERAGE_LIFETIME_MONTHS,
            cohort_retention=self._cohort_retention(session, add_months(start, -6)),
        )

    @staticmethod
    def _cohort_retention(session: Session, since: datetime) -> list[CohortRetentionRead]:
        cohorts: dict[str, dict[str, int]] = {}
        for created_at, row_status in session.execute(
            select(OrganizationSubscription.created_at, OrganizationSubscription.status)
            .where(OrganizationSubscription.created_at >= since)
            .order_by(OrganizationSubscription.created_at.asc())
        ):
            key = f"{MONTH_KEYS[created_at.month - 1]}-{created_at.year}"
            bucket = cohorts.setdefault(key, {"total": 0, "active": 0, "canceled": 0})
            bucket["total"] += 1
            if row_status == "active" or row_status in TRIAL_STATUSES:
                bucket["active"] += 1
            elif row_status == "canceled":
                bucket["canceled"] += 1
        return [
            CohortRetentionRead(
                cohort=key,
                retention_rate=_percent(bucket["active"], bucket["total"]),
                cancel_rate=_percent(bucket["canceled"], bucket["total"]),
                **bucket,
            )
            for key, bucket in cohorts.items()
        ]

    @staticmethod
    def _require_admin(ctx: AuthContext) -> None:
        if not is_admin_bypass(ctx):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")


subscription_admin_service = SubscriptionAdminService()
