from __future__ import annotations

import calendar
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.business.subscription import plans as catalog
from app.business.subscription.models import OrganizationSubscription, SubscriptionInvoice, SubscriptionPlan
from app.business.subscription.repository import InvoiceRepository, PlanRepository, SubscriptionRepository
from app.business.subscription.schemas import (
    FeatureAccess,
    FeatureAccessRead,
    InvoiceCreate,
    InvoiceRead,
    InvoiceUpdate,
    LimitCheckRead,
    PlanRead,
    SubscriptionCreate,
    SubscriptionRead,
    SubscriptionUpdate,
    TrialSubscriptionCreate,
)
from app.platform.audit.service import audit_log_service
from app.platform.organizations.models import Organization
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError


ACTIVE_STATUSES = frozenset({"active", "trialing", "trial"})


def add_months(base: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping the day to the target month's length."""

    month_index = base.month - 1 + months
    year = base.year + (month_index // 12)
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


@dataclass(slots=True)
class SubscriptionService:
    plan_repository: PlanRepository = PlanRepository()
    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    invoice_repository: InvoiceRepository = InvoiceRepository()

    def get_subscription_plans(self, session: Session, ctx: AuthContext) -> list[PlanRead]:
        rows = session.scalars(
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.price.asc(), SubscriptionPlan.name.asc())
        ).all()
        return [self.to_plan_read(row, ctx) for row in rows]

    def get_plan_by_id(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID) -> PlanRead:
        return self.to_plan_read(self.load_plan(session, plan_id), ctx)

    def get_organization_subscription(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID
    ) -> SubscriptionRead | None:
        subscription = self.latest_subscription(session, organization_id)
        return self.to_subscription_read(subscription, ctx) if subscription is not None else None

    def get_subscription_by_id(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        return self.to_subscription_read(self.load_subscription(session, ctx, subscription_id), ctx)

    def get_organization_subscription_plan(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID
    ) -> PlanRead | None:
        subscription = self.latest_subscription(session, organization_id)
        if subscription is None:
            return None
        return self.to_plan_read(subscription.plan, ctx)

    def create_subscription(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: SubscriptionCreate
    ) -> SubscriptionRead:
        plan = self.load_plan(session, payload.subscription_plan_id)
        now = datetime.now(timezone.utc)
        period_start = payload.current_period_start or now
        data: dict[str, Any] = {
            "organization_id": organization_id,
            "subscription_plan_id": plan.id,
            "status": payload.status,
            "current_period_start": period_start,
            "current_period_end": payload.current_period_end or add_months(period_start, 1),
            "cancel_at_period_end": payload.cancel_at_period_end,
            "payment_method_id": payload.payment_method_id,
            "subscription_provider": payload.subscription_provider,
            "provider_subscription_id": payload.provider_subscription_id,
        }
        self._validate_subscription_write(data, ctx, action="create")

        subscription = OrganizationSubscription(**data, subscription_metadata=payload.metadata)
        return self._insert_subscription(session, ctx, subscription, plan, action_type="subscription.created")

    def create_trial_subscription(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: TrialSubscriptionCreate
    ) -> SubscriptionRead:
        plan = self.load_plan(session, payload.subscription_plan_id)
        definition = catalog.get_plan_by_name(plan.name)
        is_organization_plan = definition.is_organization_plan if definition is not None else False
        if payload.is_organization and not is_organization_plan:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Selected plan is not available for organizations",
            )
        if not payload.is_organization and is_organization_plan:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Selected plan is only available for organizations",
            )

        trial_days = definition.trial_days if definition is not None else 0
        now = datetime.now(timezone.utc)
        data: dict[str, Any] = {
            "organization_id": organization_id,
            "subscription_plan_id": plan.id,
            "status": "trialing" if trial_days > 0 else "active",
            "current_period_start": now,
            "current_period_end": now + timedelta(days=trial_days) if trial_days > 0 else add_months(now, 1),
            "cancel_at_period_end": False,
            "subscription_provider": "system",
            "provider_subscription_id": f"trial-{uuid.uuid4().hex}",
        }
        self._validate_subscription_write(data, ctx, action="create")

        subscription = OrganizationSubscription(
            **data, subscription_metadata={"trial": trial_days > 0, "trial_days": trial_days}
        )
        return self._insert_subscription(session, ctx, subscription, plan, action_type="subscription.trial_started")

    def update_subscription(
        self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID, payload: SubscriptionUpdate
    ) -> SubscriptionRead:
        subscription = self.load_subscription(session, ctx, subscription_id)
        changes = payload.model_dump(mode="python", exclude_unset=True)
        self._validate_subscription_write(changes, ctx, action="update", subscription=subscription)
        return self.apply_subscription_changes(session, ctx, subscription, changes, action_type="subscription.updated")

    def cancel_subscription(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        subscription = self.load_subscription(session, ctx, subscription_id)
        return self.apply_subscription_changes(
            session, ctx, subscription, {"cancel_at_period_end": True}, action_type="subscription.cancel_requested"
        )

    def apply_subscription_changes(
        self,
        session: Session,
        ctx: AuthContext,
        subscription: OrganizationSubscription,
        changes: dict[str, Any],
        *,
        action_type: str,
    ) -> SubscriptionRead:
        previous = self._snapshot(subscription)
        plan: SubscriptionPlan | None = None
        if changes.get("subscription_plan_id") is not None:
            plan = self.load_plan(session, changes["subscription_plan_id"])
        for key, value in changes.items():
            if key == "metadata":
                subscription.subscription_metadata = value
            elif value is not None:
                setattr(subscription, key, value)
        if plan is not None:
            subscription.plan = plan
            self.sync_organization_tier(session, subscription.organization_id, plan)

        audit_log_service.record(
            session,
            ctx,
            organization_id=subscription.organization_id,
            action_type=action_type,
            entity_type="subscription",
            entity_id=subscription.id,
            previous_state=previous,
            new_state=self._snapshot(subscription),
        )
        session.commit()
        session.refresh(subscription)
        self._emit_subscription_event(action_type, subscription, ctx)
        return self.to_subscription_read(subscription, ctx)

    def get_organization_invoices(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> list[InvoiceRead]:
        query = (
            select(SubscriptionInvoice)
            .where(SubscriptionInvoice.organization_id == organization_id)
            .order_by(SubscriptionInvoice.created_at.desc(), SubscriptionInvoice.id.desc())
        )
        rows = session.scalars(self.invoice_repository.apply_scope_query(query, ctx)).all()
        return [self._to_invoice_read(row, ctx) for row in rows]

    def create_invoice(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: InvoiceCreate
    ) -> InvoiceRead:
        data = payload.model_dump(mode="python")
        data["organization_id"] = organization_id
        data["amount"] = self._q(payload.amount)
        data["due_date"] = payload.due_date or datetime.now(timezone.utc) + timedelta(days=7)
        if payload.subscription_id is not None:
            subscription = self.load_subscription(session, ctx, payload.subscription_id)
            if subscription.organization_id != organization_id:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="subscription belongs to another organization")
        try:
            self.invoice_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        invoice = SubscriptionInvoice(**data)
        session.add(invoice)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="invoice already exists")
        session.refresh(invoice)
        return self._to_invoice_read(invoice, ctx)

    def update_invoice(
        self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID, payload: InvoiceUpdate
    ) -> InvoiceRead:
        invoice = self._get_invoice(session, ctx, invoice_id)
        changes = payload.model_dump(mode="python", exclude_unset=True, exclude_none=True)
        try:
            self.invoice_repository.validate_write_security(
                changes, ctx, existing_scope={"organization_id": str(invoice.organization_id)}, action="update"
            )
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        if "amount" in changes:
            changes["amount"] = self._q(changes["amount"])
        for key, value in changes.items():
            setattr(invoice, key, value)
        session.commit()
        session.refresh(invoice)
        return self._to_invoice_read(invoice, ctx)

    def mark_invoice_as_paid(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> InvoiceRead:
        return self.update_invoice(
            session, ctx, invoice_id, InvoiceUpdate(status="paid", paid_at=datetime.now(timezone.utc))
        )

    def get_organization_feature_access(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID
    ) -> FeatureAccessRead:
        subscription = self.latest_subscription(session, organization_id)
        if subscription is None:
            return FeatureAccessRead(is_active=False, plan_name=None, features={})
        plan = subscription.plan
        return FeatureAccessRead(
            is_active=subscription.status in ACTIVE_STATUSES,
            plan_name=plan.name if plan is not None else None,
            features=self.format_features(plan.features if plan is not None else {}),
        )

    @staticmethod
    def format_features(features: dict[str, Any]) -> dict[str, FeatureAccess]:
        formatted: dict[str, FeatureAccess] = {}
        for key, value in (features or {}).items():
            if isinstance(value, bool):
                formatted[key] = FeatureAccess(enabled=value)
            elif isinstance(value, (int, float)):
                formatted[key] = FeatureAccess(enabled=value > 0 or value == catalog.UNLIMITED, limit=value)
            else:
                formatted[key] = FeatureAccess(enabled=False)
        return formatted

    def can_add_more_users(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, current_user_count: int
    ) -> LimitCheckRead:
        subscription = self.latest_subscription(session, organization_id)
        if subscription is None or subscription.plan is None:
            return LimitCheckRead(can_add=False, reason="No active subscription found")
        definition = catalog.get_plan_by_name(subscription.plan.name)
        if definition is None:
            return LimitCheckRead(can_add=False, reason="Subscription plan not recognized")
        if definition.user_limit == catalog.UNLIMITED or current_user_count < definition.user_limit:
            return LimitCheckRead(can_add=True)
        return LimitCheckRead(
            can_add=False,
            reason=f"Your {definition.name} plan is limited to {definition.user_limit} users. Please upgrade to add more users.",
        )

    def can_add_more_contacts(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, current_contact_count: int
    ) -> LimitCheckRead:
        subscription = self.latest_subscription(session, organization_id)
        if subscription is None or subscription.plan is None:
            return LimitCheckRead(can_add=False, reason="No active subscription found")
        max_contacts = (subscription.plan.features or {}).get("MAX_CONTACTS")
        if isinstance(max_contacts, bool) or not isinstance(max_contacts, (int, float)):
            return LimitCheckRead(can_add=False, reason="Contact limit not defined in subscription")
        if max_contacts == catalog.UNLIMITED or current_contact_count < max_contacts:
            return LimitCheckRead(can_add=True)
        definition = catalog.get_plan_by_name(subscription.plan.name)
        plan_name = definition.name if definition is not None else "current"
        return LimitCheckRead(
            can_add=False,
            reason=f"Your {plan_name} plan is limited to {int(max_contacts)} contacts. Please upgrade to add more contacts.",
        )

    @staticmethod
    def latest_subscription(session: Session, organization_id: uuid.UUID) -> OrganizationSubscription | None:
        return session.scalar(
            select(OrganizationSubscription)
            .where(OrganizationSubscription.organization_id == organization_id)
            .order_by(OrganizationSubscription.created_at.desc(), OrganizationSubscription.id.desc())
            .limit(1)
        )

    @staticmethod
    def load_plan(session: Session, plan_id: uuid.UUID) -> SubscriptionPlan:
        plan = session.get(SubscriptionPlan, plan_id)
        if plan is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subscription plan not found")
        return plan

    @staticmethod
    def sync_organization_tier(session: Session, organization_id: uuid.UUID, plan: SubscriptionPlan) -> None:
        definition = catalog.get_plan_by_name(plan.name)
        organization = session.get(Organization, organization_id)
        if organization is not None and definition is not None:
            organization.subscription_tier = definition.id

    def _insert_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        subscription: OrganizationSubscription,
        plan: SubscriptionPlan,
        *,
        action_type: str,
    ) -> SubscriptionRead:
        session.add(subscription)
        self.sync_organization_tier(session, subscription.organization_id, plan)
        try:
            session.flush()
            audit_log_service.record(
                session,
                ctx,
                organization_id=subscription.organization_id,
                action_type=action_type,
                entity_type="subscription",
                entity_id=subscription.id,
                new_state=self._snapshot(subscription),
            )
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription already exists")
        session.refresh(subscription)
        self._emit_subscription_event(action_type, subscription, ctx)
        return self.to_subscription_read(subscription, ctx)

    def load_subscription(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> OrganizationSubscription:
        subscription = session.get(OrganizationSubscription, subscription_id)
        if subscription is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subscription not found")
        try:
            self.subscription_repository.validate_read_scope(ctx, organization_id=subscription.organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        return subscription

    def _get_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> SubscriptionInvoice:
        invoice = session.get(SubscriptionInvoice, invoice_id)
        if invoice is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="invoice not found")
        try:
            self.invoice_repository.validate_read_scope(ctx, organization_id=invoice.organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        return invoice

    def _validate_subscription_write(
        self,
        payload: dict[str, Any],
        ctx: AuthContext,
        *,
        action: str,
        subscription: OrganizationSubscription | None = None,
    ) -> None:
        existing_scope = {"organization_id": str(subscription.organization_id)} if subscription is not None else None
        try:
            self.subscription_repository.validate_write_security(
                payload, ctx, existing_scope=existing_scope, action=action
            )
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    def _emit_subscription_event(self, event_type: str, subscription: OrganizationSubscription, ctx: AuthContext | None) -> None:
        events.publish(
            {
                "event_type": event_type,
                "subscription_id": str(subscription.id),
                "organization_id": str(subscription.organization_id),
                "subscription_plan_id": str(subscription.subscription_plan_id),
                "status": subscription.status,
                "correlation_id": ctx.correlation_id if ctx is not None else None,
            }
        )

    @staticmethod
    def _snapshot(subscription: OrganizationSubscription) -> dict[str, Any]:
        return {
            "subscription_plan_id": str(subscription.subscription_plan_id),
            "status": subscription.status,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
        }

    @staticmethod
    def _q(value: Decimal) -> Decimal:
        return Decimal(value).quantize(Decimal("0.000001"))

    def to_plan_read(self, plan: SubscriptionPlan, ctx: AuthContext) -> PlanRead:
        payload = {
            "id": plan.id,
            "name": plan.name,
            "description": plan.description,
            "price": plan.price,
            "billing_interval": plan.billing_interval,
            "features": plan.features or {},
            "is_active": plan.is_active,
            "stripe_price_id": plan.stripe_price_id,
            "created_at": plan.created_at,
            "updated_at": plan.updated_at,
        }
        return PlanRead.model_validate(self.plan_repository.apply_read_security(payload, ctx))

    def to_subscription_read(self, subscription: OrganizationSubscription, ctx: AuthContext) -> SubscriptionRead:
        payload = {
            "id": subscription.id,
            "organization_id": subscription.organization_id,
            "subscription_plan_id": subscription.subscription_plan_id,
            "status": subscription.status,
            "current_period_start": subscription.current_period_start,
            "current_period_end": subscription.current_period_end,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "payment_method_id": subscription.payment_method_id,
            "subscription_provider": subscription.subscription_provider,
            "provider_subscription_id": subscription.provider_subscription_id,
            "metadata": subscription.subscription_metadata,
            "created_at": subscription.created_at,
            "updated_at": subscription.updated_at,
        }
        secured = self.subscription_repository.apply_read_security(payload, ctx)
        if subscription.plan is not None:
            secured["plan"] = self.to_plan_read(subscription.plan, ctx)
        return SubscriptionRead.model_validate(secured)

    def _to_invoice_read(self, invoice: SubscriptionInvoice, ctx: AuthContext) -> InvoiceRead:
        payload = {
            "id": invoice.id,
            "organization_id": invoice.organization_id,
            "subscription_id": invoice.subscription_id,
            "amount": invoice.amount,
            "status": invoice.status,
            "due_date": invoice.due_date,
            "paid_at": invoice.paid_at,
            "invoice_url": invoice.invoice_url,
            "invoice_pdf": invoice.invoice_pdf,
            "provider_invoice_id": invoice.provider_invoice_id,
            "created_at": invoice.created_at,
        }
        return InvoiceRead.model_validate(self.invoice_repository.apply_read_security(payload, ctx))


subscription_service = SubscriptionService()
