from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.business.billing.gateway import StripeGateway, StripeNotConfiguredError
from app.business.billing.models import StripeEvent
from app.business.billing.schemas import CheckoutSessionCreate, CheckoutSessionRead, PortalSessionRead, WebhookAck
from app.business.subscription.models import OrganizationSubscription, SubscriptionInvoice, SubscriptionPlan
from app.business.subscription.service import add_months, subscription_service
from app.context import get_correlation_id
from app.metrics import observe_stripe_event
from app.platform.audit.service import audit_log_service
from app.platform.notifications.service import notification_service
from app.platform.organizations.models import Organization
from app.platform.organizations.service import organization_service
from app.platform.security.context import AuthContext

logger = logging.getLogger(__name__)

# Stripe subscription status -> local subscription status.
STATUS_MAP: dict[str, str] = {
    "active": "active",
    "trialing": "trial",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "incomplete_expired": "expired",
}

SUBSCRIPTION_SETTINGS_URL = "/app/settings/subscription"


def map_status(stripe_status: str | None) -> str:
    return STATUS_MAP.get(stripe_status or "", "active")


def _ts(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price_id(subscription: dict[str, Any]) -> str | None:
    return (_first_item(subscription).get("price") or {}).get("id")


def _period(subscription: dict[str, Any]) -> tuple[datetime, datetime]:
    # Newer API versions report billing periods on the subscription item.
    item = _first_item(subscription)
    start = _ts(subscription.get("current_period_start") or item.get("current_period_start"))
    end = _ts(subscription.get("current_period_end") or item.get("current_period_end"))
    now = datetime.now(timezone.utc)
    start = start or now
    return start, end or add_months(start, 1)


def _system_context(organization_id: uuid.UUID | None) -> AuthContext:
    return AuthContext(
        user_id="system:stripe",
        organization_id=str(organization_id) if organization_id else None,
        correlation_id=get_correlation_id(),
        is_super_admin=True,
        roles=["system.admin"],
        permissions=["system.admin"],
    )


@dataclass(slots=True)
class _Outcome:
    outcome: str
    organization_id: uuid.UUID | None = None


@dataclass(slots=True)
class StripeWebhookService:
    """Applies verified Stripe events to local subscriptions and invoices exactly once."""

    def handle_event(self, session: Session, event: dict[str, Any], gateway: StripeGateway) -> WebhookAck:
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        log_extra = {"stripe_event_id": event_id, "event_type": event_type}

        if event_id and session.scalar(select(StripeEvent.id).where(StripeEvent.stripe_event_id == event_id)) is not None:
            logger.info("stripe.event.duplicate", extra=log_extra)
            observe_stripe_event(event_type=event_type, outcome="duplicate")
            return WebhookAck(duplicate=True, outcome="duplicate")

        handler = self._handlers().get(event_type)
        obj = ((event.get("data") or {}).get("object")) or {}
        try:
            result = handler(session, obj, gateway) if handler is not None else _Outcome("ignored")
            if event_id:
                session.add(
                    StripeEvent(
                        stripe_event_id=event_id,
                        event_type=event_type,
                        organization_id=result.organization_id,
                        outcome=result.outcome,
                    )
                )
            session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event won the insert.
            session.rollback()
            observe_stripe_event(event_type=event_type, outcome="duplicate")
            return WebhookAck(duplicate=True, outcome="duplicate")
        except Exception:
            session.rollback()
            logger.exception("stripe.event.failed", extra=log_extra)
            observe_stripe_event(event_type=event_type, outcome="failed")
            raise

        logger.info("stripe.event.processed", extra={**log_extra, "status": result.outcome})
        observe_stripe_event(event_type=event_type, outcome=result.outcome)
        return WebhookAck(outcome=result.outcome)

    def _handlers(self) -> dict[str, Callable[[Session, dict[str, Any], StripeGateway], _Outcome]]:
        return {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_upsert,
            "customer.subscription.updated": self._on_subscription_upsert,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "customer.subscription.trial_will_end": self._on_trial_will_end,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_failed,
        }

    def _on_checkout_completed(self, session: Session, obj: dict[str, Any], gateway: StripeGateway) -> _Outcome:
        raw_organization_id = (obj.get("metadata") or {}).get("organization_id")
        if not raw_organization_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="checkout session has no organization_id metadata"
            )
        try:
            organization_id = uuid.UUID(str(raw_organization_id))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="checkout session organization_id is not a UUID"
            )
        organization = session.get(Organization, organization_id)
        if organization is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")

        stripe_subscription_id = obj.get("subscription")
        if not stripe_subscription_id:
            return _Outcome("ignored", organization.id)
        stripe_subscription = gateway.retrieve_subscription(stripe_subscription_id)
        plan = self._plan_for_price(session, _price_id(stripe_subscription))
        if plan is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="no subscription plan matches the Stripe price"
            )

        customer_id = obj.get("customer") or stripe_subscription.get("customer")
        if customer_id:
            organization.stripe_customer_id = customer_id
        payment_method = obj.get("payment_method") or stripe_subscription.get("default_payment_method")
        self._upsert_subscription(
            session,
            organization.id,
            stripe_subscription,
            plan,
            customer_id=customer_id,
            payment_method_id=payment_method,
        )
        return _Outcome("processed", organization.id)

    def _on_subscription_upsert(self, session: Session, obj: dict[str, Any], gateway: StripeGateway) -> _Outcome:
        organization = self._resolve_organization(session, gateway, obj.get("customer"), obj.get("metadata"))
        if organization is None:
            logger.warning("stripe.subscription.unmatched_customer", extra={"event_type": "customer.subscription"})
            return _Outcome("ignored")

        plan = self._plan_for_price(session, _price_id(obj))
        existing = self._subscription_by_provider_id(session, obj.get("id"))
        if existing is None and plan is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="no subscription plan matches the Stripe price"
            )
        self._upsert_subscription(
            session,
            organization.id,
            obj,
            plan,
            customer_id=obj.get("customer"),
            payment_method_id=obj.get("default_payment_method"),
        )
        return _Outcome("processed", organization.id)

    def _on_subscription_deleted(self, session: Session, obj: dict[str, Any], gateway: StripeGateway) -> _Outcome:
        subscription = self._subscription_by_provider_id(session, obj.get("id"))
        if subscription is None:
            return _Outcome("ignored")
        previous_status = subscription.status
        subscription.status = "canceled"
        self._audit(session, subscription, "subscription.canceled", {"status": previous_status})
        self._publish("subscription.canceled", subscription)
        return _Outcome("processed", subscription.organization_id)

    def _on_trial_will_end(self, session: Session, obj: dict[str, Any], gateway: StripeGateway) -> _Outcome:
        organization = self._resolve_organization(session, gateway, obj.get("customer"), obj.get("metadata"))
        if organization is None:
            return _Outcome("ignored")
        trial_end = _ts(obj.get("trial_end"))
        subscription = self._subscription_by_provider_id(session, obj.get("id"))
        plan = session.get(SubscriptionPlan, subscription.subscription_plan_id) if subscription is not None else None
        plan_name = plan.name if plan is not None else "current"

        days_left = 0
        if trial_end is not None:
            days_left = max(0, math.ceil((trial_end - datetime.now(timezone.utc)).total_seconds() / 86400))
        notification_service.stage(
            session,
            organization_id=organization.id,
            title="Your trial is ending soon",
            message=(
                f"Your {plan_name} trial ends in {days_left} day{'s' if days_left != 1 else ''}. "
                "Add a payment method to keep your CRM running without interruption."
            ),
            type="trial_expiration",
            action_url=SUBSCRIPTION_SETTINGS_URL,
            metadata={
                "subscription_id": str(subscription.id) if subscription is not None else None,
                "trial_end": trial_end.isoformat() if trial_end is not None else None,
                "days_left": days_left,
            },
        )
        events.publish(
            {
                "event_type": "subscription.trial_will_end",
                "organization_id": str(organization.id),
                "trial_end": trial_end.isoformat() if trial_end is not None else None,
            }
        )
        return _Outcome("processed", organization.id)

    def _on_invoice_paid(self, session: Session, obj: dict[str, Any], gateway: StripeGateway) -> _Outcome:
        organization = self._resolve_organization(session, gateway, obj.get("customer"), None)
        if organization is None:
            return _Outcome("ignored")
        paid_at = _ts((obj.get("status_transitions") or {}).get("paid_at")) or datetime.now(timezone.utc)
        invoice = self._upsert_invoice(
            session,
            organization.id,
            obj,
            status="paid",
            amount=Decimal(int(obj.get("amount_paid") or 0)) / 100,
            due_date=_ts(obj.get("due_date")) or paid_at,
            paid_at=paid_at,
        )
        events.publish(
            {
                "event_type": "invoice.paid",
                "organization_id": str(organization.id),
                "invoice_id": str(invoice.id),
                "amount": str(invoice.amount),
            }
        )
        return _Outcome("processed", organization.id)

    def _on_invoice_failed(self, session: Session, obj: dict[str, Any], gateway: StripeGateway) -> _Outcome:
        organization = self._resolve_organization(session, gateway, obj.get("customer"), None)
        if organization is None:
            return _Outcome("ignored")
        amount = Decimal(int(obj.get("amount_due") or 0)) / 100
        invoice = self._upsert_invoice(
            session,
            organization.id,
            obj,
            status="unpaid",
            amount=amount,
            due_date=_ts(obj.get("due_date")) or datetime.now(timezone.utc) + timedelta(days=7),
            paid_at=None,
        )
        subscription = (
            session.get(OrganizationSubscription, invoice.subscription_id) if invoice.subscription_id is not None else None
        )
        if subscription is not None and subscription.status not in {"canceled", "past_due"}:
            previous_status = subscription.status
            subscription.status = "past_due"
            self._audit(session, subscription, "subscription.past_due", {"status": previous_status})
            self._publish("subscription.past_due", subscription)
        notification_service.stage(
            session,
            organization_id=organization.id,
            title="Payment failed",
            message=(
                f"We couldn't process your payment of ${amount:.2f}. "
                "Please update your payment method to keep your subscription active."
            ),
            type="subscription_payment_failed",
            action_url=SUBSCRIPTION_SETTINGS_URL,
            metadata={"invoice_id": str(invoice.id), "provider_invoice_id": obj.get("id")},
        )
        events.publish(
            {
                "event_type": "invoice.payment_failed",
                "organization_id": str(organization.id),
                "invoice_id": str(invoice.id),
                "amount": str(amount),
            }
        )
        return _Outcome("processed", organization.id)

    def _upsert_subscription(
        self,
        session: Session,
        organization_id: uuid.UUID,
        stripe_subscription: dict[str, Any],
        plan: SubscriptionPlan | None,
        *,
        customer_id: str | None,
        payment_method_id: str | None,
    ) -> OrganizationSubscription:
        provider_id = stripe_subscription.get("id")
        period_start, period_end = _period(stripe_subscription)
        local_status = map_status(stripe_subscription.get("status"))

        subscription = self._subscription_by_provider_id(session, provider_id)
        if subscription is None:
            if plan is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="no subscription plan matches the Stripe price"
                )
            subscription = OrganizationSubscription(
                organization_id=organization_id,
                subscription_plan_id=plan.id,
                subscription_provider="stripe",
                provider_subscription_id=provider_id,
                current_period_start=period_start,
                current_period_end=period_end,
            )
            session.add(subscription)
            action_type = "subscription.created"
            previous: dict[str, Any] | None = None
            previous_plan_id: uuid.UUID | None = None
        else:
            action_type = "subscription.updated"
            previous = {"status": subscription.status, "subscription_plan_id": str(subscription.subscription_plan_id)}
            previous_plan_id = subscription.subscription_plan_id

        if plan is not None:
            subscription.subscription_plan_id = plan.id
            subscription_service.sync_organization_tier(session, organization_id, plan)
        subscription.status = local_status
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.cancel_at_period_end = bool(stripe_subscription.get("cancel_at_period_end", False))
        if payment_method_id:
            subscription.payment_method_id = payment_method_id
        subscription.subscription_metadata = {
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": provider_id,
        }
        session.flush()

        self._audit(session, subscription, action_type, previous)
        self._publish(action_type, subscription)
        if plan is not None and previous_plan_id is not None and previous_plan_id != plan.id:
            self._notify_plan_change(session, subscription, session.get(SubscriptionPlan, previous_plan_id), plan)
        return subscription

    @staticmethod
    def _notify_plan_change(
        session: Session,
        subscription: OrganizationSubscription,
        previous_plan: SubscriptionPlan | None,
        plan: SubscriptionPlan,
    ) -> None:
        previous_name = previous_plan.name if previous_plan is not None else "your previous plan"
        upgraded = previous_plan is None or plan.price >= previous_plan.price
        verb = "upgraded" if upgraded else "downgraded"
        notification_service.stage(
            session,
            organization_id=subscription.organization_id,
            title=f"Subscription {verb}",
            message=f"Your subscription has been {verb} from {previous_name} to {plan.name}.",
            type=f"subscription_{verb}",
            action_url=SUBSCRIPTION_SETTINGS_URL,
            metadata={
                "subscription_id": str(subscription.id),
                "previous_plan": previous_name,
                "new_plan": plan.name,
            },
        )

    @staticmethod
    def _upsert_invoice(
        session: Session,
        organization_id: uuid.UUID,
        obj: dict[str, Any],
        *,
        status: str,
        amount: Decimal,
        due_date: datetime,
        paid_at: datetime | None,
    ) -> SubscriptionInvoice:
        provider_invoice_id = obj.get("id")
        invoice = None
        if provider_invoice_id:
            invoice = session.scalar(
                select(SubscriptionInvoice).where(SubscriptionInvoice.provider_invoice_id == provider_invoice_id)
            )
        if invoice is None:
            invoice = SubscriptionInvoice(organization_id=organization_id, provider_invoice_id=provider_invoice_id)
            session.add(invoice)

        local_subscription = StripeWebhookService._subscription_by_provider_id(session, obj.get("subscription"))
        invoice.subscription_id = local_subscription.id if local_subscription is not None else None
        invoice.status = status
        invoice.amount = amount.quantize(Decimal("0.000001"))
        invoice.due_date = due_date
        invoice.paid_at = paid_at
        invoice.invoice_url = obj.get("hosted_invoice_url")
        invoice.invoice_pdf = obj.get("invoice_pdf")
        session.flush()
        return invoice

    @staticmethod
    def _resolve_organization(
        session: Session, gateway: StripeGateway, customer_id: str | None, metadata: dict[str, Any] | None
    ) -> Organization | None:
        if not customer_id:
            return None
        organization = session.scalar(select(Organization).where(Organization.stripe_customer_id == customer_id))
        if organization is not None:
            return organization

        raw_organization_id = (metadata or {}).get("organization_id")
        if not raw_organization_id:
            customer = gateway.retrieve_customer(customer_id)
            raw_organization_id = (customer.get("metadata") or {}).get("organization_id")
        if not raw_organization_id:
            return None
        try:
            organization = session.get(Organization, uuid.UUID(str(raw_organization_id)))
        except ValueError:
            return None
        if organization is not None and organization.stripe_customer_id is None:
            organization.stripe_customer_id = customer_id
        return organization

    @staticmethod
    def _plan_for_price(session: Session, price_id: str | None) -> SubscriptionPlan | None:
        if not price_id:
            return None
        return session.scalar(select(SubscriptionPlan).where(SubscriptionPlan.stripe_price_id == price_id))

    @staticmethod
    def _subscription_by_provider_id(session: Session, provider_id: str | None) -> OrganizationSubscription | None:
        if not provider_id:
            return None
        return session.scalar(
            select(OrganizationSubscription).where(OrganizationSubscription.provider_subscription_id == provider_id)
        )

    @staticmethod
    def _audit(
        session: Session, subscription: OrganizationSubscription, action_type: str, previous: dict[str, Any] | None
    ) -> None:
        audit_log_service.record(
            session,
            _system_context(subscription.organization_id),
            organization_id=subscription.organization_id,
            action_type=action_type,
            entity_type="subscription",
            entity_id=subscription.id,
            previous_state=previous,
            new_state={"status": subscription.status, "subscription_plan_id": str(subscription.subscription_plan_id)},
            metadata={"source": "stripe"},
        )

    @staticmethod
    def _publish(event_type: str, subscription: OrganizationSubscription) -> None:
        events.publish(
            {
                "event_type": event_type,
                "subscription_id": str(subscription.id),
                "organization_id": str(subscription.organization_id),
                "subscription_plan_id": str(subscription.subscription_plan_id),
                "status": subscription.status,
            }
        )


@dataclass(slots=True)
class BillingService:
    def create_checkout_session(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        payload: CheckoutSessionCreate,
        gateway: StripeGateway,
    ) -> CheckoutSessionRead:
        organization = organization_service.load(session, ctx, organization_id)
        plan = subscription_service.load_plan(session, payload.subscription_plan_id)
        if not plan.stripe_price_id or not plan.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="plan is not available for checkout")

        try:
            if organization.stripe_customer_id is None:
                customer = gateway.create_customer(
                    email=payload.customer_email, name=organization.name, organization_id=str(organization.id)
                )
                organization.stripe_customer_id = customer["id"]
                session.commit()
            checkout = gateway.create_checkout_session(
                customer_id=organization.stripe_customer_id,
                price_id=plan.stripe_price_id,
                organization_id=str(organization.id),
            )
        except StripeNotConfiguredError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
        return CheckoutSessionRead(session_id=checkout["id"], url=checkout.get("url"))

    def create_portal_session(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, gateway: StripeGateway
    ) -> PortalSessionRead:
        organization = organization_service.load(session, ctx, organization_id)
        if organization.stripe_customer_id is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="organization has no billing account"
            )
        try:
            portal = gateway.create_billing_portal_session(customer_id=organization.stripe_customer_id)
        except StripeNotConfiguredError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
        return PortalSessionRead(url=portal["url"])


stripe_webhook_service = StripeWebhookService()
billing_service = BillingService()
