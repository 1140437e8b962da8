from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.billing.gateway import StripeGateway
from app.business.billing.models import StripeEvent
from app.business.billing.schemas import CheckoutSessionCreate
from app.business.billing.service import STATUS_MAP, billing_service, map_status, stripe_webhook_service
from app.business.subscription.models import OrganizationSubscription, SubscriptionInvoice, SubscriptionPlan
from app.core.database import Base
from app.platform.audit.models import AuditLog
from app.platform.notifications.models import Notification
from app.platform.organizations.models import Organization
from app.platform.security.context import AuthContext
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend


class FakeStripeGateway(StripeGateway):
    def __init__(self) -> None:
        super().__init__(secret_key="sk_test", webhook_secret="whsec_test", base_url="https://app.test")
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.customers: dict[str, dict[str, Any]] = {}
        self.checkout_calls: list[dict[str, Any]] = []

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self.subscriptions[subscription_id]

    def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return self.customers.get(customer_id, {"id": customer_id, "metadata": {}})

    def create_customer(self, *, email: str | None, name: str, organization_id: str) -> dict[str, Any]:
        customer = {"id": f"cus_{len(self.customers) + 1}", "email": email, "metadata": {"organization_id": organization_id}}
        self.customers[customer["id"]] = customer
        return customer

    def create_checkout_session(self, *, customer_id: str, price_id: str, organization_id: str) -> dict[str, Any]:
        self.checkout_calls.append({"customer": customer_id, "price": price_id, "organization_id": organization_id})
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_globals() -> Generator[None, None, None]:
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    events.published_events.clear()
    yield
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    events.published_events.clear()


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, Any]:
    organization = Organization(name="Acme", slug="acme")
    pro = SubscriptionPlan(name="Pro", price=Decimal("29"), features={"MAX_USERS": 5}, stripe_price_id="price_pro")
    premium = SubscriptionPlan(
        name="Premium Basic", price=Decimal("197"), features={"MAX_USERS": 20}, stripe_price_id="price_premium"
    )
    db_session.add_all([organization, pro, premium])
    db_session.commit()
    return {"organization": organization, "pro": pro, "premium": premium}


def _event(event_id: str, event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def _stripe_subscription(price_id: str, status: str = "active", **extra: Any) -> dict[str, Any]:
    return {
        "id": "sub_123",
        "customer": "cus_123",
        "status": status,
        "current_period_start": 1_767_225_600,
        "current_period_end": 1_769_904_000,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": price_id}}]},
        **extra,
    }


def test_status_map_translates_provider_states() -> None:
    assert STATUS_MAP["trialing"] == "trial"
    assert map_status("unpaid") == "past_due"
    assert map_status("incomplete") == "past_due"
    assert map_status("incomplete_expired") == "expired"
    assert map_status("paused") == "active"
    assert map_status(None) == "active"


def test_checkout_completed_creates_subscription_and_links_customer(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    gateway = FakeStripeGateway()
    gateway.subscriptions["sub_123"] = _stripe_subscription("price_premium", status="trialing")

    ack = stripe_webhook_service.handle_event(
        db_session,
        _event(
            "evt_1",
            "checkout.session.completed",
            {
                "customer": "cus_123",
                "subscription": "sub_123",
                "payment_method": "pm_1",
                "metadata": {"organization_id": str(organization.id)},
            },
        ),
        gateway,
    )

    assert ack.outcome == "processed"
    subscription = db_session.scalar(select(OrganizationSubscription))
    assert subscription is not None
    assert subscription.status == "trial"
    assert subscription.subscription_plan_id == seeded["premium"].id
    assert subscription.payment_method_id == "pm_1"
    assert subscription.subscription_metadata == {"stripe_customer_id": "cus_123", "stripe_subscription_id": "sub_123"}
    db_session.refresh(organization)
    assert organization.stripe_customer_id == "cus_123"
    assert organization.subscription_tier == "premium_basic"
    assert any(event["event_type"] == "subscription.created" for event in events.published_events)


def test_replayed_event_is_acknowledged_once(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    organization.stripe_customer_id = "cus_123"
    db_session.commit()
    gateway = FakeStripeGateway()
    event = _event("evt_dup", "customer.subscription.created", _stripe_subscription("price_pro"))

    first = stripe_webhook_service.handle_event(db_session, event, gateway)
    second = stripe_webhook_service.handle_event(db_session, event, gateway)

    assert first.duplicate is False
    assert second.duplicate is True
    assert db_session.scalar(select(func.count()).select_from(OrganizationSubscription)) == 1
    assert db_session.scalar(select(func.count()).select_from(StripeEvent)) == 1


def test_subscription_update_and_delete_follow_provider_state(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    organization.stripe_customer_id = "cus_123"
    db_session.commit()
    gateway = FakeStripeGateway()

    stripe_webhook_service.handle_event(
        db_session, _event("evt_a", "customer.subscription.created", _stripe_subscription("price_pro")), gateway
    )
    stripe_webhook_service.handle_event(
        db_session,
        _event(
            "evt_b",
            "customer.subscription.updated",
            _stripe_subscription("price_premium", status="past_due", cancel_at_period_end=True),
        ),
        gateway,
    )
    subscription = db_session.scalar(select(OrganizationSubscription))
    assert subscription is not None
    assert subscription.status == "past_due"
    assert subscription.cancel_at_period_end is True
    assert subscription.subscription_plan_id == seeded["premium"].id

    stripe_webhook_service.handle_event(
        db_session, _event("evt_c", "customer.subscription.deleted", {"id": "sub_123"}), gateway
    )
    db_session.refresh(subscription)
    assert subscription.status == "canceled"
    actions = db_session.scalars(select(AuditLog.action_type).order_by(AuditLog.created_at.asc())).all()
    assert actions == ["subscription.created", "subscription.updated", "subscription.canceled"]


def test_customer_metadata_resolves_unknown_customer(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    gateway = FakeStripeGateway()
    gateway.customers["cus_123"] = {"id": "cus_123", "metadata": {"organization_id": str(organization.id)}}

    ack = stripe_webhook_service.handle_event(
        db_session, _event("evt_m", "customer.subscription.created", _stripe_subscription("price_pro")), gateway
    )

    assert ack.outcome == "processed"
    db_session.refresh(organization)
    assert organization.stripe_customer_id == "cus_123"


def test_unmatched_customer_and_unknown_events_are_ignored(db_session: Session, seeded: dict[str, Any]) -> None:
    gateway = FakeStripeGateway()

    unmatched = stripe_webhook_service.handle_event(
        db_session, _event("evt_u", "customer.subscription.created", _stripe_subscription("price_pro")), gateway
    )
    unknown = stripe_webhook_service.handle_event(db_session, _event("evt_x", "charge.refunded", {}), gateway)

    assert unmatched.outcome == "ignored"
    assert unknown.outcome == "ignored"
    outcomes = db_session.scalars(select(StripeEvent.outcome)).all()
    assert sorted(outcomes) == ["ignored", "ignored"]


def test_invoice_payment_failed_records_unpaid_invoice_and_notifies(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    organization.stripe_customer_id = "cus_123"
    db_session.commit()
    gateway = FakeStripeGateway()

    stripe_webhook_service.handle_event(
        db_session,
        _event(
            "evt_f",
            "invoice.payment_failed",
            {"id": "in_1", "customer": "cus_123", "amount_due": 2900, "hosted_invoice_url": "https://invoice.test/in_1"},
        ),
        gateway,
    )

    invoice = db_session.scalar(select(SubscriptionInvoice))
    assert invoice is not None
    assert invoice.status == "unpaid"
    assert invoice.amount == Decimal("29")
    notification = db_session.scalar(select(Notification))
    assert notification is not None
    assert notification.type == "subscription_payment_failed"
    assert notification.message.startswith("We couldn't process your payment of $29.00.")
    assert notification.action_url == "/app/settings/subscription"

    stripe_webhook_service.handle_event(
        db_session,
        _event(
            "evt_p",
            "invoice.payment_succeeded",
            {"id": "in_1", "customer": "cus_123", "amount_paid": 2900, "status_transitions": {"paid_at": 1_767_312_000}},
        ),
        gateway,
    )
    db_session.refresh(invoice)
    assert invoice.status == "paid"
    assert invoice.paid_at is not None
    assert db_session.scalar(select(func.count()).select_from(SubscriptionInvoice)) == 1


def test_checkout_without_organization_metadata_is_rejected(db_session: Session, seeded: dict[str, Any]) -> None:
    with pytest.raises(HTTPException) as exc_info:
        stripe_webhook_service.handle_event(
            db_session,
            _event("evt_bad", "checkout.session.completed", {"customer": "cus_1", "subscription": "sub_1"}),
            FakeStripeGateway(),
        )

    assert exc_info.value.status_code == 422
    assert db_session.scalar(select(func.count()).select_from(StripeEvent)) == 0


def test_checkout_session_creates_customer_once(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    ctx = AuthContext(user_id="owner-1", organization_id=str(organization.id), correlation_id="corr-billing")
    gateway = FakeStripeGateway()

    first = billing_service.create_checkout_session(
        db_session,
        ctx,
        organization.id,
        CheckoutSessionCreate(subscription_plan_id=seeded["pro"].id, customer_email="owner@acme.test"),
        gateway,
    )
    billing_service.create_checkout_session(
        db_session, ctx, organization.id, CheckoutSessionCreate(subscription_plan_id=seeded["pro"].id), gateway
    )

    assert first.session_id == "cs_test_1"
    assert len(gateway.customers) == 1
    assert [call["customer"] for call in gateway.checkout_calls] == ["cus_1", "cus_1"]
    assert gateway.checkout_calls[0]["price"] == "price_pro"


def test_portal_requires_billing_account(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    ctx = AuthContext(user_id="owner-1", organization_id=str(organization.id))

    with pytest.raises(HTTPException) as exc_info:
        billing_service.create_portal_session(db_session, ctx, organization.id, FakeStripeGateway())

    assert exc_info.value.status_code == 422


def test_checkout_for_plan_without_price_is_rejected(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    free = SubscriptionPlan(name="Starter", price=Decimal("0"), features={})
    db_session.add(free)
    db_session.commit()
    ctx = AuthContext(user_id="owner-1", organization_id=str(organization.id))

    with pytest.raises(HTTPException) as exc_info:
        billing_service.create_checkout_session(
            db_session, ctx, organization.id, CheckoutSessionCreate(subscription_plan_id=free.id), FakeStripeGateway()
        )

    assert exc_info.value.status_code == 422


def test_checkout_with_malformed_organization_id_is_rejected(db_session: Session, seeded: dict[str, Any]) -> None:
    with pytest.raises(HTTPException) as exc_info:
        stripe_webhook_service.handle_event(
            db_session,
            _event(
                "evt_bad_uuid",
                "checkout.session.completed",
                {"customer": "cus_1", "subscription": "sub_1", "metadata": {"organization_id": "not-a-uuid"}},
            ),
            FakeStripeGateway(),
        )

    assert exc_info.value.status_code == 422
    assert db_session.scalar(select(func.count()).select_from(StripeEvent)) == 0


def test_subscription_event_for_unknown_price_is_rejected(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    organization.stripe_customer_id = "cus_123"
    db_session.commit()

    with pytest.raises(HTTPException) as exc_info:
        stripe_webhook_service.handle_event(
            db_session,
            _event("evt_price", "customer.subscription.created", _stripe_subscription("price_unknown")),
            FakeStripeGateway(),
        )

    assert exc_info.value.status_code == 422
    assert db_session.scalar(select(func.count()).select_from(OrganizationSubscription)) == 0


def test_payment_failure_moves_subscription_to_past_due(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    organization.stripe_customer_id = "cus_123"
    db_session.commit()
    gateway = FakeStripeGateway()
    stripe_webhook_service.handle_event(
        db_session, _event("evt_s", "customer.subscription.created", _stripe_subscription("price_pro")), gateway
    )

    stripe_webhook_service.handle_event(
        db_session,
        _event("evt_pf", "invoice.payment_failed", {"id": "in_9", "customer": "cus_123", "subscription": "sub_123", "amount_due": 2900}),
        gateway,
    )

    subscription = db_session.scalar(select(OrganizationSubscription))
    assert subscription is not None
    assert subscription.status == "past_due"
    invoice = db_session.scalar(select(SubscriptionInvoice))
    assert invoice is not None
    assert invoice.subscription_id == subscription.id
    assert any(event["event_type"] == "subscription.past_due" for event in events.published_events)
    assert db_session.scalar(select(Notification.type)) == "subscription_payment_failed"


def test_plan_change_sends_upgrade_notification(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    organization.stripe_customer_id = "cus_123"
    db_session.commit()
    gateway = FakeStripeGateway()
    stripe_webhook_service.handle_event(
        db_session, _event("evt_1", "customer.subscription.created", _stripe_subscription("price_pro")), gateway
    )
    assert db_session.scalar(select(func.count()).select_from(Notification)) == 0

    stripe_webhook_service.handle_event(
        db_session, _event("evt_2", "customer.subscription.updated", _stripe_subscription("price_premium")), gateway
    )

    notification = db_session.scalar(select(Notification))
    assert notification is not None
    assert notification.type == "subscription_upgraded"
    assert notification.message == "Your subscription has been upgraded from Pro to Premium Basic."
    assert notification.notification_metadata["previous_plan"] == "Pro"
    assert notification.notification_metadata["new_plan"] == "Premium Basic"


def test_status_only_update_sends_no_plan_notification(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    organization.stripe_customer_id = "cus_123"
    db_session.commit()
    gateway = FakeStripeGateway()
    stripe_webhook_service.handle_event(
        db_session, _event("evt_1", "customer.subscription.created", _stripe_subscription("price_pro")), gateway
    )
    stripe_webhook_service.handle_event(
        db_session,
        _event("evt_2", "customer.subscription.updated", _stripe_subscription("price_pro", cancel_at_period_end=True)),
        gateway,
    )

    assert db_session.scalar(select(func.count()).select_from(Notification)) == 0


def test_trial_will_end_notifies_organization(db_session: Session, seeded: dict[str, Any]) -> None:
    organization = seeded["organization"]
    organization.stripe_customer_id = "cus_123"
    db_session.commit()
    gateway = FakeStripeGateway()
    stripe_webhook_service.handle_event(
        db_session,
        _event("evt_t1", "customer.subscription.created", _stripe_subscription("price_pro", status="trialing")),
        gateway,
    )
    trial_end = int((datetime.now(timezone.utc) + timedelta(days=3)).timestamp())

    ack = stripe_webhook_service.handle_event(
        db_session,
        _event(
            "evt_t2",
            "customer.subscription.trial_will_end",
            _stripe_subscription("price_pro", status="trialing", trial_end=trial_end),
        ),
        gateway,
    )

    assert ack.outcome == "processed"
    notification = db_session.scalar(select(Notification))
    assert notification is not None
    assert notification.type == "trial_expiration"
    assert notification.organization_id == organization.id
    assert notification.message.startswith("Your Pro trial ends in 3 days.")
    assert notification.notification_metadata["days_left"] == 3
    assert any(event["event_type"] == "subscription.trial_will_end" for event in events.published_events)
