from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from collections.abc import Generator
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.billing.gateway import StripeGateway, get_stripe_gateway
from app.business.subscription.models import OrganizationSubscription, SubscriptionPlan
from app.core.auth import AuthUser, get_current_user
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.organizations.models import Organization
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend

WEBHOOK_SECRET = "whsec_test_secret"


class FakeStripeGateway(StripeGateway):
    def __init__(self) -> None:
        super().__init__(secret_key="", webhook_secret=WEBHOOK_SECRET, base_url="https://app.test")

    def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return {"id": customer_id, "metadata": {}}


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


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    reset_rate_limiter()
    events.published_events.clear()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="owner-1", roles=["user"])
    app.dependency_overrides[get_stripe_gateway] = FakeStripeGateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def organization(db_session: Session) -> Organization:
    organization = Organization(name="Acme", slug="acme", stripe_customer_id="cus_123")
    db_session.add_all(
        [organization, SubscriptionPlan(name="Pro", price=Decimal("29"), features={}, stripe_price_id="price_pro")]
    )
    db_session.commit()
    return organization


def _signed(payload: bytes, secret: str = WEBHOOK_SECRET) -> dict[str, str]:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"}


def _subscription_event(event_id: str) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "customer.subscription.created",
            "data": {
                "object": {
                    "id": "sub_123",
                    "customer": "cus_123",
                    "status": "active",
                    "current_period_start": 1_767_225_600,
                    "current_period_end": 1_769_904_000,
                    "items": {"data": [{"price": {"id": "price_pro"}}]},
                }
            },
        }
    ).encode()


def test_signed_webhook_is_applied_once(client: TestClient, organization: Organization, db_session: Session) -> None:
    payload = _subscription_event("evt_api_1")

    first = client.post("/api/webhooks/stripe", content=payload, headers=_signed(payload))
    second = client.post("/api/webhooks/stripe", content=payload, headers=_signed(payload))

    assert first.status_code == 200
    assert first.json() == {"received": True, "duplicate": False, "outcome": "processed"}
    assert second.json()["duplicate"] is True
    subscription = db_session.scalar(select(OrganizationSubscription))
    assert subscription is not None
    assert subscription.organization_id == organization.id


def test_webhook_with_bad_signature_is_rejected(client: TestClient, organization: Organization) -> None:
    payload = _subscription_event("evt_api_2")

    response = client.post("/api/webhooks/stripe", content=payload, headers=_signed(payload, secret="whsec_other"))

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Webhook Error:")


def test_webhook_without_signature_header_is_rejected(client: TestClient) -> None:
    response = client.post("/api/webhooks/stripe", content=b"{}", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json()["detail"] == "missing stripe-signature header"


def test_checkout_without_stripe_key_reports_unavailable(client: TestClient, db_session: Session) -> None:
    organization = Organization(name="Fresh", slug="fresh")
    plan = SubscriptionPlan(name="Pro", price=Decimal("29"), features={}, stripe_price_id="price_pro")
    db_session.add_all([organization, plan])
    db_session.commit()

    response = client.post(
        "/api/billing/checkout",
        json={"subscription_plan_id": str(plan.id)},
        headers={"x-organization-id": str(organization.id)},
    )

    assert response.status_code == 503
    assert response.json()["detail"] == "STRIPE_SECRET_KEY is not configured"


def test_webhook_is_verified_and_applied_off_the_event_loop(client: TestClient, organization: Organization) -> None:
    loops_seen: list[bool] = []

    class LoopCheckingGateway(FakeStripeGateway):
        def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]:
            try:
                asyncio.get_running_loop()
                loops_seen.append(True)
            except RuntimeError:
                loops_seen.append(False)
            return super().construct_event(payload, signature)

    app.dependency_overrides[get_stripe_gateway] = LoopCheckingGateway
    payload = _subscription_event("evt_api_thread")

    response = client.post("/api/webhooks/stripe", content=payload, headers=_signed(payload))

    assert response.status_code == 200
    assert loops_seen == [False]


def test_checkout_event_with_malformed_organization_id_is_unprocessable(
    client: TestClient, organization: Organization
) -> None:
    payload = json.dumps(
        {
            "id": "evt_api_bad_org",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": {"customer": "cus_123", "subscription": "sub_123", "metadata": {"organization_id": "not-a-uuid"}}},
        }
    ).encode()

    response = client.post("/api/webhooks/stripe", content=payload, headers=_signed(payload))

    assert response.status_code == 422
    assert response.json()["detail"] == "checkout session organization_id is not a UUID"
