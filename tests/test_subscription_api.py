from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import AuthUser, get_current_user
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend


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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    users = {
        "owner": AuthUser(sub="owner-1", roles=["user"]),
        "admin": AuthUser(sub="admin-1", roles=["admin"]),
    }
    state = {"current": "owner"}

    def override_get_current_user() -> AuthUser:
        return users[state["current"]]

    def set_user(name: str) -> None:
        state["current"] = name

    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    reset_rate_limiter()
    events.published_events.clear()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_user
    app.dependency_overrides.clear()


def _create_organization(test_client: TestClient, slug: str) -> str:
    response = test_client.post("/api/organizations", json={"name": slug.title(), "slug": slug})
    assert response.status_code == 201
    return response.json()["id"]


def _initialize_plans(test_client: TestClient, set_user: Callable[[str], None]) -> dict[str, str]:
    set_user("admin")
    response = test_client.post("/api/subscriptions/admin/plans/initialize")
    assert response.status_code == 200
    set_user("owner")
    plans = test_client.get("/api/subscriptions/plans").json()
    return {plan["name"]: plan["id"] for plan in plans}


def test_catalog_filters_by_audience(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_user = client

    organization_catalog = test_client.get("/api/subscriptions/catalog", params={"is_organization": "true"})
    individual_catalog = test_client.get("/api/subscriptions/catalog", params={"is_organization": "false"})

    assert organization_catalog.status_code == 200
    assert [plan["id"] for plan in organization_catalog.json()["plans"]] == [
        "premium_basic",
        "premium_advanced",
        "premium_enterprise",
    ]
    assert [plan["id"] for plan in individual_catalog.json()["plans"]] == ["starter", "pro"]
    assert len(organization_catalog.json()["topup_packages"]) == 3


def test_initialize_plans_requires_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_user = client

    response = test_client.post("/api/subscriptions/admin/plans/initialize")

    assert response.status_code == 403


def test_trial_flow_exposes_current_subscription_and_features(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_user = client
    plans = _initialize_plans(test_client, set_user)
    organization_id = _create_organization(test_client, "acme")
    headers = {"x-organization-id": organization_id}

    assert test_client.get("/api/subscriptions/current", headers=headers).json() is None

    trial = test_client.post(
        "/api/subscriptions/trial",
        json={"subscription_plan_id": plans["Premium Basic"], "is_organization": True},
        headers=headers,
    )
    assert trial.status_code == 201
    assert trial.json()["status"] == "trialing"
    assert trial.json()["plan"]["name"] == "Premium Basic"

    current = test_client.get("/api/subscriptions/current", headers=headers)
    assert current.json()["id"] == trial.json()["id"]

    features = test_client.get("/api/subscriptions/features", headers=headers).json()
    assert features["is_active"] is True
    assert features["features"]["MAX_USERS"] == {"enabled": True, "limit": 20}

    organization = test_client.get(f"/api/organizations/{organization_id}", headers=headers).json()
    assert organization["subscription_tier"] == "premium_basic"


def test_limit_checks_count_members_and_contacts(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_user = client
    plans = _initialize_plans(test_client, set_user)
    organization_id = _create_organization(test_client, "solo")
    headers = {"x-organization-id": organization_id}
    test_client.post("/api/subscriptions", json={"subscription_plan_id": plans["Starter"]}, headers=headers)

    users = test_client.get("/api/subscriptions/limits/users", headers=headers).json()
    contacts = test_client.get("/api/subscriptions/limits/contacts", headers=headers).json()

    # The owner membership already uses the single Starter seat.
    assert users["can_add"] is False
    assert users["reason"] == "Your Starter plan is limited to 1 users. Please upgrade to add more users."
    assert contacts == {"can_add": True, "reason": None}


def test_organization_header_is_required(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_user = client

    response = test_client.get("/api/subscriptions/current")

    assert response.status_code == 400
    assert response.json()["detail"] == "x-organization-id header is required"


def test_organization_outside_allowed_scope_is_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _set_user = client
    first = _create_organization(test_client, "first")
    second = _create_organization(test_client, "second")

    response = test_client.get(
        "/api/subscriptions/current",
        headers={"x-organization-id": first, "x-allowed-organization-ids": second},
    )

    assert response.status_code == 403


def test_admin_can_cancel_immediately_and_reactivate(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_user = client
    plans = _initialize_plans(test_client, set_user)
    organization_id = _create_organization(test_client, "churn")
    headers = {"x-organization-id": organization_id}
    created = test_client.post("/api/subscriptions", json={"subscription_plan_id": plans["Pro"]}, headers=headers)
    subscription_id = created.json()["id"]

    set_user("admin")
    canceled = test_client.post(
        f"/api/subscriptions/admin/{subscription_id}/cancel", json={"cancel_at_period_end": False}
    )
    assert canceled.status_code == 200
    assert canceled.json()["status"] == "canceled"

    reactivated = test_client.post(f"/api/subscriptions/admin/{subscription_id}/reactivate")
    assert reactivated.json()["status"] == "active"
    assert reactivated.json()["cancel_at_period_end"] is False
