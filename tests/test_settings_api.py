from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import AuthUser, get_current_user
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.audit.models import AuditLog
from app.platform.organizations.models import Organization
from app.platform.security.context import AuthContext
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend
from app.platform.settings.schemas import SettingUpsert
from app.platform.settings.service import (
    DEFAULT_AI_PROCESSING_CONFIG,
    feature_flag_service,
    flag_enabled,
    resolve_path,
    settings_service,
)


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
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def organization(db_session: Session) -> Organization:
    organization = Organization(name="Acme", slug="acme", subscription_tier="starter")
    db_session.add(organization)
    db_session.commit()
    return organization


@pytest.fixture()
def headers(organization: Organization) -> dict[str, str]:
    return {"x-organization-id": str(organization.id)}


def test_resolve_path_and_flag_values() -> None:
    settings = {"automotive_matching": {"enabled": True, "radius": {"km": 50}}}

    assert resolve_path(settings, "automotive_matching.enabled") is True
    assert resolve_path(settings, "automotive_matching.radius.km") == 50
    assert resolve_path(settings, "automotive_matching.missing") is None
    assert resolve_path(settings, "automotive_matching.enabled.deeper") is None

    assert flag_enabled(True) is True
    assert flag_enabled(0) is False
    assert flag_enabled(-1) is True
    assert flag_enabled(10) is True
    assert flag_enabled("yes") is False


def test_settings_upsert_read_and_delete(
    client: TestClient, headers: dict[str, str], db_session: Session
) -> None:
    created = client.put(
        "/api/settings/automotive_matching",
        json={"setting_value": {"enabled": True, "radius_km": 25}, "description": "Dealer matching"},
        headers=headers,
    )
    assert created.status_code == 200
    assert created.json()["created_by"] == "owner-1"

    client.put("/api/settings/automotive_matching", json={"setting_value": {"enabled": False}}, headers=headers)

    assert client.get("/api/settings/automotive_matching", headers=headers).json() == {"enabled": False}
    assert client.get("/api/settings/features/automotive_matching.enabled", headers=headers).json() == {
        "path": "automotive_matching.enabled",
        "enabled": False,
    }
    merged = client.get("/api/settings", headers=headers).json()
    assert merged["openai_model"] == DEFAULT_AI_PROCESSING_CONFIG["openai_model"]
    assert merged["automotive_matching"] == {"enabled": False}
    assert [row["setting_key"] for row in client.get("/api/settings/rows", headers=headers).json()] == [
        "automotive_matching"
    ]

    assert client.delete("/api/settings/automotive_matching", headers=headers).status_code == 204
    assert client.get("/api/settings/automotive_matching", headers=headers).json() is None
    assert client.delete("/api/settings/automotive_matching", headers=headers).status_code == 404

    actions = db_session.scalars(select(AuditLog.action_type)).all()
    assert sorted(actions) == ["settings.created", "settings.deleted", "settings.updated"]
    assert [event["setting_key"] for event in events.events_of_type("settings.updated")] == [
        "automotive_matching",
        "automotive_matching",
    ]


def test_inactive_setting_is_hidden(client: TestClient, headers: dict[str, str]) -> None:
    client.put("/api/settings/beta_inbox", json={"setting_value": True, "is_active": False}, headers=headers)

    assert client.get("/api/settings/beta_inbox", headers=headers).json() is None
    assert client.get("/api/settings/features/beta_inbox", headers=headers).json()["enabled"] is False
    assert client.get("/api/settings/rows", headers=headers).json()[0]["is_active"] is False


def test_invalid_setting_key_is_rejected(client: TestClient, headers: dict[str, str]) -> None:
    response = client.put("/api/settings/Bad Key!", json={"setting_value": 1}, headers=headers)

    assert response.status_code == 422


def test_email_delays_default_and_override(client: TestClient, headers: dict[str, str]) -> None:
    assert client.get("/api/settings/email-delays/sales", headers=headers).json() == {
        "email_type": "sales",
        "delay_minutes": 0,
    }

    client.put(
        "/api/settings/email_delays",
        json={
            "setting_value": {
                "sales": {"delay_minutes": 30, "enabled": True},
                "complaint": {"delay_minutes": 90, "enabled": False},
            }
        },
        headers=headers,
    )

    assert client.get("/api/settings/email-delays/sales", headers=headers).json()["delay_minutes"] == 30
    assert client.get("/api/settings/email-delays/complaint", headers=headers).json()["delay_minutes"] == 0
    assert client.get("/api/settings/email-delays/product_inquiry", headers=headers).json()["delay_minutes"] == 0


def test_email_delay_config_falls_back_to_defaults(db_session: Session, organization: Organization) -> None:
    ctx = AuthContext(user_id="owner-1", organization_id=str(organization.id))

    config = settings_service.get_email_delay_config(db_session, ctx, organization.id)

    assert set(config) == {"customer_service", "sales", "product_inquiry", "complaint"}
    assert config["sales"]["enabled"] is True


def test_feature_flags_overlay_plan(client: TestClient, headers: dict[str, str]) -> None:
    baseline = client.get("/api/feature-flags", headers=headers).json()
    assert baseline["tier"] == "starter"
    assert baseline["flags"]["CRM_ASSISTANT"] is False
    assert baseline["flags"]["AI_MESSAGES_LIMIT"] == 50
    assert baseline["overrides"] == {}

    client.put(
        "/api/settings/feature_flags",
        json={"setting_value": {"CRM_ASSISTANT": True, "AI_MESSAGES_LIMIT": 0, "NOTE": "ignored"}},
        headers=headers,
    )

    flags = client.get("/api/feature-flags", headers=headers).json()
    assert flags["overrides"] == {"CRM_ASSISTANT": True, "AI_MESSAGES_LIMIT": 0}
    assert client.get("/api/feature-flags/CRM_ASSISTANT", headers=headers).json() == {
        "flag": "CRM_ASSISTANT",
        "enabled": True,
    }
    assert client.get("/api/feature-flags/AI_MESSAGES_LIMIT", headers=headers).json()["enabled"] is False
    assert client.get("/api/feature-flags/UNKNOWN_FLAG", headers=headers).json()["enabled"] is False


def test_flag_value_outside_scope_is_forbidden(db_session: Session, organization: Organization) -> None:
    outsider = AuthContext(user_id="intruder", organization_id="00000000-0000-0000-0000-000000000003")
    settings_service.update_setting(
        db_session,
        AuthContext(user_id="owner-1", organization_id=str(organization.id)),
        organization.id,
        "feature_flags",
        SettingUpsert(setting_value={"CRM_ASSISTANT": True}),
    )

    with pytest.raises(HTTPException) as exc_info:
        feature_flag_service.get_flag_value(db_session, outsider, organization.id, "CRM_ASSISTANT")

    assert exc_info.value.status_code == 403
