from __future__ import annotations

from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import AuthUser, get_current_user
from app.core.database import Base, get_db
from app.integrations.webhooks.service import get_webhook_http_client, sign_payload
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.audit.models import AuditLog
from app.platform.organizations.models import Organization
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend

received: list[httpx.Request] = []


def _receiver(request: httpx.Request) -> httpx.Response:
    received.append(request)
    return httpx.Response(200, json={"ok": True})


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

    def override_http_client() -> Generator[httpx.Client, None, None]:
        with httpx.Client(transport=httpx.MockTransport(_receiver)) as http:
            yield http

    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    reset_rate_limiter()
    events.published_events.clear()
    received.clear()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="owner-1", roles=["user"])
    app.dependency_overrides[get_webhook_http_client] = override_http_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def headers(db_session: Session) -> dict[str, str]:
    organization = Organization(name="Acme", slug="acme")
    db_session.add(organization)
    db_session.commit()
    return {"x-organization-id": str(organization.id)}


def test_webhook_crud_is_audited(client: TestClient, headers: dict[str, str], db_session: Session) -> None:
    created = client.post(
        "/api/webhooks",
        json={"name": "Zapier", "url": "https://hooks.example.com/zap", "events": ["crm.contact.created", "crm.contact.created"]},
        headers=headers,
    )
    assert created.status_code == 201
    webhook = created.json()
    assert webhook["events"] == ["crm.contact.created"]
    assert len(webhook["secret"]) == 64

    patched = client.patch(f"/api/webhooks/{webhook['id']}", json={"is_active": False}, headers=headers)
    assert patched.json()["is_active"] is False
    assert [row["id"] for row in client.get("/api/webhooks", headers=headers).json()] == [webhook["id"]]

    assert client.delete(f"/api/webhooks/{webhook['id']}", headers=headers).status_code == 204
    assert client.get(f"/api/webhooks/{webhook['id']}", headers=headers).status_code == 404

    actions = db_session.scalars(select(AuditLog.action_type).order_by(AuditLog.created_at)).all()
    assert sorted(actions) == ["webhook.created", "webhook.deleted", "webhook.updated"]


def test_invalid_url_is_rejected(client: TestClient, headers: dict[str, str]) -> None:
    response = client.post("/api/webhooks", json={"name": "Bad", "url": "not a url", "events": ["*"]}, headers=headers)

    assert response.status_code == 422


def test_test_event_is_delivered_and_listed(client: TestClient, headers: dict[str, str]) -> None:
    webhook = client.post(
        "/api/webhooks",
        json={"name": "Ops", "url": "https://hooks.example.com/ops", "secret": "s3cr3t-value-1234", "events": ["*"]},
        headers=headers,
    ).json()

    tested = client.post(f"/api/webhooks/{webhook['id']}/test", headers=headers)

    assert tested.status_code == 200
    delivery = tested.json()
    assert delivery["status"] == "delivered"
    assert delivery["event_type"] == "webhook.test"
    assert delivery["payload"]["triggered_by"] == "owner-1"

    request = received[0]
    assert request.headers["X-Event-Type"] == "webhook.test"
    assert request.headers["X-Webhook-Signature"] == sign_payload(
        "s3cr3t-value-1234", request.headers["X-Webhook-Timestamp"], request.content.decode("utf-8")
    )

    listed = client.get(f"/api/webhooks/{webhook['id']}/deliveries", params={"status": "delivered"}, headers=headers)
    assert [row["id"] for row in listed.json()] == [delivery["id"]]

    again = client.post(f"/api/webhooks/deliveries/{delivery['id']}/retry", headers=headers)
    assert again.status_code == 409


def test_pipeline_event_is_queued_for_subscribed_webhook(client: TestClient, headers: dict[str, str]) -> None:
    client.post(
        "/api/webhooks",
        json={"name": "Ops", "url": "https://hooks.example.com/ops", "events": ["crm.pipeline.created"]},
        headers=headers,
    )

    client.post("/api/pipeline", json={"name": "Renewals"}, headers=headers)

    deliveries = client.get(
        f"/api/webhooks/{client.get('/api/webhooks', headers=headers).json()[0]['id']}/deliveries", headers=headers
    ).json()
    assert [row["event_type"] for row in deliveries] == ["crm.pipeline.created"]
    assert deliveries[0]["status"] == "pending"
    assert received == []
