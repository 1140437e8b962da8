from __future__ import annotations

from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.integrations.webhooks.service import get_webhook_http_client
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.organizations.models import Organization
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


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def roles() -> list[str]:
    return ["user", "system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_http_client() -> Generator[httpx.Client, None, None]:
        with httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as http:
            yield http

    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="metrics-admin", roles=roles)
    app.dependency_overrides[get_webhook_http_client] = override_http_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def headers(db_session: Session) -> dict[str, str]:
    organization = Organization(name="Metrics Org", slug="metrics-org")
    db_session.add(organization)
    db_session.commit()
    return {"x-organization-id": str(organization.id)}


def test_metrics_endpoint_exposes_http_and_domain_metrics(client: TestClient, headers: dict[str, str]) -> None:
    assert client.get("/health").status_code == 200

    pipeline = client.post("/api/pipeline", json={"name": "Metrics Pipeline"}, headers=headers)
    assert pipeline.status_code == 201
    assert client.get(f"/api/pipeline/{pipeline.json()['id']}/summary", headers=headers).status_code == 200

    webhook = client.post(
        "/api/webhooks",
        json={"name": "Flaky", "url": "https://hooks.example.com/flaky", "events": ["*"]},
        headers=headers,
    ).json()
    tested = client.post(f"/api/webhooks/{webhook['id']}/test", headers=headers)
    assert tested.json()["status"] == "pending"

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "webhook_deliveries_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/pipeline/{id}/summary"' in body
    assert 'event_type="webhook.test",outcome="retrying"' in body


def test_metrics_are_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics").status_code == 404


@pytest.mark.parametrize("roles", [["user"]])
def test_metrics_require_read_role(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 403
    assert response.json()["detail"] == "Missing permission: system.metrics.read"
