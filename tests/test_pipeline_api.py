from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import AuthUser, get_current_user
from app.core.database import Base, get_db
from app.crm.models import Contact
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


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    reset_rate_limiter()
    events.published_events.clear()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="rep-1", roles=["user"])
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def organization(db_session: Session) -> Organization:
    organization = Organization(name="Acme", slug="acme")
    db_session.add(organization)
    db_session.commit()
    return organization


@pytest.fixture()
def headers(organization: Organization) -> dict[str, str]:
    return {"x-organization-id": str(organization.id)}


def _create_pipeline(client: TestClient, headers: dict[str, str]) -> dict:
    response = client.post(
        "/api/pipeline",
        json={
            "name": "Sales",
            "stages": [
                {"name": "Qualify", "probability": 20},
                {"name": "Negotiate", "probability": 60},
                {"name": "Closed Won", "probability": 100, "is_closed_won": True},
            ],
        },
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


def test_stage_cannot_be_both_won_and_lost(client: TestClient, headers: dict[str, str]) -> None:
    response = client.post(
        "/api/pipeline",
        json={"name": "Broken", "stages": [{"name": "Both", "is_closed_won": True, "is_closed_lost": True}]},
        headers=headers,
    )

    assert response.status_code == 422


def test_opportunity_flow_over_http(client: TestClient, headers: dict[str, str]) -> None:
    pipeline = _create_pipeline(client, headers)
    stages = {stage["name"]: stage["id"] for stage in pipeline["stages"]}

    created = client.post(
        "/api/pipeline/opportunities",
        json={"pipeline_id": pipeline["id"], "stage_id": stages["Qualify"], "title": "Initech", "value": "2500"},
        headers=headers,
    )
    assert created.status_code == 201
    opportunity_id = created.json()["id"]

    moved = client.post(
        f"/api/pipeline/opportunities/{opportunity_id}/move",
        json={"stage_id": stages["Closed Won"], "note": "Signed"},
        headers=headers,
    )
    assert moved.status_code == 200
    assert moved.json()["status"] == "won"

    detail = client.get(f"/api/pipeline/opportunities/{opportunity_id}", headers=headers).json()
    assert detail["pipeline"]["id"] == pipeline["id"]
    assert {item["activity_type"] for item in detail["activities"]} == {"note_added", "stage_changed"}

    board = client.get(f"/api/pipeline/{pipeline['id']}", params={"status": "won"}, headers=headers).json()
    counts = {stage["name"]: stage["opportunities_count"] for stage in board["stages_with_opportunities"]}
    assert counts == {"Qualify": 0, "Negotiate": 0, "Closed Won": 1}

    summary = client.get(f"/api/pipeline/{pipeline['id']}/summary", headers=headers).json()
    assert summary["total_opportunities"] == 1

    assert client.get(f"/api/pipeline/opportunities/{uuid.uuid4()}", headers=headers).status_code == 404


def test_analytics_rejects_inverted_range(client: TestClient, headers: dict[str, str]) -> None:
    pipeline = _create_pipeline(client, headers)

    response = client.get(
        f"/api/pipeline/{pipeline['id']}/analytics",
        params={"start_date": "2026-05-10", "end_date": "2026-05-01"},
        headers=headers,
    )

    assert response.status_code == 422


def test_lead_scoring_endpoints(
    client: TestClient, headers: dict[str, str], organization: Organization, db_session: Session
) -> None:
    contact = Contact(
        organization_id=organization.id,
        firstname="Peter",
        email="peter@initech.com",
        company="Initech Holdings",
        position="IT Manager",
        last_contact_at=datetime.now(timezone.utc),
    )
    db_session.add(contact)
    db_session.commit()

    assert client.get(f"/api/lead-scoring/contacts/{contact.id}", headers=headers).status_code == 404

    calculated = client.post(f"/api/lead-scoring/contacts/{contact.id}/calculate", headers=headers)
    assert calculated.status_code == 200
    assert calculated.json()["overall_score"] == 59
    assert calculated.json()["qualification_status"] == "cold"

    breakdown = client.get(f"/api/lead-scoring/contacts/{contact.id}/breakdown", headers=headers).json()
    assert breakdown["company"]["score"] == 20

    qualified = client.put(
        f"/api/lead-scoring/contacts/{contact.id}/qualification", json={"status": "warm"}, headers=headers
    )
    assert qualified.json()["qualification_status"] == "warm"

    warm = client.get("/api/lead-scoring/contacts", params={"qualification_status": "warm"}, headers=headers).json()
    assert [row["id"] for row in warm] == [str(contact.id)]
    assert warm[0]["lead_score"]["overall_score"] == 59

    history = client.get(f"/api/lead-scoring/contacts/{contact.id}/history", headers=headers).json()
    assert {row["triggered_by"] for row in history} == {"system", "manual"}

    bulk = client.post(
        "/api/lead-scoring/bulk-calculate", json={"contact_ids": [str(contact.id), str(uuid.uuid4())]}, headers=headers
    )
    assert bulk.json()["success"] == 1
    assert bulk.json()["failed"] == 1

    analytics = client.get("/api/lead-scoring/analytics", headers=headers).json()
    assert analytics["scored_contacts"] == 1

    missing = client.post(f"/api/lead-scoring/contacts/{uuid.uuid4()}/calculate", headers=headers)
    assert missing.status_code == 404


def test_clearing_required_opportunity_fields_is_unprocessable(client: TestClient, headers: dict[str, str]) -> None:
    pipeline = _create_pipeline(client, headers)
    created = client.post(
        "/api/pipeline/opportunities",
        json={"pipeline_id": pipeline["id"], "stage_id": pipeline["stages"][0]["id"], "title": "Initech"},
        headers=headers,
    ).json()

    response = client.patch(
        f"/api/pipeline/opportunities/{created['id']}", json={"title": None, "value": None}, headers=headers
    )
    bulk = client.post(
        "/api/pipeline/opportunities/bulk-update",
        json={"opportunity_ids": [created["id"]], "updates": {"currency": None}},
        headers=headers,
    )
    cleared_description = client.patch(
        f"/api/pipeline/opportunities/{created['id']}", json={"description": None}, headers=headers
    )

    assert response.status_code == 422
    assert bulk.status_code == 422
    assert cleared_description.status_code == 200
    assert cleared_description.json()["title"] == "Initech"
