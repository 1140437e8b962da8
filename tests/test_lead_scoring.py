from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.database import Base
from app.crm.lead_scoring import lead_scoring_service, qualification_for
from app.crm.models import Contact, ContactEmailInteraction
from app.platform.organizations.models import Organization
from app.platform.security.context import AuthContext
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend

NOW = datetime(2026, 5, 20, 12, 0, tzinfo=timezone.utc)


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
def organization(db_session: Session) -> Organization:
    organization = Organization(name="Acme", slug="acme")
    db_session.add(organization)
    db_session.commit()
    return organization


@pytest.fixture()
def ctx(organization: Organization) -> AuthContext:
    return AuthContext(user_id="rep-1", organization_id=str(organization.id), correlation_id="corr-score")


def _strong_contact(session: Session, organization: Organization) -> Contact:
    contact = Contact(
        organization_id=organization.id,
        firstname="Dana",
        lastname="Scully",
        email="dana@globexcorp.com",
        phone="+1 555 0100",
        company="Globex Corporation",
        position="Sales Director",
        notes="Met at the spring conference, asked for a tailored demo of the forecasting module.",
        personality_type="analytical",
        status="active",
        last_contact_at=NOW - timedelta(days=3),
    )
    session.add(contact)
    session.flush()
    session.add_all(
        [
            ContactEmailInteraction(
                contact_id=contact.id,
                organization_id=organization.id,
                direction="inbound",
                occurred_at=NOW - timedelta(days=days),
            )
            for days in (2, 10, 45)
        ]
    )
    session.commit()
    return contact


def _bare_contact(session: Session, organization: Organization, firstname: str = "Bare") -> Contact:
    contact = Contact(organization_id=organization.id, firstname=firstname, email="someone@gmail.com")
    session.add(contact)
    session.commit()
    return contact


def test_qualification_thresholds() -> None:
    assert qualification_for(100) == "hot"
    assert qualification_for(80) == "hot"
    assert qualification_for(79) == "warm"
    assert qualification_for(60) == "warm"
    assert qualification_for(40) == "cold"
    assert qualification_for(39) == "unqualified"


def test_strong_contact_scores_hot(db_session: Session, organization: Organization, ctx: AuthContext) -> None:
    contact = _strong_contact(db_session, organization)

    score = lead_scoring_service.calculate_lead_score(db_session, ctx, contact.id, now=NOW)

    assert score is not None
    assert score.demographic_score == 25
    assert score.company_score == 20
    assert score.behavioral_score == 15
    assert score.engagement_score == 0
    assert score.email_interaction_score == 6
    assert score.recency_score == 15
    assert score.overall_score == 81
    assert score.qualification_status == "hot"
    event = events.events_of_type("crm.lead_score.calculated")[0]
    assert event["previous_score"] is None
    assert event["correlation_id"] == "corr-score"


def test_personal_email_and_missing_company_score_low(
    db_session: Session, organization: Organization, ctx: AuthContext
) -> None:
    contact = _bare_contact(db_session, organization)

    score = lead_scoring_service.calculate_lead_score(db_session, ctx, contact.id, now=NOW)

    assert score is not None
    assert score.demographic_score == 0
    assert score.company_score == 0
    assert score.behavioral_score == 5
    assert score.overall_score == 5
    assert score.qualification_status == "unqualified"


def test_recalculation_writes_history_only_on_change(
    db_session: Session, organization: Organization, ctx: AuthContext
) -> None:
    contact = _strong_contact(db_session, organization)
    lead_scoring_service.calculate_lead_score(db_session, ctx, contact.id, now=NOW)
    lead_scoring_service.calculate_lead_score(db_session, ctx, contact.id, now=NOW)
    assert len(lead_scoring_service.get_scoring_history(db_session, ctx, contact.id)) == 1

    contact.phone = None
    db_session.commit()
    rescored = lead_scoring_service.calculate_lead_score(db_session, ctx, contact.id, now=NOW)

    assert rescored is not None
    assert rescored.overall_score == 75
    assert rescored.qualification_status == "warm"
    history = lead_scoring_service.get_scoring_history(db_session, ctx, contact.id)
    assert sorted(row.change_reason for row in history) == ["Initial score calculation", "Score recalculated"]
    changed = [row for row in history if row.previous_score == 81]
    assert changed[0].score_change == -6
    status_event = events.events_of_type("crm.lead_score.status_changed")[0]
    assert (status_event["previous_status"], status_event["qualification_status"]) == ("hot", "warm")


def test_missing_contact_returns_none(db_session: Session, ctx: AuthContext) -> None:
    assert lead_scoring_service.calculate_lead_score(db_session, ctx, uuid.uuid4()) is None


def test_score_breakdown_lists_factors(db_session: Session, organization: Organization, ctx: AuthContext) -> None:
    contact = _strong_contact(db_session, organization)
    assert lead_scoring_service.get_score_breakdown(db_session, ctx, contact.id, now=NOW) is None
    lead_scoring_service.calculate_lead_score(db_session, ctx, contact.id, now=NOW)

    breakdown = lead_scoring_service.get_score_breakdown(db_session, ctx, contact.id, now=NOW)

    assert breakdown is not None
    assert breakdown.demographic.factors == [
        "Has company information",
        "Has position/title",
        "Has phone number",
        "Business email domain",
    ]
    assert breakdown.company.factors == ["Established company name", "Decision-making position"]
    assert breakdown.email_interaction.factors == ["2 email interactions in last 30 days"]
    assert breakdown.recency.factors == ["Recent contact (within 7 days)"]
    assert breakdown.engagement.max == 15


def test_filters_and_analytics(db_session: Session, organization: Organization, ctx: AuthContext) -> None:
    strong = _strong_contact(db_session, organization)
    weak = _bare_contact(db_session, organization)
    _bare_contact(db_session, organization, firstname="Unscored")
    lead_scoring_service.calculate_lead_score(db_session, ctx, strong.id, now=NOW)
    lead_scoring_service.calculate_lead_score(db_session, ctx, weak.id, now=NOW)

    hot = lead_scoring_service.get_contacts_with_scores(db_session, ctx, organization.id, min_score=80)
    everyone = lead_scoring_service.get_contacts_with_scores(db_session, ctx, organization.id)
    analytics = lead_scoring_service.get_lead_scoring_analytics(db_session, ctx, organization.id)

    assert [row.id for row in hot] == [strong.id]
    assert len(everyone) == 3
    assert analytics.total_contacts == 3
    assert analytics.scored_contacts == 2
    assert analytics.qualification_distribution.hot == 1
    assert analytics.qualification_distribution.unqualified == 1
    assert analytics.average_score == 43.0


def test_manual_qualification_is_recorded(db_session: Session, organization: Organization, ctx: AuthContext) -> None:
    contact = _strong_contact(db_session, organization)
    with pytest.raises(HTTPException) as exc_info:
        lead_scoring_service.update_qualification_status(db_session, ctx, contact.id, "cold")
    assert exc_info.value.status_code == 404

    lead_scoring_service.calculate_lead_score(db_session, ctx, contact.id, now=NOW)
    updated = lead_scoring_service.update_qualification_status(
        db_session, ctx, contact.id, "cold", "Budget frozen until Q3"
    )

    assert updated.qualification_status == "cold"
    history = lead_scoring_service.get_scoring_history(db_session, ctx, contact.id)
    manual = [row for row in history if row.triggered_by == "manual"]
    assert manual[0].change_reason == "Budget frozen until Q3"
    assert manual[0].user_id == "rep-1"


def test_bulk_calculation_counts_failures(db_session: Session, organization: Organization, ctx: AuthContext) -> None:
    contact = _strong_contact(db_session, organization)
    other = Organization(name="Other", slug="other")
    db_session.add(other)
    db_session.commit()
    foreign = _bare_contact(db_session, other, firstname="Foreign")

    result = lead_scoring_service.bulk_calculate_scores(
        db_session, ctx, [contact.id, uuid.uuid4(), foreign.id], now=NOW
    )

    assert result.success == 1
    assert result.failed == 2
    assert [row.contact_id for row in result.results] == [contact.id]
