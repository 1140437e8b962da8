from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.subscription.admin import subscription_admin_service
from app.business.subscription.models import OrganizationSubscription, SubscriptionPlan
from app.business.subscription.schemas import PlanCreate, SubscriptionCreate, TrialSubscriptionCreate
from app.business.subscription.service import subscription_service
from app.core.clock import ensure_utc
from app.core.database import Base
from app.platform.audit.models import AuditLog
from app.platform.organizations.models import Organization, OrganizationMember
from app.platform.security.context import AuthContext
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
def reset_globals() -> Generator[None, None, None]:
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    events.published_events.clear()
    yield
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    events.published_events.clear()


ADMIN = AuthContext(user_id="admin-1", roles=["admin"], is_super_admin=True, correlation_id="corr-admin")


def _organization(session: Session, slug: str = "acme") -> Organization:
    organization = Organization(name=slug.title(), slug=slug)
    session.add(organization)
    session.commit()
    return organization


def _ctx(organization: Organization) -> AuthContext:
    return AuthContext(user_id="sub-user", organization_id=str(organization.id), correlation_id="corr-sub")


def _plan(session: Session, name: str) -> SubscriptionPlan:
    plan = session.scalar(select(SubscriptionPlan).where(SubscriptionPlan.name == name))
    assert plan is not None
    return plan


def test_initialize_predefined_plans_creates_monthly_and_annual_variants(db_session: Session) -> None:
    summary = subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)

    assert "Starter" in summary["created"]
    assert "Pro" in summary["created"]
    assert "Pro (Annual)" in summary["created"]
    # Free plans have no annual variant.
    assert "Starter (Annual)" not in summary["created"]
    assert _plan(db_session, "Pro (Annual)").billing_interval == "yearly"
    assert _plan(db_session, "Pro (Annual)").price == Decimal("288")

    again = subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)
    assert again["created"] == []
    assert set(again["updated"]) == set(summary["created"])


def test_initialize_deactivates_plans_missing_from_catalog(db_session: Session) -> None:
    subscription_admin_service.create_plan(db_session, ADMIN, PlanCreate(name="Legacy Gold", price=Decimal("99")))

    summary = subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)

    assert summary["deactivated"] == ["Legacy Gold"]
    assert _plan(db_session, "Legacy Gold").is_active is False


def test_admin_operations_require_admin_role(db_session: Session) -> None:
    organization = _organization(db_session)

    with pytest.raises(HTTPException) as exc_info:
        subscription_admin_service.initialize_predefined_plans(db_session, _ctx(organization))

    assert exc_info.value.status_code == 403


def test_trial_for_organization_plan_starts_trialing_and_syncs_tier(db_session: Session) -> None:
    subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)
    organization = _organization(db_session)
    ctx = _ctx(organization)

    subscription = subscription_service.create_trial_subscription(
        db_session,
        ctx,
        organization.id,
        TrialSubscriptionCreate(subscription_plan_id=_plan(db_session, "Premium Basic").id, is_organization=True),
    )

    assert subscription.status == "trialing"
    assert subscription.metadata == {"trial": True, "trial_days": 14}
    assert ensure_utc(subscription.current_period_end) - ensure_utc(subscription.current_period_start) == timedelta(days=14)
    db_session.refresh(organization)
    assert organization.subscription_tier == "premium_basic"
    assert events.published_events[-1]["event_type"] == "subscription.trial_started"


def test_trial_without_trial_days_is_active_for_one_month(db_session: Session) -> None:
    subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)
    organization = _organization(db_session)

    subscription = subscription_service.create_trial_subscription(
        db_session,
        _ctx(organization),
        organization.id,
        TrialSubscriptionCreate(subscription_plan_id=_plan(db_session, "Pro").id),
    )

    assert subscription.status == "active"
    assert subscription.metadata == {"trial": False, "trial_days": 0}
    start = ensure_utc(subscription.current_period_start)
    end = ensure_utc(subscription.current_period_end)
    assert 28 <= (end - start).days <= 31


def test_trial_rejects_plan_audience_mismatch(db_session: Session) -> None:
    subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)
    organization = _organization(db_session)

    with pytest.raises(HTTPException) as individual_for_org:
        subscription_service.create_trial_subscription(
            db_session,
            _ctx(organization),
            organization.id,
            TrialSubscriptionCreate(subscription_plan_id=_plan(db_session, "Pro").id, is_organization=True),
        )
    assert individual_for_org.value.status_code == 422

    with pytest.raises(HTTPException) as org_for_individual:
        subscription_service.create_trial_subscription(
            db_session,
            _ctx(organization),
            organization.id,
            TrialSubscriptionCreate(subscription_plan_id=_plan(db_session, "Premium Basic").id),
        )
    assert org_for_individual.value.status_code == 422


def test_contact_limit_follows_plan_features(db_session: Session) -> None:
    organization = _organization(db_session)
    ctx = _ctx(organization)

    missing = subscription_service.can_add_more_contacts(db_session, ctx, organization.id, 0)
    assert missing.can_add is False
    assert missing.reason == "No active subscription found"

    plan = subscription_admin_service.create_plan(
        db_session, ADMIN, PlanCreate(name="Tiny", price=Decimal("1"), features={"MAX_CONTACTS": 2})
    )
    subscription_service.create_subscription(
        db_session, ctx, organization.id, SubscriptionCreate(subscription_plan_id=plan.id)
    )

    assert subscription_service.can_add_more_contacts(db_session, ctx, organization.id, 1).can_add is True
    blocked = subscription_service.can_add_more_contacts(db_session, ctx, organization.id, 2)
    assert blocked.can_add is False
    assert blocked.reason == "Your current plan is limited to 2 contacts. Please upgrade to add more contacts."


def test_unlimited_contacts_and_user_limits(db_session: Session) -> None:
    subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)
    organization = _organization(db_session)
    ctx = _ctx(organization)
    subscription_service.create_subscription(
        db_session, ctx, organization.id, SubscriptionCreate(subscription_plan_id=_plan(db_session, "Pro").id)
    )

    assert subscription_service.can_add_more_contacts(db_session, ctx, organization.id, 100_000).can_add is True
    assert subscription_service.can_add_more_users(db_session, ctx, organization.id, 4).can_add is True
    blocked = subscription_service.can_add_more_users(db_session, ctx, organization.id, 5)
    assert blocked.can_add is False
    assert "Pro plan is limited to 5 users" in (blocked.reason or "")


def test_feature_access_formats_boolean_and_numeric_features(db_session: Session) -> None:
    subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)
    organization = _organization(db_session)
    ctx = _ctx(organization)

    assert subscription_service.get_organization_feature_access(db_session, ctx, organization.id).is_active is False

    subscription_service.create_subscription(
        db_session, ctx, organization.id, SubscriptionCreate(subscription_plan_id=_plan(db_session, "Starter").id)
    )
    access = subscription_service.get_organization_feature_access(db_session, ctx, organization.id)

    assert access.is_active is True
    assert access.plan_name == "Starter"
    assert access.features["MAX_CONTACTS"].enabled is True
    assert access.features["MAX_CONTACTS"].limit == -1
    assert access.features["AI_MESSAGES_LIMIT"].limit == 50
    assert access.features["CRM_ASSISTANT"].enabled is False


def test_cancel_sets_period_end_flag_and_writes_audit_row(db_session: Session) -> None:
    subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)
    organization = _organization(db_session)
    ctx = _ctx(organization)
    created = subscription_service.create_subscription(
        db_session, ctx, organization.id, SubscriptionCreate(subscription_plan_id=_plan(db_session, "Pro").id)
    )

    canceled = subscription_service.cancel_subscription(db_session, ctx, created.id)

    assert canceled.cancel_at_period_end is True
    assert canceled.status == "active"
    audit_row = db_session.scalar(
        select(AuditLog).where(AuditLog.action_type == "subscription.cancel_requested")
    )
    assert audit_row is not None
    assert audit_row.previous_state["cancel_at_period_end"] is False
    assert audit_row.new_state["cancel_at_period_end"] is True
    assert audit_row.event_metadata == {"correlation_id": "corr-sub"}


def test_admin_change_plan_updates_organization_tier(db_session: Session) -> None:
    subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)
    organization = _organization(db_session)
    ctx = _ctx(organization)
    created = subscription_service.create_subscription(
        db_session, ctx, organization.id, SubscriptionCreate(subscription_plan_id=_plan(db_session, "Starter").id)
    )

    changed = subscription_admin_service.change_plan(db_session, ADMIN, created.id, _plan(db_session, "Pro").id)

    assert changed.plan is not None
    assert changed.plan.name == "Pro"
    db_session.refresh(organization)
    assert organization.subscription_tier == "pro"


def test_subscription_outside_scope_is_forbidden(db_session: Session) -> None:
    subscription_admin_service.initialize_predefined_plans(db_session, ADMIN)
    owner = _organization(db_session, "owner")
    other = _organization(db_session, "other")
    created = subscription_service.create_subscription(
        db_session, _ctx(owner), owner.id, SubscriptionCreate(subscription_plan_id=_plan(db_session, "Pro").id)
    )

    with pytest.raises(HTTPException) as exc_info:
        subscription_service.get_subscription_by_id(db_session, _ctx(other), created.id)

    assert exc_info.value.status_code == 403
    with pytest.raises(HTTPException) as missing:
        subscription_service.get_subscription_by_id(db_session, _ctx(owner), uuid.uuid4())
    assert missing.value.status_code == 404


def test_subscription_analytics_reports_revenue_and_retention(db_session: Session) -> None:
    acme = _organization(db_session)
    globex = _organization(db_session, "globex")
    monthly = SubscriptionPlan(name="Pro", price=Decimal("29"), billing_interval="monthly", features={})
    yearly = SubscriptionPlan(name="Premium (Annual)", price=Decimal("1884"), billing_interval="yearly", features={})
    db_session.add_all([monthly, yearly])
    db_session.flush()
    now = datetime.now(timezone.utc)
    for organization, plan, status in (
        (acme, monthly, "active"),
        (acme, yearly, "active"),
        (globex, monthly, "trialing"),
        (globex, monthly, "canceled"),
    ):
        db_session.add(
            OrganizationSubscription(
                organization_id=organization.id,
                subscription_plan_id=plan.id,
                status=status,
                current_period_start=now,
                current_period_end=now + timedelta(days=30),
            )
        )
    db_session.add_all(
        [OrganizationMember(organization_id=acme.id, user_id=f"rep-{index}", role="member") for index in range(3)]
        + [OrganizationMember(organization_id=globex.id, user_id="owner", role="owner")]
    )
    db_session.commit()

    analytics = subscription_admin_service.get_subscription_analytics(db_session, ADMIN, now - timedelta(days=30))

    assert (analytics.total_subscriptions, analytics.active_subscriptions) == (4, 2)
    assert (analytics.trialing_subscriptions, analytics.canceled_subscriptions) == (1, 1)
    # 29 + 1884 / 12 + 29 for the trial.
    assert analytics.mrr == 215
    assert analytics.plan_distribution == {"Pro": 3, "Premium (Annual)": 1, "Free": 0}
    assert analytics.plan_revenue_distribution == {"Pro": 58.0, "Premium (Annual)": 157.0}
    assert analytics.retention_rate == 50
    assert analytics.churn_rate == 25
    assert analytics.conversion_rate == 67
    assert analytics.arpu == 54
    assert analytics.average_subscription_value == 108
    assert analytics.estimated_ltv == 108 * 12
    assert len(analytics.cohort_retention) == 1
    cohort = analytics.cohort_retention[0]
    assert (cohort.total, cohort.active, cohort.canceled) == (4, 3, 1)
    assert (cohort.retention_rate, cohort.cancel_rate) == (75, 25)


def test_subscription_analytics_require_admin(db_session: Session) -> None:
    organization = _organization(db_session)

    with pytest.raises(HTTPException) as exc:
        subscription_admin_service.get_subscription_analytics(
            db_session, _ctx(organization), datetime.now(timezone.utc) - timedelta(days=30)
        )

    assert exc.value.status_code == 403
