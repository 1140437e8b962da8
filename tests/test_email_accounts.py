from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.clock import ensure_utc
from app.core.config import Settings
from app.core.database import Base
from app.integrations.email.models import EmailAccount
from app.integrations.email.oauth import GOOGLE_TOKEN_URL, OAuthTokenClient
from app.integrations.email.schemas import EmailAccountCreate
from app.integrations.email.service import email_account_service, needs_refresh
from app.platform.notifications.models import Notification
from app.platform.organizations.models import Organization
from app.platform.security.context import AuthContext
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend
from app.platform.settings.schemas import SettingUpsert
from app.platform.settings.service import settings_service

NOW = datetime(2026, 7, 1, 8, 0, tzinfo=timezone.utc)
OAUTH_SETTINGS = Settings(
    google_client_id="google-id",
    google_client_secret="google-secret",
    microsoft_client_id="ms-id",
    microsoft_client_secret="ms-secret",
    microsoft_tenant="contoso",
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


@pytest.fixture(autouse=True)
def reset_globals() -> Generator[None, None, None]:
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    events.published_events.clear()
    yield
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    events.published_events.clear()


@pytest.fixture()
def organization(db_session: Session) -> Organization:
    organization = Organization(name="Acme", slug="acme", subscription_tier="pro")
    db_session.add(organization)
    db_session.commit()
    return organization


@pytest.fixture()
def ctx(organization: Organization) -> AuthContext:
    return AuthContext(user_id="owner-1", organization_id=str(organization.id), correlation_id="corr-mail")


def _oauth(handler: Callable[[httpx.Request], httpx.Response]) -> OAuthTokenClient:
    client = OAuthTokenClient(httpx.Client(transport=httpx.MockTransport(handler)))
    client.settings = OAUTH_SETTINGS
    return client


def _connect(
    session: Session,
    ctx: AuthContext,
    organization: Organization,
    *,
    email: str = "owner@acme.io",
    provider: str = "google",
    expires_in: int = 3600,
) -> EmailAccount:
    read = email_account_service.connect_account(
        session,
        ctx,
        organization.id,
        EmailAccountCreate(
            email=email, provider_type=provider, access_token="at-old", refresh_token="rt-old", expires_in=expires_in
        ),
        now=NOW,
    )
    account = session.get(EmailAccount, read.id)
    assert account is not None
    return account


def test_needs_refresh_window() -> None:
    account = EmailAccount(access_token="token", token_expires_at=None)
    assert needs_refresh(account, NOW) is True

    account.token_expires_at = NOW + timedelta(minutes=10)
    assert needs_refresh(account, NOW) is False

    account.token_expires_at = NOW + timedelta(minutes=5)
    assert needs_refresh(account, NOW) is True

    account.access_token = None
    account.token_expires_at = NOW + timedelta(hours=1)
    assert needs_refresh(account, NOW) is True


def test_google_refresh_keeps_existing_refresh_token(
    db_session: Session, organization: Organization, ctx: AuthContext
) -> None:
    account = _connect(db_session, ctx, organization)
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"access_token": "at-new", "expires_in": 1800, "token_type": "Bearer"})

    refreshed = email_account_service.refresh_access_token(db_session, ctx, account.id, _oauth(handler), now=NOW)

    assert str(captured[0].url) == GOOGLE_TOKEN_URL
    form = parse_qs(captured[0].content.decode("utf-8"))
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["rt-old"]
    assert form["client_id"] == ["google-id"]

    db_session.refresh(account)
    assert account.access_token == "at-new"
    assert account.refresh_token == "rt-old"
    assert ensure_utc(account.token_expires_at) == NOW + timedelta(seconds=1800)
    assert refreshed.has_refresh_token is True
    assert refreshed.last_error is None


def test_microsoft_refresh_rotates_refresh_token(
    db_session: Session, organization: Organization, ctx: AuthContext
) -> None:
    account = _connect(db_session, ctx, organization, provider="microsoft")

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "login.microsoftonline.com"
        assert request.url.path == "/contoso/oauth2/v2.0/token"
        return httpx.Response(200, json={"access_token": "at-ms", "refresh_token": "rt-ms", "expires_in": 3599})

    email_account_service.refresh_access_token(db_session, ctx, account.id, _oauth(handler), now=NOW)

    db_session.refresh(account)
    assert account.access_token == "at-ms"
    assert account.refresh_token == "rt-ms"
    assert ensure_utc(account.last_refreshed_at) == NOW


def test_rejected_refresh_deactivates_and_notifies(
    db_session: Session, organization: Organization, ctx: AuthContext
) -> None:
    account = _connect(db_session, ctx, organization)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    with pytest.raises(HTTPException) as exc_info:
        email_account_service.refresh_access_token(db_session, ctx, account.id, _oauth(handler), now=NOW)

    assert exc_info.value.status_code == 502
    assert exc_info.value.detail == "failed to refresh google access token"
    db_session.refresh(account)
    assert account.is_active is False
    assert account.last_error is not None and account.last_error.startswith("HTTP 400")

    notification = db_session.scalar(select(Notification))
    assert notification is not None
    assert notification.user_id == "owner-1"
    assert notification.action_url == "/settings/email-accounts"
    assert notification.notification_metadata["event"] == "token_refresh_failed"
    assert events.events_of_type("email_account.refresh_failed")[0]["account_id"] == str(account.id)

    with pytest.raises(HTTPException) as inactive:
        email_account_service.get_valid_access_token(db_session, ctx, account.id, _oauth(handler), now=NOW)
    assert inactive.value.status_code == 409


def test_valid_token_is_returned_without_refresh(
    db_session: Session, organization: Organization, ctx: AuthContext
) -> None:
    account = _connect(db_session, ctx, organization)

    def unexpected(request: httpx.Request) -> httpx.Response:
        raise AssertionError("token endpoint should not be called")

    token = email_account_service.get_valid_access_token(db_session, ctx, account.id, _oauth(unexpected), now=NOW)

    assert token.access_token == "at-old"
    assert token.refreshed is False


def test_missing_client_credentials_report_unavailable(
    db_session: Session, organization: Organization, ctx: AuthContext
) -> None:
    account = _connect(db_session, ctx, organization)
    client = _oauth(lambda request: httpx.Response(200, json={"access_token": "x"}))
    client.settings = Settings(google_client_id="", google_client_secret="")

    with pytest.raises(HTTPException) as exc_info:
        email_account_service.refresh_access_token(db_session, ctx, account.id, client, now=NOW)

    assert exc_info.value.status_code == 503
    db_session.refresh(account)
    assert account.is_active is True


def test_sweep_refreshes_only_expiring_accounts(
    db_session: Session, organization: Organization, ctx: AuthContext
) -> None:
    expiring = _connect(db_session, ctx, organization, email="a@acme.io", expires_in=120)
    _connect(db_session, ctx, organization, email="b@acme.io", expires_in=7200)
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(parse_qs(request.content.decode("utf-8"))["refresh_token"][0])
        return httpx.Response(200, json={"access_token": "at-sweep", "expires_in": 3600})

    result = email_account_service.refresh_expiring_tokens(db_session, _oauth(handler), now=NOW)

    assert (result.processed, result.refreshed, result.failed) == (1, 1, 0)
    assert calls == ["rt-old"]
    db_session.refresh(expiring)
    assert expiring.access_token == "at-sweep"


def test_account_limit_follows_plan_and_overrides(
    db_session: Session, organization: Organization, ctx: AuthContext
) -> None:
    organization.subscription_tier = "starter"
    db_session.commit()
    _connect(db_session, ctx, organization, email="first@acme.io")

    with pytest.raises(HTTPException) as limited:
        _connect(db_session, ctx, organization, email="second@acme.io")
    assert limited.value.status_code == 402
    assert limited.value.detail == "Your plan is limited to 1 email accounts. Please upgrade to connect more accounts."

    settings_service.update_setting(
        db_session, ctx, organization.id, "feature_flags", SettingUpsert(setting_value={"MAX_EMAIL_ACCOUNTS": 2})
    )
    _connect(db_session, ctx, organization, email="second@acme.io")

    settings_service.update_setting(
        db_session, ctx, organization.id, "feature_flags", SettingUpsert(setting_value={"EMAIL_SYNC": False})
    )
    with pytest.raises(HTTPException) as disabled:
        _connect(db_session, ctx, organization, email="third@acme.io")
    assert disabled.value.status_code == 402
    assert disabled.value.detail.startswith("Email sync is not included in your plan.")
