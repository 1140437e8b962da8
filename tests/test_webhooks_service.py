from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.clock import ensure_utc
from app.core.database import Base
from app.integrations.webhooks import tasks
from app.integrations.webhooks.models import WebhookConfiguration, WebhookDelivery
from app.integrations.webhooks.service import RETRY_DELAYS_MINUTES, retry_delay, sign_payload, webhook_service
from app.platform.organizations.models import Organization
from app.platform.security.context import AuthContext
from app.platform.security.policies import InMemoryPolicyBackend, set_policy_backend

SECRET = "whsec-local-0123456789abcdef"
START = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)


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
def webhook(db_session: Session, organization: Organization) -> WebhookConfiguration:
    webhook = WebhookConfiguration(
        organization_id=organization.id,
        name="Deals",
        url="https://hooks.example.com/deals",
        secret=SECRET,
        events=["crm.opportunity.closed_won"],
    )
    db_session.add(webhook)
    db_session.commit()
    return webhook


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def _queue(session: Session, organization: Organization) -> WebhookDelivery:
    deliveries = webhook_service.trigger_event(
        session, organization.id, "crm.opportunity.closed_won", {"opportunity_id": "opp-1", "value": "1200.00"}, now=START
    )
    session.commit()
    assert len(deliveries) == 1
    return deliveries[0]


def test_signature_is_hmac_over_timestamp_and_body() -> None:
    expected = hmac.new(b"secret", b"1700000000.{\"a\":1}", hashlib.sha256).hexdigest()

    assert sign_payload("secret", "1700000000", '{"a":1}') == expected


def test_retry_schedule_caps_at_last_delay() -> None:
    assert RETRY_DELAYS_MINUTES == (5, 15, 60, 360, 1440)
    assert [retry_delay(attempt) for attempt in range(1, 7)] == [
        timedelta(minutes=5),
        timedelta(minutes=15),
        timedelta(hours=1),
        timedelta(hours=6),
        timedelta(days=1),
        timedelta(days=1),
    ]


def test_trigger_event_only_targets_active_subscribers(
    db_session: Session, organization: Organization, webhook: WebhookConfiguration
) -> None:
    db_session.add_all(
        [
            WebhookConfiguration(
                organization_id=organization.id, name="Everything", url="https://a.example.com", secret=SECRET, events=["*"]
            ),
            WebhookConfiguration(
                organization_id=organization.id,
                name="Paused",
                url="https://b.example.com",
                secret=SECRET,
                events=["*"],
                is_active=False,
            ),
            WebhookConfiguration(
                organization_id=organization.id,
                name="Contacts only",
                url="https://c.example.com",
                secret=SECRET,
                events=["crm.contact.created"],
            ),
        ]
    )
    db_session.commit()

    deliveries = webhook_service.trigger_event(
        db_session, organization.id, "crm.opportunity.closed_won", {"opportunity_id": "opp-1"}, now=START
    )

    assert sorted(delivery.webhook.name for delivery in deliveries) == ["Deals", "Everything"]
    assert all(delivery.status == "pending" and delivery.attempt_count == 0 for delivery in deliveries)


def test_delivery_carries_signed_headers(
    db_session: Session, organization: Organization, webhook: WebhookConfiguration
) -> None:
    delivery = _queue(db_session, organization)
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, text="ok")

    with _client(handler) as client:
        webhook_service.deliver(db_session, delivery, client, now=START)
    db_session.commit()

    request = captured[0]
    body = request.content.decode("utf-8")
    assert str(request.url) == "https://hooks.example.com/deals"
    assert request.headers["X-Webhook-Timestamp"] == str(int(START.timestamp()))
    assert request.headers["X-Webhook-Signature"] == sign_payload(SECRET, request.headers["X-Webhook-Timestamp"], body)
    assert request.headers["X-Webhook-ID"] == str(delivery.id)
    assert request.headers["X-Event-Type"] == "crm.opportunity.closed_won"
    assert request.headers["Content-Type"] == "application/json"
    envelope = json.loads(body)
    assert envelope["id"] == str(delivery.id)
    assert envelope["data"] == {"opportunity_id": "opp-1", "value": "1200.00"}

    assert delivery.status == "delivered"
    assert delivery.attempt_count == 1
    assert delivery.response_status == 200
    assert delivery.next_retry_at is None


def test_failures_follow_backoff_then_fail(
    db_session: Session, organization: Organization, webhook: WebhookConfiguration
) -> None:
    delivery = _queue(db_session, organization)
    now = START
    observed: list[tuple[str, int]] = []
    scheduled_delays: list[int] = []

    with _client(lambda request: httpx.Response(503, text="unavailable")) as client:
        for delay in (0, 5, 15, 60, 360, 1440):
            now = now + timedelta(minutes=delay)
            result = webhook_service.process_due_retries(db_session, client, now=now)
            assert result.processed == 1
            db_session.refresh(delivery)
            observed.append((delivery.status, delivery.attempt_count))
            if delivery.next_retry_at is not None:
                scheduled_delays.append(int((ensure_utc(delivery.next_retry_at) - now).total_seconds() // 60))

        later = webhook_service.process_due_retries(db_session, client, now=now + timedelta(days=2))

    assert scheduled_delays == [5, 15, 60, 360, 1440]
    assert observed == [
        ("pending", 1),
        ("pending", 2),
        ("pending", 3),
        ("pending", 4),
        ("pending", 5),
        ("failed", 6),
    ]
    assert delivery.next_retry_at is None
    assert delivery.error == "HTTP 503"
    assert delivery.response_body == "unavailable"
    assert later.processed == 0


def test_retry_waits_for_schedule(db_session: Session, organization: Organization, webhook: WebhookConfiguration) -> None:
    delivery = _queue(db_session, organization)

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _client(refuse) as client:
        webhook_service.process_due_retries(db_session, client, now=START)
        early = webhook_service.process_due_retries(db_session, client, now=START + timedelta(minutes=4))

    db_session.refresh(delivery)
    assert early.processed == 0
    assert delivery.status == "pending"
    assert delivery.response_status is None
    assert delivery.error == "ConnectError: connection refused"


def test_manual_retry_rules(db_session: Session, organization: Organization, webhook: WebhookConfiguration) -> None:
    ctx = AuthContext(user_id="owner-1", organization_id=str(organization.id))
    delivery = _queue(db_session, organization)
    delivery.status = "failed"
    delivery.attempt_count = 6
    db_session.commit()

    with _client(lambda request: httpx.Response(204)) as client:
        retried = webhook_service.retry_delivery(db_session, ctx, delivery.id, client)
        assert retried.status == "delivered"
        assert retried.attempt_count == 6

        with pytest.raises(HTTPException) as exc_info:
            webhook_service.retry_delivery(db_session, ctx, delivery.id, client)
    assert exc_info.value.status_code == 409

    outsider = AuthContext(user_id="intruder", organization_id="00000000-0000-0000-0000-000000000002")
    with _client(lambda request: httpx.Response(204)) as client, pytest.raises(HTTPException) as hidden:
        webhook_service.retry_delivery(db_session, outsider, delivery.id, client)
    assert hidden.value.status_code == 404


def test_emit_publishes_and_queues(db_session: Session, organization: Organization, webhook: WebhookConfiguration) -> None:
    queued = webhook_service.emit(
        db_session,
        {"event_type": "crm.opportunity.closed_won", "organization_id": str(organization.id), "opportunity_id": "x"},
    )
    db_session.commit()

    assert events.events_of_type("crm.opportunity.closed_won")[0]["opportunity_id"] == "x"
    assert len(queued) == 1
    assert db_session.scalar(select(WebhookDelivery.event_type)) == "crm.opportunity.closed_won"


def test_retry_sweep_task_delivers_due_deliveries(
    db_session: Session,
    organization: Organization,
    webhook: WebhookConfiguration,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    webhook_service.trigger_event(db_session, organization.id, "crm.opportunity.closed_won", {"opportunity_id": "opp-2"})
    db_session.commit()
    monkeypatch.setattr(tasks, "SessionLocal", lambda: db_session)
    monkeypatch.setattr(tasks, "build_http_client", lambda: _client(lambda request: httpx.Response(200)))

    result = tasks.process_due_retries_task()

    assert result == {"processed": 1, "delivered": 1, "retrying": 0, "failed": 0}
    assert db_session.scalar(select(WebhookDelivery.status)) == "delivered"
