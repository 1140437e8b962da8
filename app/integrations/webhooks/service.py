from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import events
from app.core.clock import ensure_utc
from app.core.config import get_settings
from app.integrations.webhooks.models import WebhookConfiguration, WebhookDelivery
from app.integrations.webhooks.repository import WebhookDeliveryRepository, WebhookRepository
from app.integrations.webhooks.schemas import (
    RetrySweepResult,
    WebhookCreate,
    WebhookDeliveryRead,
    WebhookRead,
    WebhookUpdate,
)
from app.metrics import observe_webhook_delivery
from app.platform.audit.service import audit_log_service
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("app.integrations.webhooks")

RETRY_DELAYS_MINUTES = (5, 15, 60, 360, 1440)
WILDCARD_EVENT = "*"
TEST_EVENT_TYPE = "webhook.test"
USER_AGENT = "Aris-Webhooks/1.0"
RESPONSE_BODY_LIMIT = 2000
RETRY_BATCH_SIZE = 100


def sign_payload(secret: str, timestamp: str, body: str) -> str:
    """Hex HMAC-SHA256 over ``"{timestamp}.{body}"``."""

    message = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def retry_delay(attempt_count: int) -> timedelta:
    index = min(max(attempt_count, 1), len(RETRY_DELAYS_MINUTES)) - 1
    return timedelta(minutes=RETRY_DELAYS_MINUTES[index])


def build_http_client() -> httpx.Client:
    return httpx.Client(timeout=get_settings().webhook_timeout_seconds, headers={"User-Agent": USER_AGENT})


def get_webhook_http_client() -> Iterator[httpx.Client]:
    with build_http_client() as client:
        yield client


@dataclass(slots=True)
class WebhookService:
    webhook_repository: WebhookRepository = WebhookRepository()
    delivery_repository: WebhookDeliveryRepository = WebhookDeliveryRepository()

    def create_webhook(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: WebhookCreate
    ) -> WebhookRead:
        data = {"organization_id": organization_id, **payload.model_dump(mode="json", exclude={"secret"})}
        self._validate_write(data, ctx, action="create")

        webhook = WebhookConfiguration(
            organization_id=organization_id,
            name=payload.name,
            url=str(payload.url),
            secret=payload.secret or secrets.token_hex(32),
            events=list(dict.fromkeys(payload.events)),
            is_active=payload.is_active,
            created_by=ctx.user_id,
        )
        session.add(webhook)
        session.flush()
        audit_log_service.record(
            session,
            ctx,
            organization_id=organization_id,
            action_type="webhook.created",
            entity_type="webhook",
            entity_id=webhook.id,
            new_state=self._snapshot(webhook),
        )
        session.commit()
        session.refresh(webhook)
        logger.info("webhook.created", extra={"organization_id": str(organization_id), "webhook_id": str(webhook.id)})
        return self._to_webhook_read(webhook, ctx)

    def list_webhooks(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> list[WebhookRead]:
        query = select(WebhookConfiguration).where(WebhookConfiguration.organization_id == organization_id)
        query = self.webhook_repository.apply_scope_query(query, ctx)
        rows = session.scalars(query.order_by(WebhookConfiguration.created_at.asc())).all()
        return [self._to_webhook_read(row, ctx) for row in rows]

    def get_webhook(self, session: Session, ctx: AuthContext, webhook_id: uuid.UUID) -> WebhookRead:
        return self._to_webhook_read(self._load_webhook(session, ctx, webhook_id), ctx)

    def update_webhook(
        self, session: Session, ctx: AuthContext, webhook_id: uuid.UUID, payload: WebhookUpdate
    ) -> WebhookRead:
        webhook = self._load_webhook(session, ctx, webhook_id)
        changes = payload.model_dump(mode="json", exclude_unset=True)
        self._validate_write(
            {key: value for key, value in changes.items() if key != "secret"},
            ctx,
            existing_scope={"organization_id": str(webhook.organization_id)},
            action="update",
        )
        previous = self._snapshot(webhook)
        for key, value in changes.items():
            if key == "events" and value is not None:
                value = list(dict.fromkeys(value))
            setattr(webhook, key, value)

        audit_log_service.record(
            session,
            ctx,
            organization_id=webhook.organization_id,
            action_type="webhook.updated",
            entity_type="webhook",
            entity_id=webhook.id,
            previous_state=previous,
            new_state=self._snapshot(webhook),
        )
        session.commit()
        session.refresh(webhook)
        return self._to_webhook_read(webhook, ctx)

    def delete_webhook(self, session: Session, ctx: AuthContext, webhook_id: uuid.UUID) -> None:
        webhook = self._load_webhook(session, ctx, webhook_id)
        self._validate_write(
            {}, ctx, existing_scope={"organization_id": str(webhook.organization_id)}, action="delete"
        )
        audit_log_service.record(
            session,
            ctx,
            organization_id=webhook.organization_id,
            action_type="webhook.deleted",
            entity_type="webhook",
            entity_id=webhook.id,
            previous_state=self._snapshot(webhook),
        )
        session.delete(webhook)
        session.commit()

    def trigger_event(
        self,
        session: Session,
        organization_id: uuid.UUID,
        event_type: str,
        data: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> list[WebhookDelivery]:
        """Queue one pending delivery per active subscribed webhook; the caller commits."""

        current = now or datetime.now(timezone.utc)
        webhooks = session.scalars(
            select(WebhookConfiguration).where(
                WebhookConfiguration.organization_id == organization_id,
                WebhookConfiguration.is_active.is_(True),
            )
        ).all()

        deliveries: list[WebhookDelivery] = []
        for webhook in webhooks:
            subscribed = webhook.events or []
            if event_type not in subscribed and WILDCARD_EVENT not in subscribed:
                continue
            delivery = WebhookDelivery(
                webhook_id=webhook.id,
                organization_id=organization_id,
                event_type=event_type,
                payload=json.loads(json.dumps(data, default=str)),
                status="pending",
                attempt_count=0,
                next_retry_at=current,
            )
            session.add(delivery)
            deliveries.append(delivery)
        if deliveries:
            session.flush()
            logger.info(
                "webhook.event.queued",
                extra={"organization_id": str(organization_id), "event_type": event_type, "messages": len(deliveries)},
            )
        return deliveries

    def emit(self, session: Session, event: dict[str, Any]) -> list[WebhookDelivery]:
        """Publish a domain event and queue outbound deliveries for the event's organization."""

        events.publish(event)
        organization_id = event.get("organization_id")
        if not organization_id:
            return []
        return self.trigger_event(session, uuid.UUID(str(organization_id)), str(event["event_type"]), event)

    def deliver(
        self,
        session: Session,
        delivery: WebhookDelivery,
        client: httpx.Client,
        *,
        now: datetime | None = None,
    ) -> WebhookDelivery:
        """POST one delivery and record the outcome; the caller commits."""

        current = now or datetime.now(timezone.utc)
        webhook = delivery.webhook
        timestamp = str(int(current.timestamp()))
        body = json.dumps(
            {
                "id": str(delivery.id),
                "event_type": delivery.event_type,
                "organization_id": str(delivery.organization_id),
                "created_at": ensure_utc(delivery.created_at).isoformat(),
                "data": delivery.payload,
            },
            separators=(",", ":"),
            default=str,
        )
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Signature": sign_payload(webhook.secret, timestamp, body),
            "X-Webhook-Timestamp": timestamp,
            "X-Webhook-ID": str(delivery.id),
            "X-Event-Type": delivery.event_type,
        }
        log_extra = {
            "webhook_id": str(webhook.id),
            "delivery_id": str(delivery.id),
            "event_type": delivery.event_type,
            "organization_id": str(delivery.organization_id),
        }

        delivery.attempt_count += 1
        response: httpx.Response | None = None
        with tracer.start_as_current_span("webhook.deliver") as span:
            span.set_attribute("webhook_id", str(webhook.id))
            span.set_attribute("delivery_id", str(delivery.id))
            span.set_attribute("event_type", delivery.event_type)
            span.set_attribute("attempt", delivery.attempt_count)
            try:
                response = client.post(webhook.url, content=body.encode("utf-8"), headers=headers)
            except httpx.HTTPError as exc:
                delivery.response_status = None
                delivery.response_body = None
                delivery.error = f"{type(exc).__name__}: {exc}"
            else:
                span.set_attribute("http.status_code", response.status_code)

        if response is not None:
            delivery.response_status = response.status_code
            delivery.response_body = response.text[:RESPONSE_BODY_LIMIT]
            if response.is_success:
                delivery.status = "delivered"
                delivery.delivered_at = current
                delivery.next_retry_at = None
                delivery.error = None
                observe_webhook_delivery(delivery.event_type, "delivered")
                logger.info("webhook.delivered", extra={**log_extra, "attempt": delivery.attempt_count})
                return delivery
            delivery.error = f"HTTP {response.status_code}"

        if delivery.attempt_count >= get_settings().webhook_max_attempts:
            delivery.status = "failed"
            delivery.next_retry_at = None
            observe_webhook_delivery(delivery.event_type, "failed")
            logger.warning("webhook.failed", extra={**log_extra, "attempt": delivery.attempt_count, "error": delivery.error})
        else:
            delivery.status = "pending"
            delivery.next_retry_at = current + retry_delay(delivery.attempt_count)
            observe_webhook_delivery(delivery.event_type, "retrying")
            logger.info("webhook.retry_scheduled", extra={**log_extra, "attempt": delivery.attempt_count, "error": delivery.error})
        return delivery

    def process_due_retries(
        self, session: Session, client: httpx.Client, *, now: datetime | None = None
    ) -> RetrySweepResult:
        current = now or datetime.now(timezone.utc)
        due = session.scalars(
            select(WebhookDelivery)
            .where(
                WebhookDelivery.status == "pending",
                WebhookDelivery.next_retry_at.is_not(None),
                WebhookDelivery.next_retry_at <= current,
            )
            .order_by(WebhookDelivery.next_retry_at.asc(), WebhookDelivery.created_at.asc())
            .limit(RETRY_BATCH_SIZE)
        ).all()

        result = RetrySweepResult()
        for delivery in due:
            self.deliver(session, delivery, client, now=current)
            session.commit()
            result.processed += 1
            if delivery.status == "delivered":
                result.delivered += 1
            elif delivery.status == "failed":
                result.failed += 1
            else:
                result.retrying += 1
        return result

    def send_test_event(
        self, session: Session, ctx: AuthContext, webhook_id: uuid.UUID, client: httpx.Client
    ) -> WebhookDeliveryRead:
        webhook = self._load_webhook(session, ctx, webhook_id)
        delivery = WebhookDelivery(
            webhook_id=webhook.id,
            organization_id=webhook.organization_id,
            event_type=TEST_EVENT_TYPE,
            payload={
                "message": "This is a test webhook from ARIS",
                "test": True,
                "webhook_id": str(webhook.id),
                "triggered_by": ctx.user_id,
            },
            status="pending",
        )
        session.add(delivery)
        session.flush()
        self.deliver(session, delivery, client)
        session.commit()
        session.refresh(delivery)
        return self._to_delivery_read(delivery, ctx)

    def list_deliveries(
        self,
        session: Session,
        ctx: AuthContext,
        webhook_id: uuid.UUID,
        *,
        status_filter: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookDeliveryRead]:
        webhook = self._load_webhook(session, ctx, webhook_id)
        query = select(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook.id)
        if status_filter:
            query = query.where(WebhookDelivery.status == status_filter)
        query = self.delivery_repository.apply_scope_query(query, ctx)
        rows = session.scalars(
            query.order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc()).limit(limit).offset(offset)
        ).all()
        return [self._to_delivery_read(row, ctx) for row in rows]

    def retry_delivery(
        self, session: Session, ctx: AuthContext, delivery_id: uuid.UUID, client: httpx.Client
    ) -> WebhookDeliveryRead:
        delivery = session.scalar(
            self.delivery_repository.apply_scope_query(
                select(WebhookDelivery).where(WebhookDelivery.id == delivery_id), ctx
            )
        )
        if delivery is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook delivery not found")
        if delivery.status == "delivered":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="webhook delivery already succeeded")

        # A manual retry gets one more attempt even when the automatic budget is spent.
        if delivery.status == "failed":
            delivery.attempt_count = min(delivery.attempt_count, get_settings().webhook_max_attempts - 1)
        delivery.status = "pending"
        self.deliver(session, delivery, client)
        session.commit()
        session.refresh(delivery)
        return self._to_delivery_read(delivery, ctx)

    def _load_webhook(self, session: Session, ctx: AuthContext, webhook_id: uuid.UUID) -> WebhookConfiguration:
        webhook = session.get(WebhookConfiguration, webhook_id)
        if webhook is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook not found")
        try:
            self.webhook_repository.validate_read_scope(ctx, organization_id=webhook.organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        return webhook

    def _validate_write(
        self,
        data: dict[str, Any],
        ctx: AuthContext,
        *,
        existing_scope: dict[str, str | None] | None = None,
        action: str,
    ) -> None:
        try:
            self.webhook_repository.validate_write_security(data, ctx, existing_scope=existing_scope, action=action)
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    @staticmethod
    def _snapshot(webhook: WebhookConfiguration) -> dict[str, Any]:
        return {
            "name": webhook.name,
            "url": webhook.url,
            "events": list(webhook.events or []),
            "is_active": webhook.is_active,
        }

    def _to_webhook_read(self, webhook: WebhookConfiguration, ctx: AuthContext) -> WebhookRead:
        payload = {
            "id": webhook.id,
            "organization_id": webhook.organization_id,
            "name": webhook.name,
            "url": webhook.url,
            "secret": webhook.secret,
            "events": list(webhook.events or []),
            "is_active": webhook.is_active,
            "created_by": webhook.created_by,
            "created_at": webhook.created_at,
            "updated_at": webhook.updated_at,
        }
        return WebhookRead.model_validate(self.webhook_repository.apply_read_security(payload, ctx))

    def _to_delivery_read(self, delivery: WebhookDelivery, ctx: AuthContext) -> WebhookDeliveryRead:
        payload = {
            "id": delivery.id,
            "webhook_id": delivery.webhook_id,
            "organization_id": delivery.organization_id,
            "event_type": delivery.event_type,
            "payload": delivery.payload,
            "status": delivery.status,
            "attempt_count": delivery.attempt_count,
            "next_retry_at": delivery.next_retry_at,
            "response_status": delivery.response_status,
            "response_body": delivery.response_body,
            "error": delivery.error,
            "delivered_at": delivery.delivered_at,
            "created_at": delivery.created_at,
        }
        return WebhookDeliveryRead.model_validate(self.delivery_repository.apply_read_security(payload, ctx))


webhook_service = WebhookService()
