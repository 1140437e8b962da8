from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app import events
from app.business.subscription.service import subscription_service
from app.crm.models import Contact, ContactEmailInteraction
from app.crm.repositories import ContactRepository
from app.crm.schemas import ContactCreate, ContactRead, ContactUpdate, EmailInteractionCreate, EmailInteractionRead
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ContactService:
    contact_repository: ContactRepository = ContactRepository()

    def create_contact(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: ContactCreate
    ) -> ContactRead:
        data = {"organization_id": organization_id, **payload.model_dump(mode="python")}
        self._validate_write(data, ctx, action="create")

        limit = subscription_service.can_add_more_contacts(
            session, ctx, organization_id, self.count_contacts(session, organization_id)
        )
        if not limit.can_add:
            raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=limit.reason)

        contact = Contact(**data, created_by=ctx.user_id)
        session.add(contact)
        session.commit()
        session.refresh(contact)

        events.publish(
            {
                "event_type": "crm.contact.created",
                "organization_id": str(organization_id),
                "contact_id": str(contact.id),
                "correlation_id": ctx.correlation_id,
            }
        )
        return self.to_contact_read(contact, ctx)

    def list_contacts(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        *,
        status_filter: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ContactRead]:
        query = select(Contact).where(Contact.organization_id == organization_id)
        if status_filter:
            query = query.where(Contact.status == status_filter)
        query = self.contact_repository.apply_scope_query(query, ctx)
        rows = session.scalars(
            query.order_by(Contact.created_at.desc(), Contact.id.desc()).limit(limit).offset(offset)
        ).all()
        return [self.to_contact_read(row, ctx) for row in rows]

    def get_contact(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> ContactRead:
        return self.to_contact_read(self.load(session, ctx, contact_id), ctx)

    def update_contact(
        self, session: Session, ctx: AuthContext, contact_id: uuid.UUID, payload: ContactUpdate
    ) -> ContactRead:
        contact = self.load(session, ctx, contact_id)
        changes = payload.model_dump(mode="python", exclude_unset=True)
        self._validate_write(
            changes, ctx, existing_scope={"organization_id": str(contact.organization_id)}, action="update"
        )
        for key, value in changes.items():
            setattr(contact, key, value)
        session.commit()
        session.refresh(contact)

        events.publish(
            {
                "event_type": "crm.contact.updated",
                "organization_id": str(contact.organization_id),
                "contact_id": str(contact.id),
                "changed_fields": sorted(changes),
                "correlation_id": ctx.correlation_id,
            }
        )
        return self.to_contact_read(contact, ctx)

    def delete_contact(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> None:
        contact = self.load(session, ctx, contact_id)
        self._validate_write(
            {}, ctx, existing_scope={"organization_id": str(contact.organization_id)}, action="delete"
        )
        organization_id = contact.organization_id
        session.delete(contact)
        session.commit()
        events.publish(
            {
                "event_type": "crm.contact.deleted",
                "organization_id": str(organization_id),
                "contact_id": str(contact_id),
                "correlation_id": ctx.correlation_id,
            }
        )

    def add_email_interaction(
        self, session: Session, ctx: AuthContext, contact_id: uuid.UUID, payload: EmailInteractionCreate
    ) -> EmailInteractionRead:
        contact = self.load(session, ctx, contact_id)
        occurred_at = payload.occurred_at or datetime.now(timezone.utc)
        interaction = ContactEmailInteraction(
            contact_id=contact.id,
            organization_id=contact.organization_id,
            direction=payload.direction,
            subject=payload.subject,
            occurred_at=occurred_at,
        )
        session.add(interaction)
        contact.last_contact_at = occurred_at
        session.commit()
        session.refresh(interaction)
        return EmailInteractionRead.model_validate(interaction)

    @staticmethod
    def count_contacts(session: Session, organization_id: uuid.UUID) -> int:
        return int(
            session.scalar(select(func.count()).select_from(Contact).where(Contact.organization_id == organization_id))
            or 0
        )

    def load(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> Contact:
        contact = session.get(Contact, contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        try:
            self.contact_repository.validate_read_scope(ctx, organization_id=contact.organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        return contact

    def _validate_write(
        self,
        data: dict[str, Any],
        ctx: AuthContext,
        *,
        existing_scope: dict[str, str | None] | None = None,
        action: str,
    ) -> None:
        try:
            self.contact_repository.validate_write_security(data, ctx, existing_scope=existing_scope, action=action)
        except ForbiddenFieldError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"forbidden_fields": exc.fields})
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    def to_contact_read(self, contact: Contact, ctx: AuthContext) -> ContactRead:
        payload = ContactRead.model_validate(contact).model_dump(mode="python")
        return ContactRead.model_validate(self.contact_repository.apply_read_security(payload, ctx))


contact_service = ContactService()
