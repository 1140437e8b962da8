from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from app import events
from app.platform.notifications.models import Notification
from app.platform.notifications.repository import NotificationRepository
from app.platform.notifications.schemas import NotificationCreate, NotificationRead
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError


@dataclass(slots=True)
class NotificationService:
    notification_repository: NotificationRepository = NotificationRepository()

    def stage(
        self,
        session: Session,
        *,
        organization_id: uuid.UUID,
        title: str,
        message: str,
        type: str = "info",
        user_id: str | None = None,
        action_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        """Add a notification to the caller's transaction without committing."""

        notification = Notification(
            organization_id=organization_id,
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            action_url=action_url,
            notification_metadata=metadata,
        )
        session.add(notification)
        return notification

    def create_notification(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: NotificationCreate
    ) -> NotificationRead:
        data = {"organization_id": organization_id, **payload.model_dump(mode="python")}
        try:
            self.notification_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        notification = self.stage(
            session,
            organization_id=organization_id,
            title=payload.title,
            message=payload.message,
            type=payload.type,
            user_id=payload.user_id,
            action_url=payload.action_url,
            metadata=payload.metadata,
        )
        session.commit()
        session.refresh(notification)
        events.publish(
            {
                "event_type": "notification.created",
                "notification_id": str(notification.id),
                "organization_id": str(organization_id),
                "user_id": notification.user_id,
                "type": notification.type,
                "correlation_id": ctx.correlation_id,
            }
        )
        return self._to_notification_read(notification, ctx)

    def get_notifications(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        *,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationRead]:
        query = self._visible(organization_id, ctx)
        if unread_only:
            query = query.where(Notification.read_at.is_(None))
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).offset(offset)
        rows = session.scalars(self.notification_repository.apply_scope_query(query, ctx)).all()
        return [self._to_notification_read(row, ctx) for row in rows]

    def get_unread_count(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> int:
        query = self._visible(organization_id, ctx).where(Notification.read_at.is_(None))
        query = self.notification_repository.apply_scope_query(query, ctx)
        return int(session.scalar(select(func.count()).select_from(query.subquery())) or 0)

    def mark_as_read(self, session: Session, ctx: AuthContext, notification_id: uuid.UUID) -> NotificationRead:
        notification = self._get_notification(session, ctx, notification_id)
        if notification.read_at is None:
            notification.read_at = datetime.now(timezone.utc)
            session.commit()
            session.refresh(notification)
        return self._to_notification_read(notification, ctx)

    def mark_all_as_read(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> int:
        result = session.execute(
            update(Notification)
            .where(
                Notification.organization_id == organization_id,
                or_(Notification.user_id == ctx.user_id, Notification.user_id.is_(None)),
                Notification.read_at.is_(None),
            )
            .values(read_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return int(result.rowcount or 0)

    def delete_notification(self, session: Session, ctx: AuthContext, notification_id: uuid.UUID) -> None:
        notification = self._get_notification(session, ctx, notification_id)
        session.delete(notification)
        session.commit()

    def _get_notification(self, session: Session, ctx: AuthContext, notification_id: uuid.UUID) -> Notification:
        notification = session.get(Notification, notification_id)
        if notification is None or notification.user_id not in (None, ctx.user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="notification not found")
        try:
            self.notification_repository.validate_read_scope(ctx, organization_id=notification.organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        return notification

    @staticmethod
    def _visible(organization_id: uuid.UUID, ctx: AuthContext):  # type: ignore[no-untyped-def]
        return select(Notification).where(
            Notification.organization_id == organization_id,
            or_(Notification.user_id == ctx.user_id, Notification.user_id.is_(None)),
        )

    def _to_notification_read(self, notification: Notification, ctx: AuthContext) -> NotificationRead:
        payload = {
            "id": notification.id,
            "organization_id": notification.organization_id,
            "user_id": notification.user_id,
            "title": notification.title,
            "message": notification.message,
            "type": notification.type,
            "action_url": notification.action_url,
            "metadata": notification.notification_metadata,
            "read_at": notification.read_at,
            "created_at": notification.created_at,
        }
        return NotificationRead.model_validate(self.notification_repository.apply_read_security(payload, ctx))


notification_service = NotificationService()
