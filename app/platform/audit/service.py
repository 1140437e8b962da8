from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import HTTPException, Request, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.context import client_ip
from app.platform.audit.models import AuditLog
from app.platform.audit.repository import AuditLogRepository
from app.platform.audit.schemas import AuditLogCreate, AuditLogPage, AuditLogRead
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AuditLogService:
    audit_log_repository: AuditLogRepository = AuditLogRepository()

    def record(
        self,
        session: Session,
        ctx: AuthContext | None,
        *,
        organization_id: uuid.UUID | None,
        action_type: str,
        entity_type: str,
        entity_id: Any = None,
        previous_state: dict[str, Any] | None = None,
        new_state: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLog:
        """Stage an audit row in the caller's transaction; the caller commits."""

        event_metadata = dict(metadata or {})
        if ctx is not None and ctx.correlation_id:
            event_metadata.setdefault("correlation_id", ctx.correlation_id)

        row = AuditLog(
            organization_id=organization_id,
            user_id=ctx.user_id if ctx is not None else None,
            action_type=action_type,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            previous_state=previous_state,
            new_state=new_state,
            event_metadata=event_metadata or None,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.add(row)
        logger.debug(
            "audit.recorded",
            extra={"organization_id": str(organization_id) if organization_id else None, "event_type": action_type},
        )
        return row

    def create_audit_log(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        payload: AuditLogCreate,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuditLogRead:
        data = {"organization_id": organization_id, **payload.model_dump(mode="python")}
        try:
            self.audit_log_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        row = self.record(
            session,
            ctx,
            organization_id=organization_id,
            action_type=payload.action_type,
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
            previous_state=payload.previous_state,
            new_state=payload.new_state,
            metadata=payload.metadata,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.commit()
        session.refresh(row)
        return self._to_audit_log_read(row, ctx)

    def create_audit_log_from_request(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        request: Request,
        payload: AuditLogCreate,
    ) -> AuditLogRead:
        return self.create_audit_log(
            session,
            ctx,
            organization_id,
            payload,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )

    def get_audit_logs(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        *,
        user_id: str | None = None,
        action_type: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> AuditLogPage:
        query = select(AuditLog).where(AuditLog.organization_id == organization_id)
        if user_id:
            query = query.where(AuditLog.user_id == user_id)
        if action_type:
            query = query.where(AuditLog.action_type == action_type)
        if entity_type:
            query = query.where(AuditLog.entity_type == entity_type)
        if entity_id:
            query = query.where(AuditLog.entity_id == entity_id)
        if from_date is not None:
            query = query.where(AuditLog.created_at >= from_date)
        if to_date is not None:
            query = query.where(AuditLog.created_at <= to_date)
        query = self.audit_log_repository.apply_scope_query(query, ctx)

        count = session.scalar(select(func.count()).select_from(query.subquery())) or 0
        rows = session.scalars(
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).offset(offset)
        ).all()
        return AuditLogPage(logs=[self._to_audit_log_read(row, ctx) for row in rows], count=int(count))

    def get_audit_log_by_id(self, session: Session, ctx: AuthContext, audit_log_id: uuid.UUID) -> AuditLogRead:
        row = session.scalar(self.audit_log_repository.apply_scope_query(select(AuditLog).where(AuditLog.id == audit_log_id), ctx))
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="audit log not found")
        return self._to_audit_log_read(row, ctx)

    def _to_audit_log_read(self, row: AuditLog, ctx: AuthContext) -> AuditLogRead:
        payload = {
            "id": row.id,
            "organization_id": row.organization_id,
            "user_id": row.user_id,
            "action_type": row.action_type,
            "entity_type": row.entity_type,
            "entity_id": row.entity_id,
            "previous_state": row.previous_state,
            "new_state": row.new_state,
            "metadata": row.event_metadata,
            "ip_address": row.ip_address,
            "user_agent": row.user_agent,
            "created_at": row.created_at,
        }
        return AuditLogRead.model_validate(self.audit_log_repository.apply_read_security(payload, ctx))


audit_log_service = AuditLogService()
