from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.platform.notifications.ai import ai_notification_service
from app.platform.notifications.schemas import (
    AILearningStats,
    LearningQuality,
    LearningTrigger,
    MarkAllReadResult,
    Milestone,
    NotificationCreate,
    NotificationRead,
    UnreadCountRead,
    WeeklyLearningStats,
)
from app.platform.notifications.service import notification_service
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context, require_organization


router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class LearningQualityRequest(BaseModel):
    quality: LearningQuality
    suggestion: str | None = None


class LearningStartedRequest(BaseModel):
    trigger: LearningTrigger


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[NotificationRead]:
    return notification_service.get_notifications(
        db, ctx, require_organization(ctx), unread_only=unread_only, limit=limit, offset=offset
    )


@router.post("", response_model=NotificationRead, status_code=status.HTTP_201_CREATED)
def create_notification(
    payload: NotificationCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> NotificationRead:
    return notification_service.create_notification(db, ctx, require_organization(ctx), payload)


@router.get("/unread-count", response_model=UnreadCountRead)
def unread_count(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> UnreadCountRead:
    return UnreadCountRead(count=notification_service.get_unread_count(db, ctx, require_organization(ctx)))


@router.post("/read-all", response_model=MarkAllReadResult)
def mark_all_read(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> MarkAllReadResult:
    return MarkAllReadResult(updated=notification_service.mark_all_as_read(db, ctx, require_organization(ctx)))


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_read(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> NotificationRead:
    return notification_service.mark_as_read(db, ctx, notification_id)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_notification(
    notification_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    notification_service.delete_notification(db, ctx, notification_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/ai/initial-learning-complete", response_model=NotificationRead, status_code=status.HTTP_201_CREATED)
def ai_initial_learning_complete(
    payload: AILearningStats,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> NotificationRead:
    return ai_notification_service.send_initial_learning_complete(db, ctx, require_organization(ctx), ctx.user_id, payload)


@router.post("/ai/weekly-update", response_model=NotificationRead | None)
def ai_weekly_update(
    payload: WeeklyLearningStats,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> NotificationRead | None:
    return ai_notification_service.send_weekly_learning_update(db, ctx, require_organization(ctx), ctx.user_id, payload)


@router.post("/ai/milestone", response_model=NotificationRead | None)
def ai_milestone(
    payload: Milestone,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> NotificationRead | None:
    return ai_notification_service.send_milestone_achieved(db, ctx, require_organization(ctx), ctx.user_id, payload)


@router.post("/ai/learning-quality", response_model=NotificationRead | None)
def ai_learning_quality(
    payload: LearningQualityRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> NotificationRead | None:
    return ai_notification_service.send_learning_quality_update(
        db, ctx, require_organization(ctx), ctx.user_id, payload.quality, payload.suggestion
    )


@router.post("/ai/learning-started", response_model=NotificationRead | None)
def ai_learning_started(
    payload: LearningStartedRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> NotificationRead | None:
    return ai_notification_service.send_learning_started(db, ctx, require_organization(ctx), ctx.user_id, payload.trigger)
