"""AI request gating: plan features, monthly message limits, top-up balance and the grace buffer."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import error_response
from app.business.usage.schemas import (
    AILimitResult,
    MessageType,
    SubscriptionUsageStatus,
    TopUpUsageStatus,
    TotalUsageStatus,
    UsageLogCreate,
    UsageLogResult,
    UsageStatusRead,
)
from app.business.usage.service import ai_usage_service, topup_service
from app.core.config import get_settings
from app.metrics import observe_ai_limit_denial
from app.platform.security.context import AuthContext

logger = logging.getLogger(__name__)

AI_FEATURE_MAPPING: dict[str, str | None] = {
    "email_response": "AI_DRAFTING_ASSISTANCE",
    "ai_future": "AI_FUTURE_ACCESS",
    "profiling": "PSYCHOLOGICAL_PROFILING",
    "general": None,
    "drafting": "AI_DRAFTING_ASSISTANCE",
}

UPGRADE_URL = "/pricing"
TOPUP_PACKAGES_URL = "/api/topup/packages"


class AILimitExceeded(Exception):
    """Raised by gated endpoints; rendered as a 402/429 error envelope."""

    def __init__(self, result: AILimitResult) -> None:
        super().__init__(result.reason or "AI request not allowed")
        self.result = result


def get_required_feature(request_type: str) -> str | None:
    return AI_FEATURE_MAPPING.get(request_type)


def check_ai_limits_with_topup(
    session: Session,
    ctx: AuthContext,
    organization_id: uuid.UUID,
    request_type: MessageType,
    required_feature: str | None = None,
    *,
    now: datetime | None = None,
) -> AILimitResult:
    if required_feature and not ai_usage_service.has_feature_access(session, organization_id, required_feature):
        return AILimitResult(
            allowed=False,
            reason=f"Feature '{required_feature}' is not available in your subscription plan",
            feature_restricted=True,
            upgrade_required=True,
        )

    check = ai_usage_service.check_limit_exceeded(session, ctx, organization_id, now=now)
    if not check.limit_exceeded:
        return AILimitResult(
            allowed=True,
            current_usage=check.current_usage,
            limit=check.limit_amount,
            remaining=check.remaining,
            topup_available=False,
        )

    balance = topup_service.get_balance(session, ctx, organization_id, now=now)
    if balance.total_messages_available > 0:
        return AILimitResult(
            allowed=True,
            current_usage=check.current_usage,
            limit=check.limit_amount,
            remaining=check.remaining,
            topup_available=True,
            topup_balance=balance.total_messages_available,
            used_topup=True,
        )

    grace_used = ai_usage_service.count_grace_messages(session, organization_id, now=now)
    if grace_used < get_settings().ai_grace_messages:
        logger.info(
            "usage.grace_allowed",
            extra={"organization_id": str(organization_id), "messages": grace_used + 1},
        )
        return AILimitResult(
            allowed=True,
            current_usage=check.current_usage,
            limit=check.limit_amount,
            remaining=check.remaining,
            topup_available=False,
            topup_balance=0,
            used_grace=True,
        )

    return AILimitResult(
        allowed=False,
        reason=(
            f"AI message limit exceeded. You've used {check.current_usage} of {check.limit_amount} "
            "messages this month. Purchase a top-up to continue."
        ),
        current_usage=check.current_usage,
        limit=check.limit_amount,
        remaining=check.remaining,
        upgrade_required=True,
        topup_available=False,
        topup_balance=0,
    )


def limit_denied_response(request: Request, result: AILimitResult) -> JSONResponse:
    """402 ``UPGRADE_REQUIRED`` when buying more helps, 429 ``LIMIT_EXCEEDED`` otherwise."""

    observe_ai_limit_denial("feature" if result.feature_restricted else "limit")
    actions = None
    if result.upgrade_required:
        actions = {
            "upgrade": UPGRADE_URL,
            "topup": TOPUP_PACKAGES_URL if result.topup_balance == 0 else None,
        }
    return error_response(
        request,
        status_code=status.HTTP_402_PAYMENT_REQUIRED if result.upgrade_required else status.HTTP_429_TOO_MANY_REQUESTS,
        code="UPGRADE_REQUIRED" if result.upgrade_required else "LIMIT_EXCEEDED",
        message=result.reason or "AI request not allowed",
        details={
            "current_usage": result.current_usage,
            "limit": result.limit,
            "remaining": result.remaining,
            "feature_restricted": result.feature_restricted,
            "upgrade_required": result.upgrade_required,
            "topup_available": result.topup_available,
            "topup_balance": result.topup_balance,
            "used_grace": result.used_grace,
        },
        actions=actions,
    )


async def ai_limit_exception_handler(request: Request, exc: AILimitExceeded) -> JSONResponse:
    return limit_denied_response(request, exc.result)


def log_ai_usage_with_topup(
    session: Session,
    ctx: AuthContext,
    organization_id: uuid.UUID,
    message_type: MessageType,
    *,
    tokens_used: int = 1,
    cost_usd: Decimal = Decimal("0"),
    feature_used: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> UsageLogResult:
    record = ai_usage_service.log_usage(
        session,
        ctx,
        organization_id,
        UsageLogCreate(
            message_type=message_type,
            tokens_used=tokens_used,
            cost_usd=cost_usd,
            feature_used=feature_used,
            metadata=metadata or {},
        ),
    )

    check = ai_usage_service.check_limit_exceeded(session, ctx, organization_id)
    if not check.limit_exceeded:
        return UsageLogResult(usage_id=record.id, used_topup=False)

    topup_usage = topup_service.use_messages(session, ctx, organization_id, 1)
    if not topup_usage.success:
        logger.warning("usage.topup_unavailable", extra={"organization_id": str(organization_id)})
        return UsageLogResult(usage_id=record.id, used_topup=False)
    return UsageLogResult(usage_id=record.id, used_topup=True, topup_usage=topup_usage)


def get_usage_status(session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> UsageStatusRead:
    check = ai_usage_service.check_limit_exceeded(session, ctx, organization_id)
    balance = topup_service.get_balance(session, ctx, organization_id)

    subscription_remaining = max(0, check.remaining)
    total_available = subscription_remaining + balance.total_messages_available
    return UsageStatusRead(
        subscription=SubscriptionUsageStatus(
            current=check.current_usage,
            limit=check.limit_amount,
            remaining=subscription_remaining,
            exceeded=check.limit_exceeded,
        ),
        topup=TopUpUsageStatus(
            available=balance.total_messages_available,
            total_spent=balance.total_spent,
            total_purchases=balance.total_purchases,
        ),
        total=TotalUsageStatus(
            available=total_available,
            # Unlimited plans report remaining as -1.
            can_make_request=total_available > 0 or check.limit_amount == -1,
        ),
    )
