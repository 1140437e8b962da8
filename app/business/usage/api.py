from __future__ import annotations

import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.business.usage.limits import (
    AILimitExceeded,
    check_ai_limits_with_topup,
    get_required_feature,
    get_usage_status,
    limit_denied_response,
    log_ai_usage_with_topup,
)
from app.business.usage.schemas import (
    AILimitResult,
    AIRequestCheck,
    CurrentUsageRead,
    FeatureCheckRead,
    MonthlyUsageRead,
    PurchaseComplete,
    PurchaseCreate,
    PurchaseRead,
    TopUpBalanceRead,
    TopUpPackageRead,
    TopUpRecommendationRead,
    TopUpStatisticsRead,
    UsageLimitRead,
    UsageLogCreate,
    UsageLogResult,
    UsagePercentageRead,
    UsageRecordRead,
    UsageStatusRead,
)
from app.business.usage.service import ai_usage_service, topup_service
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context, require_organization


router = APIRouter(prefix="/api/usage", tags=["usage"])
topup_router = APIRouter(prefix="/api/topup", tags=["topup"])


@router.get("/current", response_model=CurrentUsageRead)
def get_current_usage(session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> CurrentUsageRead:
    return ai_usage_service.get_current_usage(session, ctx, require_organization(ctx))


@router.get("/limit", response_model=UsageLimitRead)
def get_limit(session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> UsageLimitRead:
    return ai_usage_service.check_limit_exceeded(session, ctx, require_organization(ctx))


@router.get("/percentage", response_model=UsagePercentageRead)
def get_usage_percentage(
    session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)
) -> UsagePercentageRead:
    return UsagePercentageRead(percentage=ai_usage_service.get_usage_percentage(session, ctx, require_organization(ctx)))


@router.get("/history", response_model=list[UsageRecordRead])
def get_usage_history(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[UsageRecordRead]:
    return ai_usage_service.get_usage_history(session, ctx, require_organization(ctx), limit=limit, offset=offset)


@router.get("/monthly", response_model=MonthlyUsageRead)
def get_monthly_usage(session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> MonthlyUsageRead:
    return ai_usage_service.get_monthly_usage(session, ctx, require_organization(ctx))


@router.get("/features/{feature}", response_model=FeatureCheckRead)
def check_feature(
    feature: str,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> FeatureCheckRead:
    organization_id = require_organization(ctx)
    return FeatureCheckRead(feature=feature, has_access=ai_usage_service.has_feature_access(session, organization_id, feature))


@router.get("/status", response_model=UsageStatusRead)
def get_status(session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> UsageStatusRead:
    return get_usage_status(session, ctx, require_organization(ctx))


@router.post("/check", response_model=AILimitResult)
def check_request(
    payload: AIRequestCheck,
    request: Request,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> AILimitResult | JSONResponse:
    organization_id = require_organization(ctx)
    result = check_ai_limits_with_topup(
        session, ctx, organization_id, payload.request_type, get_required_feature(payload.request_type)
    )
    if not result.allowed:
        return limit_denied_response(request, result)
    return result


@router.post("/log", response_model=UsageLogResult, status_code=status.HTTP_201_CREATED)
def log_usage(
    payload: UsageLogCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> UsageLogResult:
    return log_ai_usage_with_topup(
        session,
        ctx,
        require_organization(ctx),
        payload.message_type,
        tokens_used=payload.tokens_used,
        cost_usd=payload.cost_usd,
        feature_used=payload.feature_used,
        metadata=payload.metadata,
    )


@router.post("/messages", response_model=UsageLogResult, status_code=status.HTTP_201_CREATED)
def record_gated_message(
    payload: UsageLogCreate,
    request: Request,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> UsageLogResult:
    """Gate one AI message and meter it, consuming top-up or grace allowance past the plan limit."""

    organization_id = require_organization(ctx)
    required_feature = get_required_feature(payload.message_type)
    result = check_ai_limits_with_topup(session, ctx, organization_id, payload.message_type, required_feature)
    if not result.allowed:
        raise AILimitExceeded(result)

    metadata = {
        **payload.metadata,
        "endpoint": request.url.path,
        "method": request.method,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "grace_buffer": result.used_grace,
    }
    return log_ai_usage_with_topup(
        session,
        ctx,
        organization_id,
        payload.message_type,
        tokens_used=payload.tokens_used,
        cost_usd=payload.cost_usd,
        feature_used=payload.feature_used or required_feature,
        metadata=metadata,
    )


@topup_router.get("/packages", response_model=list[TopUpPackageRead])
def list_packages() -> list[TopUpPackageRead]:
    return topup_service.get_available_packages()


@topup_router.get("/balance", response_model=TopUpBalanceRead)
def get_balance(session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> TopUpBalanceRead:
    return topup_service.get_balance(session, ctx, require_organization(ctx))


@topup_router.post("/purchases", response_model=PurchaseRead, status_code=status.HTTP_201_CREATED)
def create_purchase(
    payload: PurchaseCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PurchaseRead:
    return topup_service.create_purchase(session, ctx, require_organization(ctx), payload)


@topup_router.get("/purchases", response_model=list[PurchaseRead])
def get_purchase_history(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[PurchaseRead]:
    return topup_service.get_purchase_history(session, ctx, require_organization(ctx), limit=limit, offset=offset)


@topup_router.get("/purchases/pending", response_model=list[PurchaseRead])
def get_pending_purchases(
    session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)
) -> list[PurchaseRead]:
    return topup_service.get_pending_purchases(session, ctx, require_organization(ctx))


@topup_router.post("/purchases/{purchase_id}/complete", response_model=PurchaseRead)
def complete_purchase(
    purchase_id: uuid.UUID,
    payload: PurchaseComplete,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PurchaseRead:
    return topup_service.complete_purchase(session, ctx, purchase_id, payload)


@topup_router.get("/recommendation", response_model=TopUpRecommendationRead)
def get_recommendation(
    needed_messages: int | None = Query(default=None, ge=1),
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TopUpRecommendationRead:
    check = ai_usage_service.check_limit_exceeded(session, ctx, require_organization(ctx))
    return topup_service.recommend_top_up(check.current_usage, check.limit_amount, needed_messages)


@topup_router.get("/statistics", response_model=TopUpStatisticsRead)
def get_statistics(session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> TopUpStatisticsRead:
    return topup_service.get_statistics(session, ctx, require_organization(ctx))
