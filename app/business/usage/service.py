from __future__ import annotations

import calendar
import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app import events
from app.business.subscription import plans as catalog
from app.business.usage.models import AIUsageRecord, TopUpPurchase
from app.business.usage.repository import AIUsageRepository, TopUpPurchaseRepository
from app.business.usage.schemas import (
    ActiveTopUp,
    CurrentUsageRead,
    MonthlyUsageRead,
    PurchaseComplete,
    PurchaseCreate,
    PurchaseRead,
    TopUpBalanceRead,
    TopUpPackageRead,
    TopUpRecommendationRead,
    TopUpStatisticsRead,
    TopUpUsageResult,
    TopUpUsed,
    UpgradeNudge,
    UsageLimitRead,
    UsageLogCreate,
    UsageRecordRead,
)
from app.core.clock import ensure_utc
from app.metrics import observe_ai_usage
from app.platform.organizations.models import Organization
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError

logger = logging.getLogger(__name__)

UPGRADE_NUDGE_THRESHOLD = Decimal("20")


def month_bounds(now: datetime | None = None) -> tuple[datetime, datetime]:
    """Start of the current UTC calendar month and start of the next one."""

    now = ensure_utc(now or datetime.now(timezone.utc))
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    days = calendar.monthrange(start.year, start.month)[1]
    return start, start + timedelta(days=days)


@dataclass(slots=True)
class AIUsageService:
    usage_repository: AIUsageRepository = AIUsageRepository()

    def log_usage(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        payload: UsageLogCreate,
    ) -> UsageRecordRead:
        data = {"organization_id": organization_id, **payload.model_dump(mode="python")}
        try:
            self.usage_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        record = AIUsageRecord(
            organization_id=organization_id,
            user_id=ctx.user_id,
            message_type=payload.message_type,
            tokens_used=payload.tokens_used,
            cost_usd=payload.cost_usd,
            feature_used=payload.feature_used,
            usage_metadata=payload.metadata or None,
        )
        session.add(record)
        session.commit()
        session.refresh(record)

        observe_ai_usage(payload.message_type)
        logger.info(
            "usage.logged",
            extra={"organization_id": str(organization_id), "message_type": payload.message_type},
        )
        return self._to_record_read(record, ctx)

    def get_current_usage(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, *, now: datetime | None = None
    ) -> CurrentUsageRead:
        self._check_scope(ctx, organization_id)
        start, end = month_bounds(now)
        messages, tokens, cost = session.execute(
            select(
                func.count(AIUsageRecord.id),
                func.coalesce(func.sum(AIUsageRecord.tokens_used), 0),
                func.coalesce(func.sum(AIUsageRecord.cost_usd), 0),
            ).where(
                AIUsageRecord.organization_id == organization_id,
                AIUsageRecord.created_at >= start,
                AIUsageRecord.created_at < end,
            )
        ).one()
        return CurrentUsageRead(
            current_messages=int(messages or 0),
            current_tokens=int(tokens or 0),
            current_cost=Decimal(str(cost or 0)),
            period_start=start.date(),
            period_end=(end - timedelta(days=1)).date(),
        )

    def get_message_limit(self, session: Session, organization_id: uuid.UUID) -> int:
        organization = session.get(Organization, organization_id)
        if organization is None:
            return catalog.DEFAULT_MESSAGE_LIMIT
        return catalog.message_limit_for_tier((organization.subscription_tier or "").lower())

    def check_limit_exceeded(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, *, now: datetime | None = None
    ) -> UsageLimitRead:
        usage = self.get_current_usage(session, ctx, organization_id, now=now).current_messages
        limit = self.get_message_limit(session, organization_id)
        if limit == catalog.UNLIMITED:
            return UsageLimitRead(limit_exceeded=False, current_usage=usage, limit_amount=limit, remaining=catalog.UNLIMITED)
        return UsageLimitRead(
            limit_exceeded=usage >= limit,
            current_usage=usage,
            limit_amount=limit,
            remaining=max(0, limit - usage),
        )

    def can_make_request(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> bool:
        return not self.check_limit_exceeded(session, ctx, organization_id).limit_exceeded

    def get_usage_percentage(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> int:
        check = self.check_limit_exceeded(session, ctx, organization_id)
        if check.limit_amount == catalog.UNLIMITED:
            return 0
        if check.limit_amount == 0:
            return 100
        return round(check.current_usage / check.limit_amount * 100)

    def get_usage_history(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> list[UsageRecordRead]:
        query = select(AIUsageRecord).where(AIUsageRecord.organization_id == organization_id)
        query = self.usage_repository.apply_scope_query(query, ctx)
        rows = session.scalars(
            query.order_by(AIUsageRecord.created_at.desc(), AIUsageRecord.id.desc()).limit(limit).offset(offset)
        ).all()
        return [self._to_record_read(row, ctx) for row in rows]

    def get_monthly_usage(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, *, now: datetime | None = None
    ) -> MonthlyUsageRead:
        self._check_scope(ctx, organization_id)
        start, end = month_bounds(now)
        rows = session.execute(
            select(
                AIUsageRecord.message_type,
                func.count(AIUsageRecord.id),
                func.coalesce(func.sum(AIUsageRecord.tokens_used), 0),
                func.coalesce(func.sum(AIUsageRecord.cost_usd), 0),
            )
            .where(
                AIUsageRecord.organization_id == organization_id,
                AIUsageRecord.created_at >= start,
                AIUsageRecord.created_at < end,
            )
            .group_by(AIUsageRecord.message_type)
        ).all()

        breakdown = {message_type: int(count) for message_type, count, _, _ in rows}
        return MonthlyUsageRead(
            total_messages=sum(breakdown.values()),
            total_tokens=sum(int(tokens or 0) for _, _, tokens, _ in rows),
            total_cost=sum((Decimal(str(cost or 0)) for _, _, _, cost in rows), Decimal("0")),
            breakdown=breakdown,
        )

    def has_feature_access(self, session: Session, organization_id: uuid.UUID, feature: str) -> bool:
        organization = session.get(Organization, organization_id)
        if organization is None:
            return False
        plan = catalog.get_plan((organization.subscription_tier or "").lower())
        if plan is None:
            return False
        return bool(plan.features.get(feature))

    def count_grace_messages(self, session: Session, organization_id: uuid.UUID, *, now: datetime | None = None) -> int:
        start, _ = month_bounds(now)
        rows = session.scalars(
            select(AIUsageRecord.usage_metadata).where(
                AIUsageRecord.organization_id == organization_id,
                AIUsageRecord.created_at >= start,
            )
        ).all()
        return sum(1 for metadata in rows if isinstance(metadata, dict) and metadata.get("grace_buffer") is True)

    def _check_scope(self, ctx: AuthContext, organization_id: uuid.UUID) -> None:
        try:
            self.usage_repository.validate_read_scope(ctx, organization_id=organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    def _to_record_read(self, row: AIUsageRecord, ctx: AuthContext) -> UsageRecordRead:
        payload = {
            "id": row.id,
            "organization_id": row.organization_id,
            "user_id": row.user_id,
            "message_type": row.message_type,
            "tokens_used": row.tokens_used,
            "cost_usd": row.cost_usd,
            "feature_used": row.feature_used,
            "metadata": row.usage_metadata,
            "created_at": row.created_at,
        }
        return UsageRecordRead.model_validate(self.usage_repository.apply_read_security(payload, ctx))


@dataclass(slots=True)
class TopUpService:
    purchase_repository: TopUpPurchaseRepository = TopUpPurchaseRepository()

    @staticmethod
    def get_available_packages() -> list[TopUpPackageRead]:
        return [TopUpPackageRead(**catalog.package_as_dict(package)) for package in catalog.TOPUP_PACKAGES]

    def get_balance(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, *, now: datetime | None = None
    ) -> TopUpBalanceRead:
        self._check_scope(ctx, organization_id)
        completed = self._completed_purchases(session, organization_id)
        active = self._active_purchases(completed, now)
        return TopUpBalanceRead(
            total_messages_available=sum(purchase.messages_remaining for purchase in active),
            total_purchases=len(completed),
            total_spent=sum((Decimal(purchase.price_paid) for purchase in completed), Decimal("0")),
            active_topups=[
                ActiveTopUp(
                    id=purchase.id,
                    package_id=purchase.package_id,
                    messages_remaining=purchase.messages_remaining,
                    expires_at=purchase.expires_at,
                    created_at=purchase.created_at,
                )
                for purchase in active
            ],
        )

    def has_available_messages(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, messages_needed: int = 1
    ) -> bool:
        return self.get_balance(session, ctx, organization_id).total_messages_available >= messages_needed

    def use_messages(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        messages_needed: int,
        *,
        now: datetime | None = None,
    ) -> TopUpUsageResult:
        """Consume top-up messages oldest purchase first; nothing is consumed when the balance is short."""

        self._check_scope(ctx, organization_id)
        active = self._active_purchases(self._completed_purchases(session, organization_id), now)
        if messages_needed <= 0 or sum(purchase.messages_remaining for purchase in active) < messages_needed:
            return TopUpUsageResult(success=False)

        outstanding = messages_needed
        used: list[TopUpUsed] = []
        for purchase in active:
            if outstanding == 0:
                break
            take = min(outstanding, purchase.messages_remaining)
            purchase.messages_remaining -= take
            outstanding -= take
            used.append(TopUpUsed(topup_id=purchase.id, package_id=purchase.package_id, messages_used=take))
        session.commit()

        logger.info(
            "topup.messages_used",
            extra={"organization_id": str(organization_id), "messages": messages_needed},
        )
        return TopUpUsageResult(messages_used=messages_needed, topups_used=used, success=True)

    def create_purchase(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: PurchaseCreate
    ) -> PurchaseRead:
        package = catalog.get_topup_package(payload.package_id)
        if package is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="top-up package not found")

        data = {"organization_id": organization_id, **payload.model_dump(mode="python")}
        try:
            self.purchase_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        purchase = TopUpPurchase(
            organization_id=organization_id,
            user_id=ctx.user_id,
            package_id=package.id,
            messages_purchased=package.messages,
            messages_remaining=package.messages,
            price_paid=Decimal(str(package.price_usd)),
            payment_status="pending",
            payment_provider=payload.payment_provider,
        )
        session.add(purchase)
        session.commit()
        session.refresh(purchase)

        events.publish(
            {
                "event_type": "topup.purchase_created",
                "purchase_id": str(purchase.id),
                "organization_id": str(organization_id),
                "package_id": package.id,
                "correlation_id": ctx.correlation_id,
            }
        )
        return self._to_purchase_read(purchase, ctx)

    def complete_purchase(
        self, session: Session, ctx: AuthContext, purchase_id: uuid.UUID, payload: PurchaseComplete
    ) -> PurchaseRead:
        purchase = session.scalar(
            self.purchase_repository.apply_scope_query(select(TopUpPurchase).where(TopUpPurchase.id == purchase_id), ctx)
        )
        if purchase is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="top-up purchase not found")
        if purchase.payment_status != "pending":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="top-up purchase is not pending")

        purchase.payment_status = "completed"
        purchase.payment_provider_id = payload.payment_provider_id
        session.commit()
        session.refresh(purchase)

        events.publish(
            {
                "event_type": "topup.purchase_completed",
                "purchase_id": str(purchase.id),
                "organization_id": str(purchase.organization_id),
                "messages": purchase.messages_purchased,
                "correlation_id": ctx.correlation_id,
            }
        )
        return self._to_purchase_read(purchase, ctx)

    def get_purchase_history(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PurchaseRead]:
        query = select(TopUpPurchase).where(TopUpPurchase.organization_id == organization_id)
        query = self.purchase_repository.apply_scope_query(query, ctx)
        rows = session.scalars(
            query.order_by(TopUpPurchase.created_at.desc(), TopUpPurchase.id.desc()).limit(limit).offset(offset)
        ).all()
        return [self._to_purchase_read(row, ctx) for row in rows]

    def get_pending_purchases(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> list[PurchaseRead]:
        query = select(TopUpPurchase).where(
            TopUpPurchase.organization_id == organization_id,
            TopUpPurchase.payment_status == "pending",
        )
        query = self.purchase_repository.apply_scope_query(query, ctx)
        rows = session.scalars(query.order_by(TopUpPurchase.created_at.desc())).all()
        return [self._to_purchase_read(row, ctx) for row in rows]

    @staticmethod
    def recommend_top_up(
        current_usage: int, limit: int, needed_messages: int | None = None
    ) -> TopUpRecommendationRead:
        """Suggest a package from usage pressure, or from an explicit message need when one is given."""

        if limit == catalog.UNLIMITED:
            usage_percent = 0.0
        elif limit <= 0:
            usage_percent = 100.0
        else:
            usage_percent = current_usage / limit * 100

        if usage_percent >= 90:
            needed = max(100, int(limit * 0.5))
            urgency = "high"
            reasoning = "You've used 90%+ of your messages. We recommend purchasing extra messages now."
        elif usage_percent >= 70:
            needed = max(100, int(limit * 0.3))
            urgency = "medium"
            reasoning = "You're approaching your limit. Consider purchasing extra messages soon."
        else:
            needed = 100
            urgency = "low"
            reasoning = "You have plenty of messages remaining, but you can always stock up."

        if needed_messages is not None:
            package = catalog.recommend_topup_package(needed_messages)
            reasoning = f"The {package.name} pack covers the {needed_messages} extra messages you expect to need."
        else:
            package = next(
                (candidate for candidate in catalog.TOPUP_PACKAGES if candidate.messages >= needed),
                catalog.TOPUP_PACKAGES[-1],
            )
        return TopUpRecommendationRead(
            recommended=TopUpPackageRead(**catalog.package_as_dict(package)),
            reasoning=reasoning,
            urgency=urgency,
        )

    def get_statistics(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, *, now: datetime | None = None
    ) -> TopUpStatisticsRead:
        self._check_scope(ctx, organization_id)
        completed = self._completed_purchases(session, organization_id)
        if not completed:
            return TopUpStatisticsRead()

        total_purchased = sum(purchase.messages_purchased for purchase in completed)
        total_remaining = sum(purchase.messages_remaining for purchase in completed)
        total_spent = sum((Decimal(purchase.price_paid) for purchase in completed), Decimal("0"))

        window_start = ensure_utc(now or datetime.now(timezone.utc)) - timedelta(days=30)
        monthly_spending = sum(
            (Decimal(purchase.price_paid) for purchase in completed if ensure_utc(purchase.created_at) >= window_start),
            Decimal("0"),
        )
        suggest_upgrade = monthly_spending >= UPGRADE_NUDGE_THRESHOLD
        most_popular = Counter(purchase.package_id for purchase in completed).most_common(1)[0][0]

        return TopUpStatisticsRead(
            total_purchased=total_purchased,
            total_spent=total_spent,
            total_used=total_purchased - total_remaining,
            average_package_size=total_purchased / len(completed),
            most_popular_package=most_popular,
            monthly_spending=monthly_spending,
            upgrade_nudge=UpgradeNudge(
                suggest_upgrade=suggest_upgrade,
                message="You might save by upgrading your plan based on recent top-up spending." if suggest_upgrade else "",
            ),
        )

    @staticmethod
    def _completed_purchases(session: Session, organization_id: uuid.UUID) -> list[TopUpPurchase]:
        return list(
            session.scalars(
                select(TopUpPurchase)
                .where(
                    TopUpPurchase.organization_id == organization_id,
                    TopUpPurchase.payment_status == "completed",
                )
                .order_by(TopUpPurchase.created_at.asc(), TopUpPurchase.id.asc())
            ).all()
        )

    @staticmethod
    def _active_purchases(purchases: list[TopUpPurchase], now: datetime | None) -> list[TopUpPurchase]:
        current = ensure_utc(now or datetime.now(timezone.utc))
        return [
            purchase
            for purchase in purchases
            if purchase.messages_remaining > 0
            and (purchase.expires_at is None or ensure_utc(purchase.expires_at) > current)
        ]

    def _check_scope(self, ctx: AuthContext, organization_id: uuid.UUID) -> None:
        try:
            self.purchase_repository.validate_read_scope(ctx, organization_id=organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    def _to_purchase_read(self, row: TopUpPurchase, ctx: AuthContext) -> PurchaseRead:
        payload = {
            "id": row.id,
            "organization_id": row.organization_id,
            "user_id": row.user_id,
            "package_id": row.package_id,
            "messages_purchased": row.messages_purchased,
            "messages_remaining": row.messages_remaining,
            "price_paid": row.price_paid,
            "payment_status": row.payment_status,
            "payment_provider": row.payment_provider,
            "payment_provider_id": row.payment_provider_id,
            "expires_at": row.expires_at,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }
        return PurchaseRead.model_validate(self.purchase_repository.apply_read_security(payload, ctx))


ai_usage_service = AIUsageService()
topup_service = TopUpService()
