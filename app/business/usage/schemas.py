from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

MessageType = Literal["email_response", "ai_future", "profiling", "general", "drafting"]


class UsageLogCreate(BaseModel):
    message_type: MessageType
    tokens_used: int = Field(default=1, ge=0)
    cost_usd: Decimal = Field(default=Decimal("0"), ge=0)
    feature_used: str | None = Field(default=None, max_length=64)
    metadata: dict[str, Any] = Field(default_factory=dict)


class UsageRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    user_id: str
    message_type: str
    tokens_used: int
    cost_usd: Decimal
    feature_used: str | None
    metadata: dict[str, Any] | None
    created_at: datetime


class CurrentUsageRead(BaseModel):
    current_messages: int
    current_tokens: int
    current_cost: Decimal
    period_start: date
    period_end: date


class UsageLimitRead(BaseModel):
    limit_exceeded: bool
    current_usage: int
    limit_amount: int
    remaining: int


class MonthlyUsageRead(BaseModel):
    total_messages: int
    total_tokens: int
    total_cost: Decimal
    breakdown: dict[str, int]


class UsagePercentageRead(BaseModel):
    percentage: int


class FeatureCheckRead(BaseModel):
    feature: str
    has_access: bool


class TopUpPackageRead(BaseModel):
    id: str
    name: str
    description: str
    messages: int
    price_usd: float
    price_per_message: float
    discount_percent: int | None = None
    popular: bool = False


class ActiveTopUp(BaseModel):
    id: UUID
    package_id: str
    messages_remaining: int
    expires_at: datetime | None
    created_at: datetime


class TopUpBalanceRead(BaseModel):
    total_messages_available: int = 0
    total_purchases: int = 0
    total_spent: Decimal = Decimal("0")
    active_topups: list[ActiveTopUp] = Field(default_factory=list)


class TopUpUsed(BaseModel):
    topup_id: UUID
    package_id: str
    messages_used: int


class TopUpUsageResult(BaseModel):
    messages_used: int = 0
    topups_used: list[TopUpUsed] = Field(default_factory=list)
    success: bool = False


class PurchaseCreate(BaseModel):
    package_id: str = Field(min_length=1, max_length=32)
    payment_provider: str = Field(default="stripe", max_length=32)


class PurchaseComplete(BaseModel):
    payment_provider_id: str = Field(min_length=1, max_length=128)


class PurchaseRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    user_id: str
    package_id: str
    messages_purchased: int
    messages_remaining: int
    price_paid: Decimal
    payment_status: str
    payment_provider: str | None
    payment_provider_id: str | None
    expires_at: datetime | None
    created_at: datetime
    updated_at: datetime


class TopUpRecommendationRead(BaseModel):
    recommended: TopUpPackageRead
    reasoning: str
    urgency: Literal["low", "medium", "high"]


class UpgradeNudge(BaseModel):
    suggest_upgrade: bool = False
    message: str = ""


class TopUpStatisticsRead(BaseModel):
    total_purchased: int = 0
    total_spent: Decimal = Decimal("0")
    total_used: int = 0
    average_package_size: float = 0
    most_popular_package: str = "none"
    monthly_spending: Decimal = Decimal("0")
    upgrade_nudge: UpgradeNudge = Field(default_factory=UpgradeNudge)


class AILimitResult(BaseModel):
    allowed: bool
    reason: str | None = None
    current_usage: int | None = None
    limit: int | None = None
    remaining: int | None = None
    upgrade_required: bool = False
    feature_restricted: bool = False
    topup_available: bool | None = None
    topup_balance: int | None = None
    used_topup: bool = False
    used_grace: bool = False


class AIRequestCheck(BaseModel):
    request_type: MessageType


class UsageLogResult(BaseModel):
    usage_id: UUID | None
    used_topup: bool
    topup_usage: TopUpUsageResult | None = None


class SubscriptionUsageStatus(BaseModel):
    current: int
    limit: int
    remaining: int
    exceeded: bool


class TopUpUsageStatus(BaseModel):
    available: int
    total_spent: Decimal
    total_purchases: int


class TotalUsageStatus(BaseModel):
    available: int
    can_make_request: bool


class UsageStatusRead(BaseModel):
    subscription: SubscriptionUsageStatus
    topup: TopUpUsageStatus
    total: TotalUsageStatus
