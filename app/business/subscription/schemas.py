from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


BillingInterval = Literal["monthly", "yearly"]
SubscriptionStatus = Literal["active", "trialing", "trial", "past_due", "canceled", "expired"]
InvoiceStatus = Literal["paid", "unpaid", "void"]
SubscriptionFit = Literal["perfect", "tight", "over", "under"]
Urgency = Literal["low", "medium", "high"]


class PlanCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    price: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    billing_interval: BillingInterval = "monthly"
    features: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    stripe_price_id: str | None = None


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=Decimal("0"))
    billing_interval: BillingInterval | None = None
    features: dict[str, Any] | None = None
    is_active: bool | None = None
    stripe_price_id: str | None = None


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str
    price: Decimal | str
    billing_interval: BillingInterval | str
    features: dict[str, Any]
    is_active: bool
    stripe_price_id: str | None
    created_at: datetime
    updated_at: datetime


class SubscriptionCreate(BaseModel):
    subscription_plan_id: UUID
    status: SubscriptionStatus = "active"
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    payment_method_id: str | None = None
    subscription_provider: str = "system"
    provider_subscription_id: str | None = None
    metadata: dict[str, Any] | None = None


class SubscriptionUpdate(BaseModel):
    subscription_plan_id: UUID | None = None
    status: SubscriptionStatus | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool | None = None
    payment_method_id: str | None = None
    metadata: dict[str, Any] | None = None


class TrialSubscriptionCreate(BaseModel):
    subscription_plan_id: UUID
    is_organization: bool = False


class SubscriptionRead(BaseModel):
    id: UUID
    organization_id: UUID
    subscription_plan_id: UUID
    status: SubscriptionStatus | str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    payment_method_id: str | None
    subscription_provider: str
    provider_subscription_id: str | None
    metadata: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    plan: PlanRead | None = None


class InvoiceCreate(BaseModel):
    subscription_id: UUID | None = None
    amount: Decimal = Field(ge=Decimal("0"))
    status: InvoiceStatus = "unpaid"
    due_date: datetime | None = None
    paid_at: datetime | None = None
    invoice_url: str | None = None
    invoice_pdf: str | None = None
    provider_invoice_id: str | None = None


class InvoiceUpdate(BaseModel):
    status: InvoiceStatus | None = None
    amount: Decimal | None = Field(default=None, ge=Decimal("0"))
    due_date: datetime | None = None
    paid_at: datetime | None = None
    invoice_url: str | None = None
    invoice_pdf: str | None = None


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    subscription_id: UUID | None
    amount: Decimal | str
    status: InvoiceStatus | str
    due_date: datetime
    paid_at: datetime | None
    invoice_url: str | None
    invoice_pdf: str | None
    provider_invoice_id: str | None
    created_at: datetime


class FeatureAccess(BaseModel):
    enabled: bool
    limit: int | float | None = None


class FeatureAccessRead(BaseModel):
    is_active: bool
    plan_name: str | None
    features: dict[str, FeatureAccess]


class LimitCheckRead(BaseModel):
    can_add: bool
    reason: str | None = None


class ChangePlanRequest(BaseModel):
    subscription_plan_id: UUID


class AdminCancelRequest(BaseModel):
    cancel_at_period_end: bool = True


class CohortRetentionRead(BaseModel):
    cohort: str
    retention_rate: int
    cancel_rate: int
    total: int
    active: int
    canceled: int


class SubscriptionAnalyticsRead(BaseModel):
    total_subscriptions: int
    active_subscriptions: int
    trialing_subscriptions: int
    canceled_subscriptions: int
    mrr: int
    plan_distribution: dict[str, int]
    plan_revenue_distribution: dict[str, float]
    subscriptions_by_month: dict[str, int]
    retention_rate: int
    churn_rate: int
    conversion_rate: int
    arpu: int
    average_subscription_value: int
    estimated_ltv: int
    cohort_retention: list[CohortRetentionRead]


class OrganizationMetricsRead(BaseModel):
    user_count: int
    monthly_ai_messages: int
    contact_count: int
    average_daily_messages: float
    peak_usage_days: int
    growth_rate: float
    team_size: int


class CostAnalysis(BaseModel):
    current_cost: float
    recommended_cost: float
    savings: float
    cost_per_user: float
    cost_per_message: float


class TierRecommendationRead(BaseModel):
    recommended_tier: dict[str, Any]
    current_fit: SubscriptionFit
    reasoning: str
    cost_analysis: CostAnalysis
    alternatives: list[dict[str, Any]]
    urgency: Urgency
    benefits: list[str]
    migration_path: str


class TierComparisonEntry(BaseModel):
    plan: dict[str, Any]
    fit: int
    pros: list[str]
    cons: list[str]


class TierComparisonRead(BaseModel):
    basic: TierComparisonEntry
    advanced: TierComparisonEntry
    enterprise: TierComparisonEntry


class ProjectedScenario(BaseModel):
    timeframe: str
    projected_users: int
    projected_messages: int
    recommended_plan: dict[str, Any]
    cost: int
    reasoning: str


class PricingCalculatorRead(BaseModel):
    current_scenario: dict[str, Any]
    projected_scenarios: list[ProjectedScenario]
