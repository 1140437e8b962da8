from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


QualificationStatus = Literal["hot", "warm", "cold", "unqualified"]
OpportunityStatus = Literal["open", "won", "lost"]
OpportunityPriority = Literal["low", "medium", "high", "urgent"]
ActivityType = Literal["note_added", "stage_changed", "call", "email", "meeting", "task"]


def _reject_explicit_nulls(model: BaseModel, fields: tuple[str, ...]) -> None:
    # Omitting a field leaves it unchanged; these columns cannot be cleared.
    cleared = sorted(name for name in fields if name in model.model_fields_set and getattr(model, name) is None)
    if cleared:
        raise ValueError(f"fields cannot be null: {', '.join(cleared)}")


class ContactCreate(BaseModel):
    firstname: str = Field(min_length=1, max_length=255)
    lastname: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    personality_type: str | None = None
    status: str = "active"
    last_contact_at: datetime | None = None


class ContactUpdate(BaseModel):
    firstname: str | None = Field(default=None, min_length=1, max_length=255)
    lastname: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    personality_type: str | None = None
    status: str | None = None
    last_contact_at: datetime | None = None

    @model_validator(mode="after")
    def validate_required_columns(self) -> "ContactUpdate":
        _reject_explicit_nulls(self, ("firstname", "status"))
        return self


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    firstname: str
    lastname: str | None
    email: str | None
    phone: str | None
    company: str | None
    position: str | None
    notes: str | None
    personality_type: str | None
    status: str
    last_contact_at: datetime | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class EmailInteractionCreate(BaseModel):
    direction: Literal["inbound", "outbound"]
    subject: str | None = None
    occurred_at: datetime | None = None


class EmailInteractionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    organization_id: UUID
    direction: str
    subject: str | None
    occurred_at: datetime


class LeadScoreRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    organization_id: UUID
    demographic_score: int
    behavioral_score: int
    engagement_score: int
    company_score: int
    email_interaction_score: int
    recency_score: int
    overall_score: int
    qualification_status: QualificationStatus
    last_calculated_at: datetime
    updated_at: datetime


class ContactWithScoreRead(ContactRead):
    lead_score: LeadScoreRead | None = None


class ScoreCategory(BaseModel):
    score: int
    max: int
    factors: list[str] = Field(default_factory=list)


class ScoreBreakdownRead(BaseModel):
    demographic: ScoreCategory
    behavioral: ScoreCategory
    engagement: ScoreCategory
    company: ScoreCategory
    email_interaction: ScoreCategory
    recency: ScoreCategory


class BulkScoreRequest(BaseModel):
    contact_ids: list[UUID] = Field(min_length=1, max_length=500)


class BulkScoreResult(BaseModel):
    success: int
    failed: int
    results: list[LeadScoreRead] = Field(default_factory=list)


class QualificationDistribution(BaseModel):
    hot: int = 0
    warm: int = 0
    cold: int = 0
    unqualified: int = 0


class LeadScoringAnalyticsRead(BaseModel):
    total_contacts: int
    scored_contacts: int
    qualification_distribution: QualificationDistribution
    average_score: float
    score_trends: list[dict[str, Any]] = Field(default_factory=list)
    top_scoring_factors: list[dict[str, Any]] = Field(default_factory=list)


class LeadScoringHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    previous_score: int | None
    new_score: int
    score_change: int
    change_reason: str | None
    triggered_by: str
    user_id: str | None
    created_at: datetime


class QualificationStatusUpdate(BaseModel):
    status: QualificationStatus
    reason: str | None = None


class StageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    probability: int = Field(default=0, ge=0, le=100)
    color: str = "#6B7280"
    is_closed_won: bool = False
    is_closed_lost: bool = False

    @model_validator(mode="after")
    def validate_outcome(self) -> "StageCreate":
        if self.is_closed_won and self.is_closed_lost:
            raise ValueError("a stage cannot be both closed-won and closed-lost")
        return self


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    description: str | None
    probability: int
    color: str
    sort_order: int
    is_closed_won: bool
    is_closed_lost: bool


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    color: str = "#3B82F6"
    icon: str = "pipeline"
    sort_order: int = 0
    stages: list[StageCreate] = Field(default_factory=list)


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    description: str | None
    color: str
    icon: str
    is_active: bool
    sort_order: int
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    stages: list[StageRead] = Field(default_factory=list)


class OpportunityCreate(BaseModel):
    pipeline_id: UUID
    stage_id: UUID
    contact_id: UUID | None = None
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    value: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    probability: int | None = Field(default=None, ge=0, le=100)
    priority: OpportunityPriority = "medium"
    assigned_to: str | None = None
    expected_close_date: date | None = None


class OpportunityUpdate(BaseModel):
    contact_id: UUID | None = None
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    value: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    probability: int | None = Field(default=None, ge=0, le=100)
    priority: OpportunityPriority | None = None
    assigned_to: str | None = None
    expected_close_date: date | None = None

    @model_validator(mode="after")
    def validate_required_columns(self) -> "OpportunityUpdate":
        _reject_explicit_nulls(self, ("title", "value", "currency", "probability", "priority"))
        return self


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    pipeline_id: UUID
    stage_id: UUID
    contact_id: UUID | None
    title: str
    description: str | None
    value: Decimal
    currency: str
    probability: int
    priority: OpportunityPriority
    status: OpportunityStatus
    assigned_to: str | None
    expected_close_date: date | None
    actual_close_date: date | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class StageMove(BaseModel):
    stage_id: UUID
    note: str | None = None


class ActivityCreate(BaseModel):
    activity_type: ActivityType
    description: str = Field(min_length=1)
    metadata: dict[str, Any] | None = None


class ActivityRead(BaseModel):
    id: UUID
    opportunity_id: UUID
    activity_type: ActivityType
    description: str
    metadata: dict[str, Any] | None
    created_by: str | None
    created_at: datetime


class StageWithOpportunities(StageRead):
    opportunities: list[OpportunityRead] = Field(default_factory=list)
    opportunities_count: int = 0
    total_value: Decimal = Decimal("0")
    weighted_value: Decimal = Decimal("0")


class PipelineWithOpportunitiesRead(PipelineRead):
    stages_with_opportunities: list[StageWithOpportunities] = Field(default_factory=list)


class OpportunityDetailRead(OpportunityRead):
    contact: ContactRead | None = None
    pipeline: PipelineRead | None = None
    stage: StageRead | None = None
    lead_score: LeadScoreRead | None = None
    activities: list[ActivityRead] = Field(default_factory=list)


class StageSummary(BaseModel):
    stage_id: UUID
    stage_name: str
    sort_order: int
    probability: int
    opportunities_count: int
    total_value: Decimal
    weighted_value: Decimal


class PipelineSummaryRead(BaseModel):
    pipeline_id: UUID
    pipeline_name: str
    stages: list[StageSummary]
    total_opportunities: int
    total_value: Decimal
    weighted_value: Decimal


class PipelineMetricsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    metric_date: date
    total_opportunities: int
    open_opportunities: int
    won_opportunities: int
    lost_opportunities: int
    total_value: Decimal
    weighted_value: Decimal
    won_value: Decimal


class DateRange(BaseModel):
    start: date
    end: date


class PipelineAnalyticsRead(BaseModel):
    pipeline_id: UUID
    pipeline_name: str
    date_range: DateRange
    total_opportunities: int
    total_value: Decimal
    weighted_pipeline_value: Decimal
    won_opportunities: int
    lost_opportunities: int
    won_value: Decimal
    average_deal_size: Decimal
    win_rate: float
    average_sales_cycle_days: float


class BulkOpportunityUpdate(BaseModel):
    opportunity_ids: list[UUID] = Field(min_length=1, max_length=500)
    updates: OpportunityUpdate


class BulkUpdateResult(BaseModel):
    updated: int
    failed: int
