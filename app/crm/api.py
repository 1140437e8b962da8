from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.crm.contacts import contact_service
from app.crm.lead_scoring import lead_scoring_service
from app.crm.pipeline import pipeline_service
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    BulkOpportunityUpdate,
    BulkScoreRequest,
    BulkScoreResult,
    BulkUpdateResult,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    ContactWithScoreRead,
    EmailInteractionCreate,
    EmailInteractionRead,
    LeadScoreRead,
    LeadScoringAnalyticsRead,
    LeadScoringHistoryRead,
    OpportunityCreate,
    OpportunityDetailRead,
    OpportunityPriority,
    OpportunityRead,
    OpportunityStatus,
    OpportunityUpdate,
    PipelineAnalyticsRead,
    PipelineCreate,
    PipelineMetricsRead,
    PipelineRead,
    PipelineSummaryRead,
    PipelineWithOpportunitiesRead,
    QualificationStatus,
    QualificationStatusUpdate,
    ScoreBreakdownRead,
    StageMove,
)
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context, require_organization


contacts_router = APIRouter(prefix="/api/contacts", tags=["contacts"])
lead_scoring_router = APIRouter(prefix="/api/lead-scoring", tags=["lead-scoring"])
pipeline_router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    payload: ContactCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ContactRead:
    return contact_service.create_contact(session, ctx, require_organization(ctx), payload)


@contacts_router.get("", response_model=list[ContactRead])
def list_contacts(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[ContactRead]:
    return contact_service.list_contacts(
        session, ctx, require_organization(ctx), status_filter=status_filter, limit=limit, offset=offset
    )


@contacts_router.get("/{contact_id}", response_model=ContactRead)
def get_contact(
    contact_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ContactRead:
    return contact_service.get_contact(session, ctx, contact_id)


@contacts_router.patch("/{contact_id}", response_model=ContactRead)
def update_contact(
    contact_id: uuid.UUID,
    payload: ContactUpdate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ContactRead:
    return contact_service.update_contact(session, ctx, contact_id, payload)


@contacts_router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_contact(
    contact_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    contact_service.delete_contact(session, ctx, contact_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@contacts_router.post(
    "/{contact_id}/email-interactions",
    response_model=EmailInteractionRead,
    status_code=status.HTTP_201_CREATED,
)
def add_email_interaction(
    contact_id: uuid.UUID,
    payload: EmailInteractionCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> EmailInteractionRead:
    return contact_service.add_email_interaction(session, ctx, contact_id, payload)


@lead_scoring_router.get("/contacts", response_model=list[ContactWithScoreRead])
def get_contacts_with_scores(
    qualification_status: list[QualificationStatus] | None = Query(default=None),
    min_score: int | None = Query(default=None, ge=0, le=100),
    max_score: int | None = Query(default=None, ge=0, le=100),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[ContactWithScoreRead]:
    return lead_scoring_service.get_contacts_with_scores(
        session,
        ctx,
        require_organization(ctx),
        qualification_status=qualification_status,
        min_score=min_score,
        max_score=max_score,
        limit=limit,
        offset=offset,
    )


@lead_scoring_router.get("/analytics", response_model=LeadScoringAnalyticsRead)
def get_lead_scoring_analytics(
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> LeadScoringAnalyticsRead:
    return lead_scoring_service.get_lead_scoring_analytics(session, ctx, require_organization(ctx))


@lead_scoring_router.post("/bulk-calculate", response_model=BulkScoreResult)
def bulk_calculate_scores(
    payload: BulkScoreRequest,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> BulkScoreResult:
    return lead_scoring_service.bulk_calculate_scores(session, ctx, payload.contact_ids)


@lead_scoring_router.post("/contacts/{contact_id}/calculate", response_model=LeadScoreRead)
def calculate_lead_score(
    contact_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> LeadScoreRead:
    score = lead_scoring_service.calculate_lead_score(session, ctx, contact_id)
    if score is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
    return score


@lead_scoring_router.get("/contacts/{contact_id}", response_model=LeadScoreRead)
def get_lead_score(
    contact_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> LeadScoreRead:
    score = lead_scoring_service.get_lead_score(session, ctx, contact_id)
    if score is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead score not found")
    return score


@lead_scoring_router.get("/contacts/{contact_id}/breakdown", response_model=ScoreBreakdownRead)
def get_score_breakdown(
    contact_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ScoreBreakdownRead:
    breakdown = lead_scoring_service.get_score_breakdown(session, ctx, contact_id)
    if breakdown is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead score not found")
    return breakdown


@lead_scoring_router.get("/contacts/{contact_id}/history", response_model=list[LeadScoringHistoryRead])
def get_scoring_history(
    contact_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[LeadScoringHistoryRead]:
    return lead_scoring_service.get_scoring_history(session, ctx, contact_id, limit=limit)


@lead_scoring_router.put("/contacts/{contact_id}/qualification", response_model=LeadScoreRead)
def update_qualification_status(
    contact_id: uuid.UUID,
    payload: QualificationStatusUpdate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> LeadScoreRead:
    return lead_scoring_service.update_qualification_status(session, ctx, contact_id, payload.status, payload.reason)


@pipeline_router.get("", response_model=list[PipelineRead])
def get_pipelines(session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)) -> list[PipelineRead]:
    return pipeline_service.get_pipelines(session, ctx, require_organization(ctx))


@pipeline_router.post("", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    payload: PipelineCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PipelineRead:
    return pipeline_service.create_pipeline(session, ctx, require_organization(ctx), payload)


@pipeline_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    payload: OpportunityCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OpportunityRead:
    return pipeline_service.create_opportunity(session, ctx, require_organization(ctx), payload)


@pipeline_router.post("/opportunities/bulk-update", response_model=BulkUpdateResult)
def bulk_update_opportunities(
    payload: BulkOpportunityUpdate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> BulkUpdateResult:
    return pipeline_service.bulk_update_opportunities(session, ctx, payload.opportunity_ids, payload.updates)


@pipeline_router.get("/opportunities/{opportunity_id}", response_model=OpportunityDetailRead)
def get_opportunity(
    opportunity_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OpportunityDetailRead:
    return pipeline_service.get_opportunity_with_details(session, ctx, opportunity_id)


@pipeline_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def update_opportunity(
    opportunity_id: uuid.UUID,
    payload: OpportunityUpdate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OpportunityRead:
    return pipeline_service.update_opportunity(session, ctx, opportunity_id, payload)


@pipeline_router.post("/opportunities/{opportunity_id}/move", response_model=OpportunityRead)
def move_opportunity_to_stage(
    opportunity_id: uuid.UUID,
    payload: StageMove,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OpportunityRead:
    return pipeline_service.move_opportunity_to_stage(session, ctx, opportunity_id, payload)


@pipeline_router.post(
    "/opportunities/{opportunity_id}/activities",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def add_opportunity_activity(
    opportunity_id: uuid.UUID,
    payload: ActivityCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ActivityRead:
    return pipeline_service.add_opportunity_activity(session, ctx, opportunity_id, payload)


@pipeline_router.get("/opportunities/{opportunity_id}/activities", response_model=list[ActivityRead])
def get_opportunity_activities(
    opportunity_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[ActivityRead]:
    return pipeline_service.get_opportunity_activities(session, ctx, opportunity_id, limit=limit)


@pipeline_router.get("/{pipeline_id}", response_model=PipelineWithOpportunitiesRead)
def get_pipeline_with_opportunities(
    pipeline_id: uuid.UUID,
    status_filter: list[OpportunityStatus] | None = Query(default=None, alias="status"),
    assigned_to: str | None = None,
    priority: list[OpportunityPriority] | None = Query(default=None),
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PipelineWithOpportunitiesRead:
    return pipeline_service.get_pipeline_with_opportunities(
        session, ctx, pipeline_id, status_filter=status_filter, assigned_to=assigned_to, priority=priority
    )


@pipeline_router.get("/{pipeline_id}/summary", response_model=PipelineSummaryRead)
def get_pipeline_summary(
    pipeline_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PipelineSummaryRead:
    return pipeline_service.get_pipeline_summary(session, ctx, pipeline_id)


@pipeline_router.post("/{pipeline_id}/metrics", response_model=PipelineMetricsRead)
def update_pipeline_metrics(
    pipeline_id: uuid.UUID,
    metric_date: date | None = None,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PipelineMetricsRead:
    return pipeline_service.update_pipeline_metrics(session, ctx, pipeline_id, metric_date)


@pipeline_router.get("/{pipeline_id}/metrics", response_model=list[PipelineMetricsRead])
def get_pipeline_metrics(
    pipeline_id: uuid.UUID,
    start_date: date,
    end_date: date,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[PipelineMetricsRead]:
    return pipeline_service.get_pipeline_metrics(session, ctx, pipeline_id, start_date, end_date)


@pipeline_router.get("/{pipeline_id}/analytics", response_model=PipelineAnalyticsRead)
def get_pipeline_analytics(
    pipeline_id: uuid.UUID,
    start_date: date,
    end_date: date,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> PipelineAnalyticsRead:
    if end_date < start_date:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="end_date precedes start_date")
    return pipeline_service.get_pipeline_analytics(session, ctx, pipeline_id, start_date, end_date)
