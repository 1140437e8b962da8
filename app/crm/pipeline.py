from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.core.clock import ensure_utc
from app.crm.contacts import contact_service
from app.crm.lead_scoring import lead_scoring_service
from app.crm.models import (
    Contact,
    OpportunityActivity,
    PipelineMetrics,
    PipelineStage,
    SalesOpportunity,
    SalesPipeline,
)
from app.crm.repositories import OpportunityRepository, PipelineRepository
from app.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    BulkUpdateResult,
    DateRange,
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
    StageMove,
    StageRead,
    StageSummary,
    StageWithOpportunities,
)
from app.integrations.webhooks.service import webhook_service
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
RECENT_ACTIVITY_LIMIT = 10


def weighted(value: Decimal | None, probability: int) -> Decimal:
    return (Decimal(value or 0) * Decimal(probability) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


def money(value: Decimal | int) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def stage_outcome(stage: PipelineStage) -> OpportunityStatus:
    if stage.is_closed_won:
        return "won"
    if stage.is_closed_lost:
        return "lost"
    return "open"


@dataclass(slots=True)
class PipelineService:
    pipeline_repository: PipelineRepository = PipelineRepository()
    opportunity_repository: OpportunityRepository = OpportunityRepository()

    def get_pipelines(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> list[PipelineRead]:
        query = (
            select(SalesPipeline)
            .where(SalesPipeline.organization_id == organization_id, SalesPipeline.is_active.is_(True))
            .options(selectinload(SalesPipeline.stages))
            .order_by(SalesPipeline.sort_order.asc(), SalesPipeline.created_at.asc())
        )
        rows = session.scalars(self.pipeline_repository.apply_scope_query(query, ctx)).all()
        return [self._to_pipeline_read(row, ctx) for row in rows]

    def get_pipeline_with_opportunities(
        self,
        session: Session,
        ctx: AuthContext,
        pipeline_id: uuid.UUID,
        *,
        status_filter: list[OpportunityStatus] | None = None,
        assigned_to: str | None = None,
        priority: list[OpportunityPriority] | None = None,
    ) -> PipelineWithOpportunitiesRead:
        pipeline = self._load_pipeline(session, ctx, pipeline_id)
        query = select(SalesOpportunity).where(SalesOpportunity.pipeline_id == pipeline.id)
        if status_filter:
            query = query.where(SalesOpportunity.status.in_(status_filter))
        if assigned_to:
            query = query.where(SalesOpportunity.assigned_to == assigned_to)
        if priority:
            query = query.where(SalesOpportunity.priority.in_(priority))
        query = self.opportunity_repository.apply_scope_query(query, ctx)
        opportunities = session.scalars(query.order_by(SalesOpportunity.created_at.asc())).all()

        by_stage: dict[uuid.UUID, list[SalesOpportunity]] = defaultdict(list)
        for opportunity in opportunities:
            by_stage[opportunity.stage_id].append(opportunity)

        stages_with_opportunities = []
        for stage in pipeline.stages:
            items = by_stage.get(stage.id, [])
            stages_with_opportunities.append(
                StageWithOpportunities(
                    **StageRead.model_validate(stage).model_dump(),
                    opportunities=[self._to_opportunity_read(item, ctx) for item in items],
                    opportunities_count=len(items),
                    total_value=money(sum((item.value or Decimal(0) for item in items), Decimal(0))),
                    weighted_value=money(
                        sum((weighted(item.value, item.probability) for item in items), Decimal(0))
                    ),
                )
            )

        return PipelineWithOpportunitiesRead(
            **self._to_pipeline_read(pipeline, ctx).model_dump(),
            stages_with_opportunities=stages_with_opportunities,
        )

    def create_pipeline(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: PipelineCreate
    ) -> PipelineRead:
        data = {"organization_id": organization_id, **payload.model_dump(mode="python", exclude={"stages"})}
        try:
            self.pipeline_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        pipeline = SalesPipeline(**data, created_by=ctx.user_id)
        session.add(pipeline)
        try:
            session.flush()
            for index, stage in enumerate(payload.stages):
                session.add(
                    PipelineStage(
                        pipeline_id=pipeline.id,
                        organization_id=organization_id,
                        sort_order=index + 1,
                        **stage.model_dump(mode="python"),
                    )
                )
            session.flush()
            session.commit()
        except IntegrityError:
            # Stages and pipeline share the transaction, so a failed stage leaves no pipeline behind.
            session.rollback()
            logger.warning("pipeline.create_failed", extra={"organization_id": str(organization_id)})
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="pipeline stages are invalid")
        session.refresh(pipeline)

        logger.info("pipeline.created", extra={"organization_id": str(organization_id)})
        webhook_service.emit(
            session,
            {
                "event_type": "crm.pipeline.created",
                "organization_id": str(organization_id),
                "pipeline_id": str(pipeline.id),
                "name": pipeline.name,
                "stage_count": len(pipeline.stages),
                "correlation_id": ctx.correlation_id,
            },
        )
        session.commit()
        return self._to_pipeline_read(pipeline, ctx)

    def create_opportunity(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: OpportunityCreate
    ) -> OpportunityRead:
        pipeline = self._load_pipeline(session, ctx, payload.pipeline_id)
        if pipeline.organization_id != organization_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")
        stage = self._stage_in_pipeline(pipeline, payload.stage_id)
        if payload.contact_id is not None:
            self._validate_contact(session, organization_id, payload.contact_id)

        data = {"organization_id": organization_id, **payload.model_dump(mode="python")}
        self._validate_opportunity_write(data, ctx, action="create")

        outcome = stage_outcome(stage)
        opportunity = SalesOpportunity(
            **{**data, "probability": payload.probability if payload.probability is not None else stage.probability},
            status=outcome,
            actual_close_date=datetime.now(timezone.utc).date() if outcome != "open" else None,
            created_by=ctx.user_id,
        )
        session.add(opportunity)
        session.flush()
        self._add_activity(session, opportunity, ctx, "note_added", "Opportunity created")
        webhook_service.emit(session, self._opportunity_event("crm.opportunity.created", opportunity, ctx))
        session.commit()
        session.refresh(opportunity)
        return self._to_opportunity_read(opportunity, ctx)

    def update_opportunity(
        self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID, payload: OpportunityUpdate
    ) -> OpportunityRead:
        opportunity = self._load_opportunity(session, ctx, opportunity_id)
        changes = payload.model_dump(mode="python", exclude_unset=True)
        self._validate_opportunity_write(
            changes, ctx, existing_scope={"organization_id": str(opportunity.organization_id)}, action="update"
        )
        if changes.get("contact_id") is not None:
            self._validate_contact(session, opportunity.organization_id, changes["contact_id"])

        for key, value in changes.items():
            setattr(opportunity, key, value)
        self._add_activity(
            session,
            opportunity,
            ctx,
            "note_added",
            "Opportunity updated",
            {"changed_fields": sorted(changes)},
        )
        webhook_service.emit(
            session,
            {**self._opportunity_event("crm.opportunity.updated", opportunity, ctx), "changed_fields": sorted(changes)},
        )
        session.commit()
        session.refresh(opportunity)
        return self._to_opportunity_read(opportunity, ctx)

    def move_opportunity_to_stage(
        self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID, payload: StageMove
    ) -> OpportunityRead:
        """Move an opportunity to another stage of its pipeline.

        The stage drives probability, status and close date. A stage_changed
        activity is written and outbound webhooks are queued in the same
        transaction.
        """

        opportunity = self._load_opportunity(session, ctx, opportunity_id)
        target = session.get(PipelineStage, payload.stage_id)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline stage not found")
        if target.pipeline_id != opportunity.pipeline_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="stage does not belong to the opportunity's pipeline",
            )

        from_stage_id = opportunity.stage_id
        previous_status = opportunity.status
        opportunity.stage_id = target.id
        opportunity.stage = target
        opportunity.probability = target.probability
        opportunity.status = stage_outcome(target)
        opportunity.actual_close_date = datetime.now(timezone.utc).date() if opportunity.status != "open" else None

        self._add_activity(
            session,
            opportunity,
            ctx,
            "stage_changed",
            f"Moved to stage {target.name}",
            {"from_stage_id": str(from_stage_id), "to_stage_id": str(target.id), "note": payload.note},
        )

        event_type = {
            "won": "crm.opportunity.closed_won",
            "lost": "crm.opportunity.closed_lost",
        }.get(opportunity.status, "crm.opportunity.stage_changed")
        webhook_service.emit(
            session,
            {
                **self._opportunity_event(event_type, opportunity, ctx),
                "from_stage_id": str(from_stage_id),
                "to_stage_id": str(target.id),
                "previous_status": previous_status,
                "note": payload.note,
            },
        )
        session.commit()
        session.refresh(opportunity)
        logger.info(
            "opportunity.stage_changed",
            extra={"organization_id": str(opportunity.organization_id), "event_type": event_type},
        )
        return self._to_opportunity_read(opportunity, ctx)

    def get_opportunity_with_details(
        self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID
    ) -> OpportunityDetailRead:
        opportunity = self._load_opportunity(session, ctx, opportunity_id)
        contact = opportunity.contact
        lead_score = None
        if contact is not None and contact.lead_score is not None:
            lead_score = lead_scoring_service.to_lead_score_read(contact.lead_score, ctx)
        activities = self._recent_activities(session, opportunity.id, RECENT_ACTIVITY_LIMIT)

        return OpportunityDetailRead(
            **self._to_opportunity_read(opportunity, ctx).model_dump(),
            contact=contact_service.to_contact_read(contact, ctx) if contact is not None else None,
            pipeline=self._to_pipeline_read(opportunity.pipeline, ctx),
            stage=StageRead.model_validate(opportunity.stage),
            lead_score=lead_score,
            activities=[self._to_activity_read(item) for item in activities],
        )

    def add_opportunity_activity(
        self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID, payload: ActivityCreate
    ) -> ActivityRead:
        opportunity = self._load_opportunity(session, ctx, opportunity_id)
        activity = self._add_activity(
            session, opportunity, ctx, payload.activity_type, payload.description, payload.metadata
        )
        session.commit()
        session.refresh(activity)
        return self._to_activity_read(activity)

    def get_opportunity_activities(
        self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID, *, limit: int = 50
    ) -> list[ActivityRead]:
        opportunity = self._load_opportunity(session, ctx, opportunity_id)
        return [self._to_activity_read(item) for item in self._recent_activities(session, opportunity.id, limit)]

    def get_pipeline_summary(self, session: Session, ctx: AuthContext, pipeline_id: uuid.UUID) -> PipelineSummaryRead:
        pipeline = self._load_pipeline(session, ctx, pipeline_id)
        opportunities = self._opportunities(session, pipeline.id)

        stages: list[StageSummary] = []
        for stage in pipeline.stages:
            items = [item for item in opportunities if item.stage_id == stage.id]
            stages.append(
                StageSummary(
                    stage_id=stage.id,
                    stage_name=stage.name,
                    sort_order=stage.sort_order,
                    probability=stage.probability,
                    opportunities_count=len(items),
                    total_value=self._total(items),
                    weighted_value=self._weighted_total(items),
                )
            )
        return PipelineSummaryRead(
            pipeline_id=pipeline.id,
            pipeline_name=pipeline.name,
            stages=stages,
            total_opportunities=len(opportunities),
            total_value=self._total(opportunities),
            weighted_value=self._weighted_total(opportunities),
        )

    def update_pipeline_metrics(
        self,
        session: Session,
        ctx: AuthContext,
        pipeline_id: uuid.UUID,
        metric_date: date | None = None,
    ) -> PipelineMetricsRead:
        pipeline = self._load_pipeline(session, ctx, pipeline_id)
        target_date = metric_date or datetime.now(timezone.utc).date()
        opportunities = self._opportunities(session, pipeline.id)
        won = [item for item in opportunities if item.status == "won"]

        values = {
            "total_opportunities": len(opportunities),
            "open_opportunities": sum(1 for item in opportunities if item.status == "open"),
            "won_opportunities": len(won),
            "lost_opportunities": sum(1 for item in opportunities if item.status == "lost"),
            "total_value": self._total(opportunities),
            "weighted_value": self._weighted_total(opportunities),
            "won_value": self._total(won),
        }
        metrics = session.scalar(
            select(PipelineMetrics).where(
                PipelineMetrics.pipeline_id == pipeline.id, PipelineMetrics.metric_date == target_date
            )
        )
        if metrics is None:
            metrics = PipelineMetrics(
                pipeline_id=pipeline.id, organization_id=pipeline.organization_id, metric_date=target_date
            )
            session.add(metrics)
        for key, value in values.items():
            setattr(metrics, key, value)
        session.commit()
        session.refresh(metrics)
        return PipelineMetricsRead.model_validate(metrics)

    def get_pipeline_metrics(
        self,
        session: Session,
        ctx: AuthContext,
        pipeline_id: uuid.UUID,
        start_date: date,
        end_date: date,
    ) -> list[PipelineMetricsRead]:
        pipeline = self._load_pipeline(session, ctx, pipeline_id)
        rows = session.scalars(
            select(PipelineMetrics)
            .where(
                PipelineMetrics.pipeline_id == pipeline.id,
                PipelineMetrics.metric_date >= start_date,
                PipelineMetrics.metric_date <= end_date,
            )
            .order_by(PipelineMetrics.metric_date.asc())
        ).all()
        return [PipelineMetricsRead.model_validate(row) for row in rows]

    def get_pipeline_analytics(
        self,
        session: Session,
        ctx: AuthContext,
        pipeline_id: uuid.UUID,
        start_date: date,
        end_date: date,
    ) -> PipelineAnalyticsRead:
        pipeline = self._load_pipeline(session, ctx, pipeline_id)
        window_start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
        window_end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        opportunities = [
            item
            for item in self._opportunities(session, pipeline.id)
            if window_start <= ensure_utc(item.created_at) < window_end
        ]
        won = [item for item in opportunities if item.status == "won"]
        lost = [item for item in opportunities if item.status == "lost"]

        won_value = self._total(won)
        closed = len(won) + len(lost)
        cycles = [
            (item.actual_close_date - ensure_utc(item.created_at).date()).days
            for item in won
            if item.actual_close_date is not None
        ]
        return PipelineAnalyticsRead(
            pipeline_id=pipeline.id,
            pipeline_name=pipeline.name,
            date_range=DateRange(start=start_date, end=end_date),
            total_opportunities=len(opportunities),
            total_value=self._total(opportunities),
            weighted_pipeline_value=self._weighted_total(opportunities),
            won_opportunities=len(won),
            lost_opportunities=len(lost),
            won_value=won_value,
            average_deal_size=money(won_value / len(won)) if won else money(0),
            win_rate=round(len(won) / closed * 100, 2) if closed else 0.0,
            average_sales_cycle_days=round(sum(cycles) / len(cycles), 2) if cycles else 0.0,
        )

    def bulk_update_opportunities(
        self,
        session: Session,
        ctx: AuthContext,
        opportunity_ids: Iterable[uuid.UUID],
        updates: OpportunityUpdate,
    ) -> BulkUpdateResult:
        updated = 0
        failed = 0
        for opportunity_id in opportunity_ids:
            try:
                self.update_opportunity(session, ctx, opportunity_id, updates)
            except HTTPException as exc:
                logger.warning("opportunity.bulk.item_failed", extra={"status_code": exc.status_code})
                failed += 1
                continue
            except SQLAlchemyError as exc:
                session.rollback()
                logger.warning("opportunity.bulk.item_failed", extra={"error": type(exc).__name__})
                failed += 1
                continue
            updated += 1
        return BulkUpdateResult(updated=updated, failed=failed)

    def _load_pipeline(self, session: Session, ctx: AuthContext, pipeline_id: uuid.UUID) -> SalesPipeline:
        pipeline = session.get(SalesPipeline, pipeline_id)
        if pipeline is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="pipeline not found")
        try:
            self.pipeline_repository.validate_read_scope(ctx, organization_id=pipeline.organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        return pipeline

    def _load_opportunity(self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID) -> SalesOpportunity:
        opportunity = session.get(SalesOpportunity, opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        try:
            self.opportunity_repository.validate_read_scope(ctx, organization_id=opportunity.organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        return opportunity

    @staticmethod
    def _stage_in_pipeline(pipeline: SalesPipeline, stage_id: uuid.UUID) -> PipelineStage:
        for stage in pipeline.stages:
            if stage.id == stage_id:
                return stage
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="stage does not belong to the pipeline"
        )

    @staticmethod
    def _validate_contact(session: Session, organization_id: uuid.UUID, contact_id: uuid.UUID) -> None:
        contact = session.get(Contact, contact_id)
        if contact is None or contact.organization_id != organization_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="contact not found")

    def _validate_opportunity_write(
        self,
        data: dict[str, Any],
        ctx: AuthContext,
        *,
        existing_scope: dict[str, str | None] | None = None,
        action: str,
    ) -> None:
        try:
            self.opportunity_repository.validate_write_security(
                data, ctx, existing_scope=existing_scope, action=action
            )
        except ForbiddenFieldError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail={"forbidden_fields": exc.fields})
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    @staticmethod
    def _add_activity(
        session: Session,
        opportunity: SalesOpportunity,
        ctx: AuthContext,
        activity_type: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> OpportunityActivity:
        activity = OpportunityActivity(
            opportunity_id=opportunity.id,
            organization_id=opportunity.organization_id,
            activity_type=activity_type,
            description=description,
            activity_metadata=metadata,
            created_by=ctx.user_id,
        )
        session.add(activity)
        return activity

    @staticmethod
    def _recent_activities(session: Session, opportunity_id: uuid.UUID, limit: int) -> list[OpportunityActivity]:
        return list(
            session.scalars(
                select(OpportunityActivity)
                .where(OpportunityActivity.opportunity_id == opportunity_id)
                .order_by(OpportunityActivity.created_at.desc(), OpportunityActivity.id.desc())
                .limit(limit)
            ).all()
        )

    @staticmethod
    def _opportunities(session: Session, pipeline_id: uuid.UUID) -> list[SalesOpportunity]:
        return list(session.scalars(select(SalesOpportunity).where(SalesOpportunity.pipeline_id == pipeline_id)).all())

    @staticmethod
    def _total(items: Iterable[SalesOpportunity]) -> Decimal:
        return money(sum((item.value or Decimal(0) for item in items), Decimal(0)))

    @staticmethod
    def _weighted_total(items: Iterable[SalesOpportunity]) -> Decimal:
        return money(sum((weighted(item.value, item.probability) for item in items), Decimal(0)))

    @staticmethod
    def _opportunity_event(event_type: str, opportunity: SalesOpportunity, ctx: AuthContext) -> dict[str, Any]:
        return {
            "event_type": event_type,
            "organization_id": str(opportunity.organization_id),
            "opportunity_id": str(opportunity.id),
            "pipeline_id": str(opportunity.pipeline_id),
            "stage_id": str(opportunity.stage_id),
            "title": opportunity.title,
            "value": str(opportunity.value),
            "currency": opportunity.currency,
            "probability": opportunity.probability,
            "status": opportunity.status,
            "correlation_id": ctx.correlation_id,
        }

    def _to_pipeline_read(self, pipeline: SalesPipeline, ctx: AuthContext) -> PipelineRead:
        payload = PipelineRead.model_validate(pipeline).model_dump(mode="python")
        return PipelineRead.model_validate(self.pipeline_repository.apply_read_security(payload, ctx))

    def _to_opportunity_read(self, opportunity: SalesOpportunity, ctx: AuthContext) -> OpportunityRead:
        payload = OpportunityRead.model_validate(opportunity).model_dump(mode="python")
        return OpportunityRead.model_validate(self.opportunity_repository.apply_read_security(payload, ctx))

    @staticmethod
    def _to_activity_read(activity: OpportunityActivity) -> ActivityRead:
        return ActivityRead(
            id=activity.id,
            opportunity_id=activity.opportunity_id,
            activity_type=activity.activity_type,
            description=activity.description,
            metadata=activity.activity_metadata,
            created_by=activity.created_by,
            created_at=activity.created_at,
        )


pipeline_service = PipelineService()
