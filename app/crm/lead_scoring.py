from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app import events
from app.core.clock import ensure_utc
from app.crm.contacts import contact_service
from app.crm.models import Contact, LeadScore, LeadScoringHistory
from app.crm.repositories import ContactRepository, LeadScoreRepository
from app.crm.schemas import (
    BulkScoreResult,
    ContactRead,
    ContactWithScoreRead,
    LeadScoreRead,
    LeadScoringAnalyticsRead,
    LeadScoringHistoryRead,
    QualificationDistribution,
    QualificationStatus,
    ScoreBreakdownRead,
    ScoreCategory,
)
from app.metrics import observe_lead_score
from app.platform.security.context import AuthContext

logger = logging.getLogger(__name__)

DEMOGRAPHIC_MAX = 25
COMPANY_MAX = 20
BEHAVIORAL_MAX = 15
ENGAGEMENT_MAX = 15
EMAIL_INTERACTION_MAX = 25
RECENCY_MAX = 15
OVERALL_MAX = 100

EMAIL_INTERACTION_POINTS = 3
EMAIL_INTERACTION_WINDOW = timedelta(days=30)
PERSONAL_EMAIL_DOMAINS = frozenset({"gmail.com", "yahoo.com"})
DECISION_MAKER_KEYWORDS = ("director", "manager", "lead")

# (minimum overall score, status), highest first.
QUALIFICATION_THRESHOLDS: tuple[tuple[int, QualificationStatus], ...] = (
    (80, "hot"),
    (60, "warm"),
    (40, "cold"),
)


def qualification_for(overall_score: int) -> QualificationStatus:
    for threshold, qualification in QUALIFICATION_THRESHOLDS:
        if overall_score >= threshold:
            return qualification
    return "unqualified"


def is_business_email(email: str | None) -> bool:
    if not email or "@" not in email:
        return False
    return email.rsplit("@", 1)[1].strip().lower() not in PERSONAL_EMAIL_DOMAINS


def is_decision_maker(position: str | None) -> bool:
    lowered = (position or "").lower()
    return any(keyword in lowered for keyword in DECISION_MAKER_KEYWORDS)


def days_since(value: datetime | None, now: datetime) -> int | None:
    if value is None:
        return None
    return (now - ensure_utc(value)).days


def demographic_score(contact: Contact) -> int:
    score = 0
    if contact.company:
        score += 7
    if contact.position:
        score += 6
    if contact.phone:
        score += 6
    if is_business_email(contact.email):
        score += 6
    return min(score, DEMOGRAPHIC_MAX)


def company_score(contact: Contact) -> int:
    if not contact.company:
        return 0
    score = 0
    if len(contact.company) > 10:
        score += 10
    if is_decision_maker(contact.position):
        score += 10
    return min(score, COMPANY_MAX)


def behavioral_score(contact: Contact) -> int:
    score = 0
    if contact.notes and len(contact.notes) > 50:
        score += 5
    if contact.personality_type:
        score += 5
    if contact.status == "active":
        score += 5
    return min(score, BEHAVIORAL_MAX)


def recent_interaction_count(contact: Contact, now: datetime) -> int:
    cutoff = now - EMAIL_INTERACTION_WINDOW
    return sum(1 for item in contact.email_interactions if ensure_utc(item.occurred_at) >= cutoff)


def email_interaction_score(contact: Contact, now: datetime) -> int:
    return min(recent_interaction_count(contact, now) * EMAIL_INTERACTION_POINTS, EMAIL_INTERACTION_MAX)


def recency_score(contact: Contact, now: datetime) -> int:
    days = days_since(contact.last_contact_at, now)
    if days is None:
        return 0
    if days <= 7:
        return 15
    if days <= 30:
        return 10
    if days <= 90:
        return 5
    return 0


@dataclass(slots=True)
class LeadScoringService:
    """Scores contacts into capped category buckets and tracks qualification over time.

    Each category is computed independently and capped; the overall score is
    their sum capped at 100. Every recalculation that changes the overall score
    appends a ``LeadScoringHistory`` row.
    """

    contact_repository: ContactRepository = ContactRepository()
    lead_score_repository: LeadScoreRepository = LeadScoreRepository()

    def calculate_lead_score(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> LeadScoreRead | None:
        current = now or datetime.now(timezone.utc)
        contact = session.get(Contact, contact_id)
        if contact is None:
            logger.warning("lead_score.contact_missing")
            return None
        contact = contact_service.load(session, ctx, contact_id)

        scores = {
            "demographic_score": demographic_score(contact),
            "behavioral_score": behavioral_score(contact),
            "engagement_score": 0,
            "company_score": company_score(contact),
            "email_interaction_score": email_interaction_score(contact, current),
            "recency_score": recency_score(contact, current),
        }
        overall = min(sum(scores.values()), OVERALL_MAX)
        qualification = qualification_for(overall)

        lead_score = contact.lead_score
        previous_score = lead_score.overall_score if lead_score is not None else None
        previous_status = lead_score.qualification_status if lead_score is not None else None
        if lead_score is None:
            lead_score = LeadScore(contact_id=contact.id, organization_id=contact.organization_id)
            session.add(lead_score)
            contact.lead_score = lead_score

        for key, value in scores.items():
            setattr(lead_score, key, value)
        lead_score.overall_score = overall
        lead_score.qualification_status = qualification
        lead_score.last_calculated_at = current

        if previous_score is None or previous_score != overall:
            session.add(
                LeadScoringHistory(
                    contact_id=contact.id,
                    organization_id=contact.organization_id,
                    previous_score=previous_score,
                    new_score=overall,
                    score_change=overall - (previous_score or 0),
                    change_reason="Initial score calculation" if previous_score is None else "Score recalculated",
                    triggered_by="system",
                    user_id=ctx.user_id,
                )
            )
        session.commit()
        session.refresh(lead_score)

        observe_lead_score(qualification)
        events.publish(
            {
                "event_type": "crm.lead_score.calculated",
                "organization_id": str(contact.organization_id),
                "contact_id": str(contact.id),
                "overall_score": overall,
                "previous_score": previous_score,
                "qualification_status": qualification,
                "correlation_id": ctx.correlation_id,
            }
        )
        if previous_status is not None and previous_status != qualification:
            self._publish_status_change(contact, previous_status, qualification, ctx)
        return self.to_lead_score_read(lead_score, ctx)

    def get_lead_score(self, session: Session, ctx: AuthContext, contact_id: uuid.UUID) -> LeadScoreRead | None:
        contact = contact_service.load(session, ctx, contact_id)
        if contact.lead_score is None:
            return None
        return self.to_lead_score_read(contact.lead_score, ctx)

    def get_contacts_with_scores(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        *,
        qualification_status: list[QualificationStatus] | None = None,
        min_score: int | None = None,
        max_score: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ContactWithScoreRead]:
        query = (
            select(Contact)
            .where(Contact.organization_id == organization_id)
            .options(selectinload(Contact.lead_score))
            .order_by(Contact.created_at.desc(), Contact.id.desc())
            .limit(limit)
            .offset(offset)
        )
        contacts = session.scalars(self.contact_repository.apply_scope_query(query, ctx)).all()

        filtering = bool(qualification_status) or min_score is not None or max_score is not None
        output: list[ContactWithScoreRead] = []
        for contact in contacts:
            lead_score = contact.lead_score
            if filtering:
                if lead_score is None:
                    continue
                if qualification_status and lead_score.qualification_status not in qualification_status:
                    continue
                if min_score is not None and lead_score.overall_score < min_score:
                    continue
                if max_score is not None and lead_score.overall_score > max_score:
                    continue
            output.append(self._to_contact_with_score(contact, ctx))
        return output

    def get_score_breakdown(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> ScoreBreakdownRead | None:
        current = now or datetime.now(timezone.utc)
        contact = contact_service.load(session, ctx, contact_id)
        lead_score = contact.lead_score
        if lead_score is None:
            return None

        demographic_factors: list[str] = []
        if contact.company:
            demographic_factors.append("Has company information")
        if contact.position:
            demographic_factors.append("Has position/title")
        if contact.phone:
            demographic_factors.append("Has phone number")
        if is_business_email(contact.email):
            demographic_factors.append("Business email domain")

        company_factors: list[str] = []
        if contact.company:
            if len(contact.company) > 10:
                company_factors.append("Established company name")
            if is_decision_maker(contact.position):
                company_factors.append("Decision-making position")

        behavioral_factors: list[str] = []
        if contact.notes and len(contact.notes) > 50:
            behavioral_factors.append("Detailed interaction notes")
        if contact.personality_type:
            behavioral_factors.append("Personality profiled")
        if contact.status == "active":
            behavioral_factors.append("Active status")

        recency_factors: list[str] = []
        days = days_since(contact.last_contact_at, current)
        if days is not None:
            if days <= 7:
                recency_factors.append("Recent contact (within 7 days)")
            elif days <= 30:
                recency_factors.append("Recent contact (within 30 days)")
            elif days <= 90:
                recency_factors.append("Contact within 90 days")

        interaction_score = lead_score.email_interaction_score
        if interaction_score > 0:
            interaction_factors = [
                f"{interaction_score // EMAIL_INTERACTION_POINTS} email interactions in last 30 days"
            ]
        else:
            interaction_factors = ["No recent email interactions"]

        return ScoreBreakdownRead(
            demographic=ScoreCategory(
                score=lead_score.demographic_score, max=DEMOGRAPHIC_MAX, factors=demographic_factors
            ),
            behavioral=ScoreCategory(
                score=lead_score.behavioral_score, max=BEHAVIORAL_MAX, factors=behavioral_factors
            ),
            engagement=ScoreCategory(
                score=lead_score.engagement_score,
                max=ENGAGEMENT_MAX,
                factors=["Engagement tracking not implemented yet"],
            ),
            company=ScoreCategory(score=lead_score.company_score, max=COMPANY_MAX, factors=company_factors),
            email_interaction=ScoreCategory(
                score=interaction_score, max=EMAIL_INTERACTION_MAX, factors=interaction_factors
            ),
            recency=ScoreCategory(
                score=lead_score.recency_score,
                max=RECENCY_MAX,
                factors=recency_factors or ["No recent contact"],
            ),
        )

    def bulk_calculate_scores(
        self,
        session: Session,
        ctx: AuthContext,
        contact_ids: list[uuid.UUID],
        *,
        now: datetime | None = None,
    ) -> BulkScoreResult:
        results: list[LeadScoreRead] = []
        success = 0
        failed = 0
        logger.info("lead_score.bulk.started", extra={"messages": len(contact_ids)})

        for contact_id in contact_ids:
            try:
                score = self.calculate_lead_score(session, ctx, contact_id, now=now)
            except HTTPException as exc:
                logger.warning("lead_score.bulk.item_failed", extra={"status_code": exc.status_code})
                failed += 1
                continue
            except SQLAlchemyError as exc:
                session.rollback()
                logger.warning("lead_score.bulk.item_failed", extra={"error": type(exc).__name__})
                failed += 1
                continue
            if score is None:
                failed += 1
                continue
            results.append(score)
            success += 1

        logger.info("lead_score.bulk.completed", extra={"status": f"success={success} failed={failed}"})
        return BulkScoreResult(success=success, failed=failed, results=results)

    def get_lead_scoring_analytics(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID
    ) -> LeadScoringAnalyticsRead:
        query = (
            select(Contact)
            .where(Contact.organization_id == organization_id)
            .options(selectinload(Contact.lead_score))
        )
        contacts = session.scalars(self.contact_repository.apply_scope_query(query, ctx)).all()
        scored = [contact.lead_score for contact in contacts if contact.lead_score is not None]

        distribution = QualificationDistribution()
        for lead_score in scored:
            bucket = lead_score.qualification_status
            setattr(distribution, bucket, getattr(distribution, bucket) + 1)
        total_score = sum(lead_score.overall_score for lead_score in scored)

        return LeadScoringAnalyticsRead(
            total_contacts=len(contacts),
            scored_contacts=len(scored),
            qualification_distribution=distribution,
            average_score=(total_score / len(scored)) if scored else 0.0,
        )

    def get_scoring_history(
        self, session: Session, ctx: AuthContext, contact_id: uuid.UUID, *, limit: int = 50
    ) -> list[LeadScoringHistoryRead]:
        contact = contact_service.load(session, ctx, contact_id)
        rows = session.scalars(
            select(LeadScoringHistory)
            .where(LeadScoringHistory.contact_id == contact.id)
            .order_by(LeadScoringHistory.created_at.desc(), LeadScoringHistory.id.desc())
            .limit(limit)
        ).all()
        return [LeadScoringHistoryRead.model_validate(row) for row in rows]

    def update_qualification_status(
        self,
        session: Session,
        ctx: AuthContext,
        contact_id: uuid.UUID,
        qualification_status: QualificationStatus,
        reason: str | None = None,
    ) -> LeadScoreRead:
        contact = contact_service.load(session, ctx, contact_id)
        lead_score = contact.lead_score
        if lead_score is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead score not found")

        previous_status = lead_score.qualification_status
        lead_score.qualification_status = qualification_status
        session.add(
            LeadScoringHistory(
                contact_id=contact.id,
                organization_id=contact.organization_id,
                previous_score=None,
                new_score=0,
                score_change=0,
                change_reason=reason or f"Manual status change to {qualification_status}",
                triggered_by="manual",
                user_id=ctx.user_id,
            )
        )
        session.commit()
        session.refresh(lead_score)

        logger.info("lead_score.status_updated", extra={"organization_id": str(contact.organization_id)})
        if previous_status != qualification_status:
            self._publish_status_change(contact, previous_status, qualification_status, ctx)
        return self.to_lead_score_read(lead_score, ctx)

    @staticmethod
    def _publish_status_change(contact: Contact, previous: str, current: str, ctx: AuthContext) -> None:
        events.publish(
            {
                "event_type": "crm.lead_score.status_changed",
                "organization_id": str(contact.organization_id),
                "contact_id": str(contact.id),
                "previous_status": previous,
                "qualification_status": current,
                "correlation_id": ctx.correlation_id,
            }
        )

    def to_lead_score_read(self, lead_score: LeadScore, ctx: AuthContext) -> LeadScoreRead:
        payload = LeadScoreRead.model_validate(lead_score).model_dump(mode="python")
        return LeadScoreRead.model_validate(self.lead_score_repository.apply_read_security(payload, ctx))

    def _to_contact_with_score(self, contact: Contact, ctx: AuthContext) -> ContactWithScoreRead:
        payload = self.contact_repository.apply_read_security(
            ContactRead.model_validate(contact).model_dump(mode="python"), ctx
        )
        lead_score = self.to_lead_score_read(contact.lead_score, ctx) if contact.lead_score is not None else None
        return ContactWithScoreRead.model_validate({**payload, "lead_score": lead_score})


lead_scoring_service = LeadScoringService()
