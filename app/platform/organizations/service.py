from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import HTTPException, status
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.platform.organizations.models import Organization, OrganizationMember
from app.platform.organizations.repository import OrganizationMemberRepository, OrganizationRepository
from app.platform.organizations.schemas import MemberCreate, MemberRead, OrganizationCreate, OrganizationRead
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError
from app.platform.security.rls import effective_organization_scope, is_admin_bypass, scope_as_uuids


@dataclass(slots=True)
class OrganizationService:
    organization_repository: OrganizationRepository = OrganizationRepository()
    member_repository: OrganizationMemberRepository = OrganizationMemberRepository()

    def create_organization(self, session: Session, ctx: AuthContext, payload: OrganizationCreate) -> OrganizationRead:
        data = payload.model_dump(mode="python")
        try:
            self.organization_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        organization = Organization(**data, created_by=ctx.user_id)
        session.add(organization)
        try:
            session.flush()
            session.add(OrganizationMember(organization_id=organization.id, user_id=ctx.user_id, role="owner"))
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="organization slug already exists")
        session.refresh(organization)

        events.publish(
            {
                "event_type": "organization.created",
                "organization_id": str(organization.id),
                "slug": organization.slug,
                "correlation_id": ctx.correlation_id,
            }
        )
        return self._to_organization_read(organization, ctx)

    def get_organization(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> OrganizationRead:
        return self._to_organization_read(self.load(session, ctx, organization_id), ctx)

    def list_organizations(self, session: Session, ctx: AuthContext) -> list[OrganizationRead]:
        query = select(Organization).order_by(Organization.created_at.asc(), Organization.id.asc())
        if not is_admin_bypass(ctx):
            member_of = select(OrganizationMember.organization_id).where(OrganizationMember.user_id == ctx.user_id)
            allowed = scope_as_uuids(effective_organization_scope(ctx))
            query = query.where(or_(Organization.id.in_(member_of), Organization.id.in_(allowed)))
        rows = session.scalars(query).all()
        return [self._to_organization_read(row, ctx) for row in rows]

    def add_member(
        self, session: Session, ctx: AuthContext, organization_id: uuid.UUID, payload: MemberCreate
    ) -> MemberRead:
        organization = self.load(session, ctx, organization_id)
        data = {"organization_id": organization.id, **payload.model_dump(mode="python")}
        try:
            self.member_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        member = OrganizationMember(**data)
        session.add(member)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user is already a member")
        session.refresh(member)
        return self._to_member_read(member, ctx)

    def list_members(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> list[MemberRead]:
        organization = self.load(session, ctx, organization_id)
        rows = session.scalars(
            select(OrganizationMember)
            .where(OrganizationMember.organization_id == organization.id)
            .order_by(OrganizationMember.created_at.asc())
        ).all()
        return [self._to_member_read(row, ctx) for row in rows]

    @staticmethod
    def count_members(session: Session, organization_id: uuid.UUID) -> int:
        return int(
            session.scalar(
                select(func.count()).select_from(OrganizationMember).where(OrganizationMember.organization_id == organization_id)
            )
            or 0
        )

    def load(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> Organization:
        organization = session.get(Organization, organization_id)
        if organization is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="organization not found")
        try:
            self.organization_repository.validate_read_scope(ctx, organization_id=organization.id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        return organization

    def _to_organization_read(self, organization: Organization, ctx: AuthContext) -> OrganizationRead:
        payload = {
            "id": organization.id,
            "name": organization.name,
            "slug": organization.slug,
            "subscription_tier": organization.subscription_tier,
            "stripe_customer_id": organization.stripe_customer_id,
            "created_at": organization.created_at,
            "updated_at": organization.updated_at,
        }
        return OrganizationRead.model_validate(self.organization_repository.apply_read_security(payload, ctx))

    def _to_member_read(self, member: OrganizationMember, ctx: AuthContext) -> MemberRead:
        payload = {
            "id": member.id,
            "organization_id": member.organization_id,
            "user_id": member.user_id,
            "role": member.role,
            "created_at": member.created_at,
        }
        return MemberRead.model_validate(self.member_repository.apply_read_security(payload, ctx))


organization_service = OrganizationService()
