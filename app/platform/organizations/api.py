from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.platform.organizations.schemas import MemberCreate, MemberRead, OrganizationCreate, OrganizationRead
from app.platform.organizations.service import organization_service
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context


router = APIRouter(prefix="/api/organizations", tags=["organizations"])


@router.post("", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
def create_organization(
    payload: OrganizationCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrganizationRead:
    return organization_service.create_organization(db, ctx, payload)


@router.get("", response_model=list[OrganizationRead])
def list_organizations(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[OrganizationRead]:
    return organization_service.list_organizations(db, ctx)


@router.get("/{organization_id}", response_model=OrganizationRead)
def get_organization(
    organization_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> OrganizationRead:
    return organization_service.get_organization(db, ctx, organization_id)


@router.post("/{organization_id}/members", response_model=MemberRead, status_code=status.HTTP_201_CREATED)
def add_member(
    organization_id: uuid.UUID,
    payload: MemberCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> MemberRead:
    return organization_service.add_member(db, ctx, organization_id, payload)


@router.get("/{organization_id}/members", response_model=list[MemberRead])
def list_members(
    organization_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[MemberRead]:
    return organization_service.list_members(db, ctx, organization_id)
