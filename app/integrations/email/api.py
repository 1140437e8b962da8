from __future__ import annotations

import uuid

import httpx
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.integrations.email.oauth import OAuthTokenClient, get_oauth_http_client
from app.integrations.email.schemas import AccessTokenRead, EmailAccountCreate, EmailAccountRead, EmailAccountUpdate
from app.integrations.email.service import email_account_service
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_auth_context, require_organization


router = APIRouter(prefix="/api/email-accounts", tags=["email-accounts"])


def get_oauth_client(http: httpx.Client = Depends(get_oauth_http_client)) -> OAuthTokenClient:
    return OAuthTokenClient(http)


@router.post("", response_model=EmailAccountRead, status_code=status.HTTP_201_CREATED)
def connect_account(
    payload: EmailAccountCreate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> EmailAccountRead:
    return email_account_service.connect_account(session, ctx, require_organization(ctx), payload)


@router.get("", response_model=list[EmailAccountRead])
def list_accounts(
    session: Session = Depends(get_db), ctx: AuthContext = Depends(get_auth_context)
) -> list[EmailAccountRead]:
    return email_account_service.list_accounts(session, ctx, require_organization(ctx))


@router.get("/{account_id}", response_model=EmailAccountRead)
def get_account(
    account_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> EmailAccountRead:
    return email_account_service.get_account(session, ctx, account_id)


@router.patch("/{account_id}", response_model=EmailAccountRead)
def update_account(
    account_id: uuid.UUID,
    payload: EmailAccountUpdate,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> EmailAccountRead:
    return email_account_service.update_account(session, ctx, account_id, payload)


@router.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def disconnect_account(
    account_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Response:
    email_account_service.disconnect_account(session, ctx, account_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{account_id}/refresh", response_model=EmailAccountRead)
def refresh_access_token(
    account_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    client: OAuthTokenClient = Depends(get_oauth_client),
) -> EmailAccountRead:
    return email_account_service.refresh_access_token(session, ctx, account_id, client)


@router.get("/{account_id}/access-token", response_model=AccessTokenRead)
def get_valid_access_token(
    account_id: uuid.UUID,
    session: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    client: OAuthTokenClient = Depends(get_oauth_client),
) -> AccessTokenRead:
    return email_account_service.get_valid_access_token(session, ctx, account_id, client)
