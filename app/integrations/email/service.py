from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.core.clock import ensure_utc
from app.integrations.email.models import EmailAccount
from app.integrations.email.oauth import OAuthNotConfiguredError, OAuthRefreshError, OAuthTokenClient
from app.integrations.email.repository import EmailAccountRepository
from app.integrations.email.schemas import (
    AccessTokenRead,
    EmailAccountCreate,
    EmailAccountRead,
    EmailAccountUpdate,
    RefreshSweepResult,
)
from app.metrics import observe_oauth_refresh
from app.platform.security.context import AuthContext
from app.platform.notifications.service import notification_service
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError
from app.platform.settings.service import feature_flag_service, flag_enabled

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("app.integrations.email")

EMAIL_ACCOUNTS_URL = "/settings/email-accounts"
REFRESH_WINDOW = timedelta(minutes=5)
DEFAULT_EXPIRES_IN = 3600
SWEEP_BATCH_SIZE = 200


def needs_refresh(account: EmailAccount, now: datetime | None = None) -> bool:
    """True when the access token is missing, has no known expiry, or expires within five minutes."""

    current = now or datetime.now(timezone.utc)
    if not account.access_token or account.token_expires_at is None:
        return True
    return ensure_utc(account.token_expires_at) <= current + REFRESH_WINDOW


@dataclass(slots=True)
class EmailAccountService:
    account_repository: EmailAccountRepository = EmailAccountRepository()

    def connect_account(
        self,
        session: Session,
        ctx: AuthContext,
        organization_id: uuid.UUID,
        payload: EmailAccountCreate,
        *,
        now: datetime | None = None,
    ) -> EmailAccountRead:
        current = now or datetime.now(timezone.utc)
        data = {
            "organization_id": organization_id,
            **payload.model_dump(mode="json", exclude={"access_token", "refresh_token", "expires_in"}),
        }
        try:
            self.account_repository.validate_write_security(data, ctx, action="create")
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        self._enforce_account_limit(session, ctx, organization_id)

        account = EmailAccount(
            organization_id=organization_id,
            user_id=ctx.user_id,
            email=str(payload.email).lower(),
            display_name=payload.display_name,
            provider_type=payload.provider_type,
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            token_expires_at=current + timedelta(seconds=payload.expires_in or DEFAULT_EXPIRES_IN),
            is_active=True,
        )
        session.add(account)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="email account already connected")
        session.refresh(account)

        logger.info(
            "email_account.connected",
            extra={"organization_id": str(organization_id), "account_id": str(account.id), "provider": account.provider_type},
        )
        events.publish(
            {
                "event_type": "email_account.connected",
                "organization_id": str(organization_id),
                "account_id": str(account.id),
                "provider_type": account.provider_type,
                "correlation_id": ctx.correlation_id,
            }
        )
        return self._to_account_read(account, ctx)

    def list_accounts(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> list[EmailAccountRead]:
        query = select(EmailAccount).where(EmailAccount.organization_id == organization_id)
        rows = session.scalars(
            self.account_repository.apply_scope_query(query, ctx).order_by(EmailAccount.created_at.asc())
        ).all()
        return [self._to_account_read(row, ctx) for row in rows]

    def get_account(self, session: Session, ctx: AuthContext, account_id: uuid.UUID) -> EmailAccountRead:
        return self._to_account_read(self.load(session, ctx, account_id), ctx)

    def update_account(
        self, session: Session, ctx: AuthContext, account_id: uuid.UUID, payload: EmailAccountUpdate
    ) -> EmailAccountRead:
        account = self.load(session, ctx, account_id)
        changes = payload.model_dump(exclude_unset=True)
        try:
            self.account_repository.validate_write_security(
                changes, ctx, existing_scope={"organization_id": str(account.organization_id)}, action="update"
            )
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        if changes.get("is_active") and not account.is_active:
            self._enforce_account_limit(session, ctx, account.organization_id)
        for key, value in changes.items():
            setattr(account, key, value)
        session.commit()
        session.refresh(account)
        return self._to_account_read(account, ctx)

    def disconnect_account(self, session: Session, ctx: AuthContext, account_id: uuid.UUID) -> None:
        account = self.load(session, ctx, account_id)
        try:
            self.account_repository.validate_write_security(
                {}, ctx, existing_scope={"organization_id": str(account.organization_id)}, action="delete"
            )
        except (ForbiddenFieldError, AuthorizationError) as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        organization_id = account.organization_id
        session.delete(account)
        session.commit()
        events.publish(
            {
                "event_type": "email_account.disconnected",
                "organization_id": str(organization_id),
                "account_id": str(account_id),
                "correlation_id": ctx.correlation_id,
            }
        )

    def refresh_access_token(
        self,
        session: Session,
        ctx: AuthContext,
        account_id: uuid.UUID,
        client: OAuthTokenClient,
        *,
        now: datetime | None = None,
    ) -> EmailAccountRead:
        account = self.load(session, ctx, account_id)
        self._refresh(session, account, client, now=now)
        return self._to_account_read(account, ctx)

    def get_valid_access_token(
        self,
        session: Session,
        ctx: AuthContext,
        account_id: uuid.UUID,
        client: OAuthTokenClient,
        *,
        now: datetime | None = None,
    ) -> AccessTokenRead:
        account = self.load(session, ctx, account_id)
        if not account.is_active:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="email account is inactive; reconnect it")
        refreshed = False
        if needs_refresh(account, now):
            self._refresh(session, account, client, now=now)
            refreshed = True
        return AccessTokenRead(
            account_id=account.id,
            access_token=account.access_token or "",
            token_expires_at=account.token_expires_at,
            refreshed=refreshed,
        )

    def refresh_expiring_tokens(
        self, session: Session, client: OAuthTokenClient, *, now: datetime | None = None
    ) -> RefreshSweepResult:
        """Refresh every active account whose token expires inside the refresh window."""

        current = now or datetime.now(timezone.utc)
        accounts = session.scalars(
            select(EmailAccount)
            .where(
                EmailAccount.is_active.is_(True),
                EmailAccount.refresh_token.is_not(None),
                or_(
                    EmailAccount.token_expires_at.is_(None),
                    EmailAccount.token_expires_at <= current + REFRESH_WINDOW,
                ),
            )
            .order_by(EmailAccount.token_expires_at.asc())
            .limit(SWEEP_BATCH_SIZE)
        ).all()

        result = RefreshSweepResult()
        for account in accounts:
            result.processed += 1
            try:
                self._refresh(session, account, client, now=current)
            except HTTPException:
                result.failed += 1
                continue
            result.refreshed += 1
        return result

    def load(self, session: Session, ctx: AuthContext, account_id: uuid.UUID) -> EmailAccount:
        account = session.get(EmailAccount, account_id)
        if account is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="email account not found")
        try:
            self.account_repository.validate_read_scope(ctx, organization_id=account.organization_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        return account

    @staticmethod
    def count_active_accounts(session: Session, organization_id: uuid.UUID) -> int:
        return int(
            session.scalar(
                select(func.count())
                .select_from(EmailAccount)
                .where(EmailAccount.organization_id == organization_id, EmailAccount.is_active.is_(True))
            )
            or 0
        )

    def _enforce_account_limit(self, session: Session, ctx: AuthContext, organization_id: uuid.UUID) -> None:
        flags = feature_flag_service.get_feature_flags(session, ctx, organization_id).flags
        if not flag_enabled(flags.get("EMAIL_SYNC")):
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail="Email sync is not included in your plan. Please upgrade to connect email accounts.",
            )
        # One mailbox per seat unless the organization carries an explicit override.
        limit = flags.get("MAX_EMAIL_ACCOUNTS", flags.get("MAX_USERS"))
        if isinstance(limit, bool) or not isinstance(limit, (int, float)):
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED, detail="Email account limit not defined in subscription"
            )
        if limit == -1:
            return
        current = self.count_active_accounts(session, organization_id)
        if current >= limit:
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail=f"Your plan is limited to {int(limit)} email accounts. Please upgrade to connect more accounts.",
            )

    def _refresh(
        self, session: Session, account: EmailAccount, client: OAuthTokenClient, *, now: datetime | None = None
    ) -> None:
        current = now or datetime.now(timezone.utc)
        provider = account.provider_type
        log_extra: dict[str, Any] = {
            "organization_id": str(account.organization_id),
            "account_id": str(account.id),
            "provider": provider,
        }
        if not account.refresh_token:
            self._mark_failed(session, account, "no refresh token stored")
            observe_oauth_refresh(provider, "failed")
            logger.warning("email_account.refresh_failed", extra={**log_extra, "error": "no refresh token"})
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="email account has no refresh token")

        try:
            with tracer.start_as_current_span("email_account.refresh_token") as span:
                span.set_attribute("account_id", str(account.id))
                span.set_attribute("provider", provider)
                grant = client.refresh(provider, account.refresh_token)
        except OAuthNotConfiguredError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
        except OAuthRefreshError as exc:
            self._mark_failed(session, account, str(exc))
            observe_oauth_refresh(provider, "failed")
            logger.warning("email_account.refresh_failed", extra={**log_extra, "error": str(exc)})
            events.publish(
                {
                    "event_type": "email_account.refresh_failed",
                    "organization_id": str(account.organization_id),
                    "account_id": str(account.id),
                    "provider_type": provider,
                }
            )
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY, detail=f"failed to refresh {provider} access token"
            )

        account.access_token = grant.access_token
        account.refresh_token = grant.refresh_token or account.refresh_token
        account.token_expires_at = current + timedelta(seconds=grant.expires_in)
        account.last_refreshed_at = current
        account.last_error = None
        account.is_active = True
        session.commit()
        session.refresh(account)
        observe_oauth_refresh(provider, "success")
        logger.info("email_account.token_refreshed", extra=log_extra)

    @staticmethod
    def _mark_failed(session: Session, account: EmailAccount, error: str) -> None:
        account.is_active = False
        account.last_error = error
        notification_service.stage(
            session,
            organization_id=account.organization_id,
            user_id=account.user_id,
            title="Email account disconnected",
            message=f"We could not refresh access to {account.email}. Reconnect the account to resume syncing.",
            type="warning",
            action_url=EMAIL_ACCOUNTS_URL,
            metadata={"category": "email", "event": "token_refresh_failed", "account_id": str(account.id)},
        )
        session.commit()

    def _to_account_read(self, account: EmailAccount, ctx: AuthContext) -> EmailAccountRead:
        payload = {
            "id": account.id,
            "organization_id": account.organization_id,
            "user_id": account.user_id,
            "email": account.email,
            "display_name": account.display_name,
            "provider_type": account.provider_type,
            "token_expires_at": account.token_expires_at,
            "has_refresh_token": bool(account.refresh_token),
            "is_active": account.is_active,
            "last_refreshed_at": account.last_refreshed_at,
            "last_error": account.last_error,
            "created_at": account.created_at,
            "updated_at": account.updated_at,
        }
        return EmailAccountRead.model_validate(self.account_repository.apply_read_security(payload, ctx))


email_account_service = EmailAccountService()
