from __future__ import annotations

import uuid

from fastapi import Depends, Header, HTTPException, Request, status

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.platform.security.context import AuthContext


def _parse_str_list(raw: str | None) -> list[str]:
    if raw is None:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_auth_context(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    organization_id_header: str | None = Header(default=None, alias="x-organization-id"),
    organization_scope_header: str | None = Header(default=None, alias="x-allowed-organization-ids"),
) -> AuthContext:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    roles = [str(item) for item in auth_user.roles]
    normalized = {item.lower() for item in roles}

    return AuthContext(
        user_id=auth_user.sub,
        organization_id=organization_id_header,
        correlation_id=correlation_id,
        is_super_admin=("admin" in normalized or "system.admin" in normalized),
        roles=roles,
        permissions=roles,
        organization_scope=_parse_str_list(organization_scope_header),
    )


def require_organization(ctx: AuthContext) -> uuid.UUID:
    """Resolve the active organization of a request or fail with 400."""

    if not ctx.organization_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="x-organization-id header is required")
    try:
        organization_id = uuid.UUID(ctx.organization_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid organization id")
    scope = [value for value in ctx.organization_scope if value]
    if scope and not ctx.is_super_admin and ctx.organization_id not in scope:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="organization outside allowed scope")
    return organization_id
