from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.sql import Select

from app import audit
from app.metrics import observe_rls_denied_read, observe_rls_denied_write
from app.platform.security.context import AuthContext
from app.platform.security.errors import OrganizationScopeError


def is_admin_bypass(ctx: AuthContext) -> bool:
    if ctx.is_super_admin:
        return True
    role_set = {item.lower() for item in ctx.roles}
    permission_set = {item.lower() for item in ctx.permissions}
    return "admin" in role_set or "admin" in permission_set or "system.admin" in permission_set


def effective_organization_scope(ctx: AuthContext) -> list[str]:
    """Organizations the caller may see; the active organization when no explicit scope is sent."""

    scope = [value for value in ctx.organization_scope if value]
    if scope:
        return scope
    if ctx.organization_id:
        return [ctx.organization_id]
    return []


def scope_as_uuids(scope: list[str]) -> list[uuid.UUID]:
    values: list[uuid.UUID] = []
    for raw in scope:
        try:
            values.append(uuid.UUID(str(raw)))
        except ValueError:
            continue
    return values


def apply_rls_filter(query: Select[Any], resource: str, ctx: AuthContext) -> Select[Any]:
    """Restrict queries on models exposing an organization_id column to the caller's scope."""

    if is_admin_bypass(ctx):
        return query

    scope = effective_organization_scope(ctx)
    if not scope:
        return query
    allowed = scope_as_uuids(scope)

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "organization_id"):
            query = query.where(getattr(model, "organization_id").in_(allowed))

    return query


def validate_rls_write(
    resource: str,
    payload: dict[str, Any],
    ctx: AuthContext,
    *,
    action: str = "write",
    existing_scope: dict[str, str | None] | None = None,
) -> None:
    """Reject writes that target an organization outside the caller's scope."""

    if is_admin_bypass(ctx):
        return

    scope = effective_organization_scope(ctx)
    if not scope:
        return

    organization_value = payload.get("organization_id")
    if organization_value is None and existing_scope is not None:
        organization_value = existing_scope.get("organization_id")
    if organization_value is None:
        return

    if str(organization_value) not in set(scope):
        _emit_rls_denied(resource=resource, action=action, scope_value=str(organization_value), ctx=ctx, is_read=False)
        raise OrganizationScopeError(resource, str(organization_value))


def validate_rls_read_scope(
    resource: str,
    ctx: AuthContext,
    *,
    organization_id: str | None,
    action: str = "read",
) -> None:
    """Validate record-level read scope for records loaded by id."""

    if is_admin_bypass(ctx):
        return

    scope = effective_organization_scope(ctx)
    if not scope or organization_id is None:
        return

    if organization_id not in set(scope):
        _emit_rls_denied(resource=resource, action=action, scope_value=organization_id, ctx=ctx, is_read=True)
        raise OrganizationScopeError(resource, organization_id)


def _emit_rls_denied(
    *,
    resource: str,
    action: str,
    scope_value: str,
    ctx: AuthContext,
    is_read: bool,
) -> None:
    if is_read:
        observe_rls_denied_read(resource=resource, scope_type="organization")
    else:
        observe_rls_denied_write(resource=resource, scope_type="organization")

    audit.record_denial(
        ctx,
        kind="rls",
        resource=resource,
        operation=action,
        details={"scope_type": "organization", "scope_value": scope_value},
    )
