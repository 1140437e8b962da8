from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from app.platform.security.context import AuthContext
from app.platform.security.fls import apply_fls_read, validate_fls_write
from app.platform.security.rls import apply_rls_filter, validate_rls_read_scope, validate_rls_write


class BaseRepository:
    """Row and field security for one resource; services call it around every load and write."""

    resource = ""
    # Set by services rather than callers, so field edit grants do not apply to them.
    system_fields: frozenset[str] = frozenset({"organization_id", "created_by", "user_id"})

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_rls_filter(query, self.resource, ctx)

    def validate_read_scope(self, ctx: AuthContext, *, organization_id: Any, action: str = "read") -> None:
        scope_value = None if organization_id is None else str(organization_id)
        validate_rls_read_scope(self.resource, ctx, organization_id=scope_value, action=action)

    def apply_read_security(self, record: dict[str, Any], ctx: AuthContext) -> dict[str, Any]:
        return apply_fls_read(self.resource, record, ctx)

    def validate_write_security(
        self,
        payload: dict[str, Any],
        ctx: AuthContext,
        *,
        existing_scope: dict[str, str | None] | None = None,
        action: str = "write",
    ) -> None:
        validate_rls_write(self.resource, payload, ctx, existing_scope=existing_scope, action=action)
        editable = {key: value for key, value in payload.items() if key not in self.system_fields}
        validate_fls_write(self.resource, editable, ctx)
