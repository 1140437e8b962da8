"""In-process journal of security decisions.

Row- and field-level denials are not business events, so they never reach the
``audit_logs`` table. They are kept here for the request's lifetime and written
to the ``app.security`` logger.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.platform.security.context import AuthContext

logger = logging.getLogger("app.security")

security_decisions: list[dict[str, Any]] = []


def record_denial(
    ctx: AuthContext,
    *,
    kind: str,
    resource: str,
    operation: str,
    details: dict[str, Any],
) -> dict[str, Any]:
    entry = {
        "kind": kind,
        "resource": resource,
        "operation": operation,
        "user_id": ctx.user_id,
        "organization_id": ctx.organization_id,
        "roles": list(ctx.roles),
        "correlation_id": ctx.correlation_id or get_correlation_id(),
        "details": details,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    security_decisions.append(entry)
    logger.warning(
        f"security.{kind}.denied",
        extra={"organization_id": ctx.organization_id, "event_name": f"{resource}.{operation}"},
    )
    return entry


def denials_of(kind: str) -> list[dict[str, Any]]:
    return [entry for entry in security_decisions if entry["kind"] == kind]
