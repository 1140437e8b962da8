"""Field-level security: what a caller may see and change on a resource's fields."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app import audit
from app.metrics import observe_fls_field_counts
from app.platform.security.context import AuthContext
from app.platform.security.errors import ForbiddenFieldError
from app.platform.security.policies import FieldDecision, get_policy_backend


MASKED_FIELD_VALUE = "***"


@dataclass(slots=True)
class FieldReadOutcome:
    visible: dict[str, Any] = field(default_factory=dict)
    masked: list[str] = field(default_factory=list)
    denied: list[str] = field(default_factory=list)


def evaluate_read(resource: str, record: dict[str, Any], ctx: AuthContext) -> FieldReadOutcome:
    policy = get_policy_backend()
    outcome = FieldReadOutcome()
    for name, value in record.items():
        decision = policy.evaluate_field_read(resource, name, ctx)
        if decision == FieldDecision.DENY:
            outcome.denied.append(name)
        elif decision == FieldDecision.MASK:
            outcome.visible[name] = MASKED_FIELD_VALUE
            outcome.masked.append(name)
        else:
            outcome.visible[name] = value
    return outcome


def apply_fls_read(resource: str, record: dict[str, Any], ctx: AuthContext) -> dict[str, Any]:
    """Drop denied fields and mask masked ones before a record leaves a service."""

    outcome = evaluate_read(resource, record, ctx)
    if outcome.masked or outcome.denied:
        _record_field_denial(
            resource,
            "read",
            ctx,
            record_id=record.get("id"),
            masked=outcome.masked,
            denied=outcome.denied,
        )
    return outcome.visible


def validate_fls_write(resource: str, payload: dict[str, Any], ctx: AuthContext) -> None:
    policy = get_policy_backend()
    denied = [name for name in payload if not policy.can_edit_field(resource, name, ctx)]
    if denied:
        _record_field_denial(resource, "write", ctx, record_id=payload.get("id"), masked=[], denied=denied)
        raise ForbiddenFieldError(resource=resource, fields=denied)


def _record_field_denial(
    resource: str,
    operation: str,
    ctx: AuthContext,
    *,
    record_id: Any,
    masked: list[str],
    denied: list[str],
) -> None:
    observe_fls_field_counts(resource=resource, operation=operation, masked_count=len(masked), denied_count=len(denied))
    audit.record_denial(
        ctx,
        kind="fls",
        resource=resource,
        operation=operation,
        details={
            "record_id": str(record_id) if record_id is not None else "unknown",
            "masked_fields": masked,
            "denied_fields": denied,
        },
    )
