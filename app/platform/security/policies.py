from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import StrEnum
from threading import Lock
from typing import Protocol

from app.platform.security.context import AuthContext


class FieldAction(StrEnum):
    READ = "field.read"
    MASK = "field.mask"
    EDIT = "field.edit"


class FieldDecision(StrEnum):
    ALLOW = "ALLOW"
    MASK = "MASK"
    DENY = "DENY"


# Grants handed to the organization roles when the policy backend is not in allow-all mode.
# Masks must be granted by name; a wildcard never masks a field.
DEFAULT_ROLE_GRANTS: dict[str, frozenset[str]] = {
    "owner": frozenset({"*"}),
    "admin": frozenset({"*"}),
    "member": frozenset(
        {
            "crm.*",
            "usage.*",
            "subscription.*",
            "platform.notification.*",
            "platform.organization.field.read:*",
            "platform.organization_member.field.read:*",
            "platform.organization_setting.field.read:*",
            "integrations.webhook.field.read:*",
            "integrations.webhook.field.mask:secret",
            "integrations.webhook_delivery.field.read:*",
            "integrations.email_account.*",
        }
    ),
    "viewer": frozenset(
        {
            "crm.contact.field.read:*",
            "crm.contact.field.mask:email",
            "crm.contact.field.mask:phone",
            "crm.lead_score.field.read:*",
            "crm.pipeline.field.read:*",
            "crm.opportunity.field.read:*",
            "platform.notification.*",
        }
    ),
}


class PolicyBackend(Protocol):
    """Field-level decisions for a resource such as ``crm.contact``."""

    def evaluate_field_read(self, resource: str, field: str, ctx: AuthContext) -> FieldDecision:
        ...

    def can_edit_field(self, resource: str, field: str, ctx: AuthContext) -> bool:
        ...


class InMemoryPolicyBackend:
    """Role and direct-permission grants with wildcard support.

    Grants look like ``integrations.webhook.field.mask:secret`` or ``crm.*``.
    With ``default_allow`` every field is readable and editable.
    """

    def __init__(
        self, role_grants: Mapping[str, Iterable[str]] | None = None, *, default_allow: bool = True
    ) -> None:
        self._role_grants = {role: frozenset(grants) for role, grants in (role_grants or {}).items()}
        self._default_allow = default_allow

    def evaluate_field_read(self, resource: str, field: str, ctx: AuthContext) -> FieldDecision:
        if self._default_allow:
            return FieldDecision.ALLOW

        grants = self._grants_for(ctx)
        if f"{resource}.{FieldAction.MASK.value}:{field}" in grants:
            return FieldDecision.MASK
        if self._granted(grants, f"{resource}.{FieldAction.READ.value}:{field}"):
            return FieldDecision.ALLOW
        return FieldDecision.DENY

    def can_edit_field(self, resource: str, field: str, ctx: AuthContext) -> bool:
        if self._default_allow:
            return True
        return self._granted(self._grants_for(ctx), f"{resource}.{FieldAction.EDIT.value}:{field}")

    def _grants_for(self, ctx: AuthContext) -> set[str]:
        grants = set(ctx.permissions)
        for role in ctx.roles:
            grants.update(self._role_grants.get(role.lower(), ()))
        return grants

    @staticmethod
    def _granted(grants: set[str], required: str) -> bool:
        for grant in grants:
            if grant in {"*", required}:
                return True
            # "crm.*" covers every action on every crm resource, "crm.contact.field.read:*" every field.
            if grant.endswith("*") and required.startswith(grant[:-1]):
                return True
        return False


_POLICY_BACKEND: PolicyBackend = InMemoryPolicyBackend(default_allow=True)
_POLICY_LOCK = Lock()


def get_policy_backend() -> PolicyBackend:
    return _POLICY_BACKEND


def set_policy_backend(backend: PolicyBackend) -> None:
    global _POLICY_BACKEND
    with _POLICY_LOCK:
        _POLICY_BACKEND = backend
