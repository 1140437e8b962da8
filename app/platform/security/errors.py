from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for scope and field policy failures."""


class ForbiddenFieldError(AuthorizationError):
    """Raised when a payload contains fields that are not editable by policy."""

    def __init__(self, resource: str, fields: list[str]) -> None:
        self.resource = resource
        self.fields = sorted(set(fields))
        super().__init__(f"Forbidden fields for resource '{resource}': {', '.join(self.fields)}")


class OrganizationScopeError(AuthorizationError):
    """Raised when a record belongs to an organization outside the caller's scope."""

    def __init__(self, resource: str, organization_id: str) -> None:
        self.resource = resource
        self.organization_id = organization_id
        super().__init__(f"Out-of-scope organization_id for resource '{resource}'")
