from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, ForbiddenFieldError, OrganizationScopeError
from app.platform.security.fls import MASKED_FIELD_VALUE, apply_fls_read, validate_fls_write
from app.platform.security.policies import (
    DEFAULT_ROLE_GRANTS,
    FieldDecision,
    InMemoryPolicyBackend,
    PolicyBackend,
    get_policy_backend,
    set_policy_backend,
)
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import (
    apply_rls_filter,
    effective_organization_scope,
    is_admin_bypass,
    validate_rls_read_scope,
    validate_rls_write,
)

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "ForbiddenFieldError",
    "OrganizationScopeError",
    "MASKED_FIELD_VALUE",
    "BaseRepository",
    "DEFAULT_ROLE_GRANTS",
    "apply_rls_filter",
    "apply_fls_read",
    "effective_organization_scope",
    "is_admin_bypass",
    "validate_rls_read_scope",
    "validate_rls_write",
    "validate_fls_write",
    "FieldDecision",
    "PolicyBackend",
    "InMemoryPolicyBackend",
    "set_policy_backend",
    "get_policy_backend",
]
