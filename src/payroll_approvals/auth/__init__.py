"""Role catalog, session resolution and authorization checks."""

from payroll_approvals.auth.authorizer import (
    Authorizer,
    can_access_org,
    has_all_permissions,
    has_any_permission,
    has_permission,
    has_role_at_least,
)
from payroll_approvals.auth.roles import (
    ROLE_CATALOG,
    Permission,
    Role,
    Scope,
    level_of,
    parse_role,
    permissions_of,
    scope_of,
)
from payroll_approvals.auth.session import (
    EffectiveScope,
    Identity,
    ImpersonationOverlay,
    SessionContext,
    effective_org,
    effective_role,
    resolve_effective_scope,
)
from payroll_approvals.auth.tokens import resolve_org_scope

__all__ = [
    "ROLE_CATALOG",
    "Role",
    "Permission",
    "Scope",
    "level_of",
    "parse_role",
    "permissions_of",
    "scope_of",
    "Identity",
    "ImpersonationOverlay",
    "SessionContext",
    "EffectiveScope",
    "resolve_effective_scope",
    "effective_role",
    "effective_org",
    "resolve_org_scope",
    "Authorizer",
    "has_permission",
    "has_any_permission",
    "has_all_permissions",
    "has_role_at_least",
    "can_access_org",
]
