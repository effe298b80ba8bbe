"""Permission resolution and organization scope guarding.

The module-level functions are pure checks over a ``SessionContext``. The
``Authorizer`` is the single per-request authorization layer built on them: it
resolves the effective scope once, and turns every denial into exactly one
audit record plus a typed exception.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from payroll_approvals.audit import AuditEventLogger, AuditRecord, AuditResult
from payroll_approvals.auth.roles import Permission, Role, level_of, permissions_of
from payroll_approvals.auth.session import (
    EffectiveScope,
    SessionContext,
    resolve_effective_scope,
)
from payroll_approvals.errors import AuthenticationExpired, OrgScopeViolation, PermissionDenied
from payroll_approvals.events.types import utcnow

logger = logging.getLogger(__name__)


# ===== Pure checks =====


def has_permission(ctx: SessionContext, permission: Permission, now: datetime | None = None) -> bool:
    """Check a capability against the effective role's permission set."""
    return permission in permissions_of(resolve_effective_scope(ctx, now=now).role)


def has_any_permission(
    ctx: SessionContext, permissions: Iterable[Permission], now: datetime | None = None
) -> bool:
    granted = permissions_of(resolve_effective_scope(ctx, now=now).role)
    return any(p in granted for p in permissions)


def has_all_permissions(
    ctx: SessionContext, permissions: Iterable[Permission], now: datetime | None = None
) -> bool:
    granted = permissions_of(resolve_effective_scope(ctx, now=now).role)
    return all(p in granted for p in permissions)


def has_role_at_least(ctx: SessionContext, required_role: Role, now: datetime | None = None) -> bool:
    """Check the effective role's level against a minimum role."""
    return level_of(resolve_effective_scope(ctx, now=now).role) >= level_of(required_role)


def scope_allows_org(scope: EffectiveScope, target_org_id: UUID | None) -> bool:
    if scope.is_platform_wide:
        return True
    return target_org_id is not None and scope.organization_id == target_org_id


def can_access_org(ctx: SessionContext, target_org_id: UUID | None, now: datetime | None = None) -> bool:
    """True if the effective scope is platform-wide or matches the organization."""
    return scope_allows_org(resolve_effective_scope(ctx, now=now), target_org_id)


# ===== Request-scoped authorization layer =====


class Authorizer:
    """Authorization gate for one request.

    Every organization-scoped read or write passes through
    ``require_org_access`` with the organization id taken from the stored
    resource, never from client input.
    """

    def __init__(
        self,
        ctx: SessionContext,
        audit: AuditEventLogger,
        now: datetime | None = None,
    ):
        self.ctx = ctx
        self.audit = audit
        self._now = now
        self.scope = resolve_effective_scope(ctx, audit, self.now)

    @property
    def now(self) -> datetime:
        return self._now or utcnow()

    @property
    def actor_id(self) -> UUID:
        """Identity the request acts as."""
        return self.scope.acting_user_id

    @property
    def real_user_id(self) -> UUID:
        return self.scope.real_user_id

    @property
    def role(self) -> Role:
        return self.scope.role

    @property
    def organization_id(self) -> UUID | None:
        return self.scope.organization_id

    # --- checks without side effects ---

    def has_permission(self, permission: Permission) -> bool:
        return permission in permissions_of(self.scope.role)

    def has_role_at_least(self, required_role: Role) -> bool:
        return level_of(self.scope.role) >= level_of(required_role)

    def can_access_org(self, target_org_id: UUID | None) -> bool:
        return scope_allows_org(self.scope, target_org_id)

    # --- enforcing checks ---

    def require_active_session(self) -> None:
        """Raise AuthenticationExpired once the token expiry has passed."""
        if self.ctx.is_expired(self.now):
            raise AuthenticationExpired()

    def require_permission(
        self,
        permission: Permission,
        action: str,
        target: str,
        organization_id: UUID | None = None,
    ) -> None:
        """Raise PermissionDenied unless the effective role holds ``permission``."""
        if self.has_permission(permission):
            return
        logger.info(
            "Permission denied: actor=%s role=%s action=%s requires=%s",
            self.actor_id,
            self.role.value,
            action,
            permission.value,
        )
        self.record(action, target, AuditResult.DENIED, organization_id,
                    required_permission=permission.value)
        raise PermissionDenied(action, required_permission=permission.value)

    def require_role_at_least(
        self,
        required_role: Role,
        action: str,
        target: str,
        organization_id: UUID | None = None,
    ) -> None:
        """Raise PermissionDenied unless the effective level reaches ``required_role``."""
        if self.has_role_at_least(required_role):
            return
        logger.info(
            "Role level denied: actor=%s role=%s action=%s requires=%s",
            self.actor_id,
            self.role.value,
            action,
            required_role.value,
        )
        self.record(action, target, AuditResult.DENIED, organization_id,
                    required_role=required_role.value)
        raise PermissionDenied(action, required_role=required_role.value)

    def require_org_access(self, target_org_id: UUID | None, action: str, resource: str, target: str) -> None:
        """Raise OrgScopeViolation for cross-organization access."""
        if self.can_access_org(target_org_id):
            return
        logger.warning(
            "SECURITY: cross-organization access blocked: actor=%s real=%s role=%s "
            "effective_org=%s target_org=%s action=%s target=%s",
            self.actor_id,
            self.real_user_id,
            self.role.value,
            self.organization_id,
            target_org_id,
            action,
            target,
        )
        self.record(action, target, AuditResult.SECURITY, target_org_id,
                    violation="org_scope", effective_org=self.organization_id)
        raise OrgScopeViolation(resource, target_org_id)

    def record(
        self,
        action: str,
        target: str,
        result: AuditResult,
        organization_id: UUID | None = None,
        **details: object,
    ) -> AuditRecord:
        """Record one audit entry attributed to this request's actor."""
        entry = AuditRecord(
            actor_id=self.actor_id,
            real_identity_id=self.real_user_id,
            action=action,
            target=target,
            result=result,
            timestamp=self.now,
            organization_id=organization_id,
            details=dict(details),
        )
        self.audit.record(entry)
        return entry
