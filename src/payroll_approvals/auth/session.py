"""Session context and impersonation overlay resolution.

The effective role and organization used for every authorization decision is
the overlay's when an overlay is present, unexpired and does not outrank the
real identity; otherwise it is the real identity's. The real identity is never
discarded, so audit attribution always names who actually authenticated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from payroll_approvals.audit import AuditEventLogger, AuditRecord, AuditResult
from payroll_approvals.auth.roles import Role, is_platform_role, level_of
from payroll_approvals.errors import ImpersonationEscalationRejected
from payroll_approvals.events.types import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Authenticated identity. Immutable for the lifetime of a token."""

    user_id: UUID
    organization_id: UUID | None  # None = platform scope
    role: Role

    def __post_init__(self) -> None:
        platform = is_platform_role(self.role)
        if platform and self.organization_id is not None:
            raise ValueError(f"Platform role '{self.role.value}' cannot be bound to an organization")
        if not platform and self.organization_id is None:
            raise ValueError(f"Role '{self.role.value}' requires an organization")


@dataclass(frozen=True)
class ImpersonationOverlay:
    """Time-bounded grant to act under another role/organization."""

    acting_user_id: UUID | None  # User being acted as, if any
    target_organization_id: UUID | None
    target_role: Role
    expires_at: datetime

    def __post_init__(self) -> None:
        platform = is_platform_role(self.target_role)
        if platform and self.target_organization_id is not None:
            raise ValueError("Platform overlay roles cannot target an organization")
        if not platform and self.target_organization_id is None:
            raise ValueError(f"Overlay role '{self.target_role.value}' requires a target organization")

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass(frozen=True)
class SessionContext:
    """Decoded session: real identity, optional overlay, token expiry."""

    identity: Identity
    token_expiry: datetime
    overlay: ImpersonationOverlay | None = None

    @property
    def real_user_id(self) -> UUID:
        return self.identity.user_id

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.token_expiry <= (now or utcnow())

    def seconds_until_expiry(self, now: datetime | None = None) -> int:
        remaining = (self.token_expiry - (now or utcnow())).total_seconds()
        return max(0, int(remaining))


@dataclass(frozen=True)
class EffectiveScope:
    """The role and organization actually used for authorization."""

    role: Role
    organization_id: UUID | None
    real_user_id: UUID
    acting_user_id: UUID
    impersonating: bool = False

    @property
    def is_platform_wide(self) -> bool:
        return self.organization_id is None and is_platform_role(self.role)


def validate_overlay(identity: Identity, overlay: ImpersonationOverlay) -> None:
    """Reject an overlay that would escalate the real identity.

    Raises ImpersonationEscalationRejected.
    """
    if level_of(overlay.target_role) > level_of(identity.role):
        raise ImpersonationEscalationRejected(identity.role.value, overlay.target_role.value)
    if identity.organization_id is not None and (
        is_platform_role(overlay.target_role)
        or overlay.target_organization_id != identity.organization_id
    ):
        # Organization-bound identities cannot widen their organization scope
        raise ImpersonationEscalationRejected(identity.role.value, overlay.target_role.value)


def _real_scope(ctx: SessionContext) -> EffectiveScope:
    identity = ctx.identity
    return EffectiveScope(
        role=identity.role,
        organization_id=identity.organization_id,
        real_user_id=identity.user_id,
        acting_user_id=identity.user_id,
    )


def resolve_effective_scope(
    ctx: SessionContext,
    audit: AuditEventLogger | None = None,
    now: datetime | None = None,
) -> EffectiveScope:
    """Resolve the effective role/org for a session.

    Steps:
    1. No overlay, or overlay expired: real identity.
    2. Overlay within the real identity's level: overlay role/org, and an
       ``impersonation.use`` audit record.
    3. Overlay would escalate (outranks the real level, or widens an
       organization-bound identity): overlay treated as absent, logged as a
       security event and recorded as ``impersonation.escalation_rejected``.
    """
    now = now or utcnow()
    overlay = ctx.overlay
    if overlay is None or overlay.is_expired(now):
        return _real_scope(ctx)

    identity = ctx.identity
    try:
        validate_overlay(identity, overlay)
    except ImpersonationEscalationRejected as exc:
        logger.error(
            "SECURITY: impersonation overlay rejected for user %s: %s",
            identity.user_id,
            exc,
        )
        if audit is not None:
            audit.record(
                AuditRecord(
                    actor_id=identity.user_id,
                    real_identity_id=identity.user_id,
                    action="impersonation.escalation_rejected",
                    target=f"organization:{overlay.target_organization_id or 'platform'}",
                    result=AuditResult.SECURITY,
                    timestamp=now,
                    organization_id=overlay.target_organization_id,
                    details={
                        "real_role": identity.role.value,
                        "target_role": overlay.target_role.value,
                    },
                )
            )
        return _real_scope(ctx)

    acting = overlay.acting_user_id or identity.user_id
    if audit is not None:
        audit.record(
            AuditRecord(
                actor_id=acting,
                real_identity_id=identity.user_id,
                action="impersonation.use",
                target=f"organization:{overlay.target_organization_id or 'platform'}",
                result=AuditResult.SUCCESS,
                timestamp=now,
                organization_id=overlay.target_organization_id,
                details={
                    "acting_as_role": overlay.target_role.value,
                    "authenticated_role": identity.role.value,
                    "overlay_expires_at": overlay.expires_at,
                },
            )
        )
    return EffectiveScope(
        role=overlay.target_role,
        organization_id=overlay.target_organization_id,
        real_user_id=identity.user_id,
        acting_user_id=acting,
        impersonating=True,
    )


def effective_role(
    ctx: SessionContext,
    audit: AuditEventLogger | None = None,
    now: datetime | None = None,
) -> Role:
    """Role used for permission checks."""
    return resolve_effective_scope(ctx, audit, now).role


def effective_org(
    ctx: SessionContext,
    audit: AuditEventLogger | None = None,
    now: datetime | None = None,
) -> UUID | None:
    """Organization used for scope checks; None means platform-wide."""
    return resolve_effective_scope(ctx, audit, now).organization_id
