"""Error taxonomy for authorization and approval workflow failures.

Every error here is terminal for the request that triggered it: nothing is
committed and nothing is retried automatically.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class ApprovalCoreError(Exception):
    """Base class for all request-level errors raised by this package."""

    code = "APPROVAL_CORE_ERROR"

    def to_dict(self) -> dict[str, Any]:
        """Render a caller-safe representation."""
        return {"detail": str(self), "code": self.code}


# ===== Authentication =====


class AuthenticationError(ApprovalCoreError):
    """The session token could not be used."""

    code = "AUTHENTICATION_FAILED"


class AuthenticationExpired(AuthenticationError):
    """Token expiry reached; the client must re-authenticate."""

    code = "SESSION_EXPIRED"

    def __init__(self, message: str = "Session expired") -> None:
        super().__init__(message)


class InvalidSessionToken(AuthenticationError):
    """Token is malformed, unsigned, or carries an unusable scope."""

    code = "INVALID_SESSION"


# ===== Authorization =====


class AuthorizationError(ApprovalCoreError):
    """Base for access decisions that denied the request."""

    code = "FORBIDDEN"


class PermissionDenied(AuthorizationError):
    """The effective role lacks a permission or minimum hierarchy level."""

    code = "PERMISSION_DENIED"

    def __init__(
        self,
        action: str,
        required_permission: str | None = None,
        required_role: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.action = action
        self.required_permission = required_permission
        self.required_role = required_role
        if reason:
            msg = f"Not allowed to {action}: {reason}"
        elif required_permission:
            msg = f"Not allowed to {action}: requires permission '{required_permission}'"
        elif required_role:
            msg = f"Not allowed to {action}: requires role '{required_role}' or above"
        else:
            msg = f"Not allowed to {action}"
        super().__init__(msg)


class OrgScopeViolation(AuthorizationError):
    """Cross-organization access attempt.

    Rendered to callers exactly like a missing resource so that existence in
    another organization is never disclosed.
    """

    code = "NOT_FOUND"

    def __init__(self, resource: str, target_org_id: UUID | None) -> None:
        self.resource = resource
        self.target_org_id = target_org_id
        super().__init__(f"{resource} not found")


class ResourceNotFound(ApprovalCoreError):
    """Requested resource does not exist."""

    code = "NOT_FOUND"

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"{resource} not found")


# ===== Impersonation =====


class ImpersonationEscalationRejected(ApprovalCoreError):
    """Overlay role outranks the real identity; the overlay is void."""

    code = "IMPERSONATION_REJECTED"

    def __init__(self, real_role: str, target_role: str) -> None:
        self.real_role = real_role
        self.target_role = target_role
        super().__init__(
            f"Impersonation of '{target_role}' rejected: exceeds real role '{real_role}'"
        )


# ===== Workflow =====


class WorkflowError(ApprovalCoreError):
    """Base for approval workflow failures."""

    code = "WORKFLOW_ERROR"


class InvalidTransition(WorkflowError):
    """Transition attempted from the wrong state, by the wrong actor, or out of order."""

    code = "INVALID_TRANSITION"

    def __init__(
        self,
        entity: str,
        current_status: str,
        target_status: str,
        reason: str,
        actor_id: UUID | None = None,
        expected_status: str | None = None,
    ) -> None:
        self.entity = entity
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        self.actor_id = actor_id
        self.expected_status = expected_status
        msg = f"Invalid {entity} transition '{current_status}' -> '{target_status}': {reason}"
        if expected_status:
            msg += f" (expected current state '{expected_status}')"
        if actor_id is not None:
            msg += f" [actor {actor_id}]"
        super().__init__(msg)


class ApproverUnavailable(InvalidTransition):
    """The pending step's designated approver cannot act; the workflow is blocked."""

    code = "APPROVER_UNAVAILABLE"


class ChainConfigurationError(WorkflowError):
    """Approval chain definition is unusable for the organization."""

    code = "INVALID_APPROVAL_CHAIN"


class StaleStateConflict(WorkflowError):
    """A concurrent transition changed the state first.

    Callers must reload and may retry once against the new state.
    """

    code = "STALE_STATE"

    def __init__(self, entity: str, entity_id: UUID, expected_status: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.expected_status = expected_status
        super().__init__(
            f"{entity} {entity_id} is no longer '{expected_status}'; reload and retry"
        )


# ===== Configuration =====


class RoleCatalogError(RuntimeError):
    """Unknown role identifier. A configuration bug, never a request error."""
