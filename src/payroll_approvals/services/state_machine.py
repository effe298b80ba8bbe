"""Pay run and approval step state machines with transition validation."""

from __future__ import annotations

from enum import Enum

from payroll_approvals.errors import InvalidTransition


class PayRunStatus(str, Enum):
    """Pay run status values."""

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    LOCKED = "locked"


class StepStatus(str, Enum):
    """Approval step status values."""

    WAITING = "waiting"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WorkflowStatus(str, Enum):
    """Approval workflow status values."""

    ACTIVE = "active"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


class PayRunStateMachine:
    """State machine for pay run status transitions.

    Allowed transitions:
    - draft → pending_approval (submit)
    - pending_approval → approved (final step approved)
    - pending_approval → rejected (any step rejected)
    - approved → locked
    - rejected → draft (return for resubmission)

    Administrative unlock additionally allows pending_approval, approved and
    locked → draft, independent of the step chain.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayRunStatus.DRAFT: [PayRunStatus.PENDING_APPROVAL],
        PayRunStatus.PENDING_APPROVAL: [PayRunStatus.APPROVED, PayRunStatus.REJECTED],
        PayRunStatus.APPROVED: [PayRunStatus.LOCKED],
        PayRunStatus.REJECTED: [PayRunStatus.DRAFT],
        PayRunStatus.LOCKED: [],
    }

    ADMIN_TRANSITIONS: dict[str, list[str]] = {
        PayRunStatus.PENDING_APPROVAL: [PayRunStatus.DRAFT],
        PayRunStatus.APPROVED: [PayRunStatus.DRAFT],
        PayRunStatus.LOCKED: [PayRunStatus.DRAFT],
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str, admin: bool = False) -> bool:
        """Check if a transition is valid."""
        if to_status in cls.VALID_TRANSITIONS.get(from_status, []):
            return True
        return admin and to_status in cls.ADMIN_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(
        cls,
        from_status: str,
        to_status: str,
        admin: bool = False,
        actor_id=None,
    ) -> None:
        """Validate a transition, raising InvalidTransition if invalid."""
        if not cls.can_transition(from_status, to_status, admin):
            expected = [
                _value(src)
                for src, targets in cls.VALID_TRANSITIONS.items()
                if to_status in targets
            ]
            raise InvalidTransition(
                "pay_run",
                _value(from_status),
                _value(to_status),
                "transition not allowed",
                actor_id=actor_id,
                expected_status=" or ".join(expected) or None,
            )


class StepStateMachine:
    """State machine for approval steps.

    - waiting → pending (previous step approved)
    - pending → approved | rejected

    Approved and rejected are terminal.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        StepStatus.WAITING: [StepStatus.PENDING],
        StepStatus.PENDING: [StepStatus.APPROVED, StepStatus.REJECTED],
        StepStatus.APPROVED: [],
        StepStatus.REJECTED: [],
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str, actor_id=None) -> None:
        """Validate a step transition, raising InvalidTransition if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransition(
                "approval_step",
                _value(from_status),
                _value(to_status),
                "step is not awaiting this action",
                actor_id=actor_id,
                expected_status=StepStatus.PENDING.value
                if to_status != StepStatus.PENDING
                else StepStatus.WAITING.value,
            )

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)


def _value(status: str) -> str:
    return status.value if isinstance(status, Enum) else status
