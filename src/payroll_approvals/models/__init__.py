"""ORM models."""

from payroll_approvals.models.base import Base, TimestampMixin
from payroll_approvals.models.organization import AppUser, Organization
from payroll_approvals.models.payroll import (
    ApprovalChain,
    ApprovalChainLevel,
    ApprovalStep,
    ApprovalWorkflow,
    AuditEvent,
    PayRun,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "Organization",
    "AppUser",
    "ApprovalChain",
    "ApprovalChainLevel",
    "PayRun",
    "ApprovalWorkflow",
    "ApprovalStep",
    "AuditEvent",
]
