"""Workflow notification events.

This package provides:
- Typed, per-recipient notification events
- A batch-aware emitter that dispatches after commit
"""

from payroll_approvals.events.emitter import EventBatch, EventEmitter, EventHandler
from payroll_approvals.events.types import (
    ApprovalStepPending,
    DomainEvent,
    EventCategory,
    EventMetadata,
    PayRunApproved,
    PayRunRejected,
)

__all__ = [
    "DomainEvent",
    "EventMetadata",
    "EventCategory",
    "ApprovalStepPending",
    "PayRunApproved",
    "PayRunRejected",
    "EventEmitter",
    "EventBatch",
    "EventHandler",
]
