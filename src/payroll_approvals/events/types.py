"""Notification events produced by the approval workflow.

All events are:
- Immutable (frozen dataclasses)
- Addressed to exactly one recipient
- Traceable via metadata
- Serializable for delivery by the notification collaborator

Delivery mechanics (email, templates) are out of scope; handlers registered on
the emitter take care of that.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    APPROVAL = "approval"
    PAY_RUN = "pay_run"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every event."""

    event_id: UUID
    timestamp: datetime
    organization_id: UUID
    correlation_id: UUID  # Links events produced by one transition
    actor_id: UUID | None
    source_service: str = "payroll-approvals"
    version: int = 1

    @classmethod
    def create(
        cls,
        organization_id: UUID,
        correlation_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=utcnow(),
            organization_id=organization_id,
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all notification events."""

    metadata: EventMetadata
    recipient_user_id: UUID
    recipient_email: str | None
    pay_run_id: UUID
    organization_name: str
    pay_period: str
    actor_name: str

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def template_variables(self) -> dict[str, str]:
        """Variables exposed to notification templates."""
        return {
            "organization_name": self.organization_name,
            "pay_period": self.pay_period,
            "actor_name": self.actor_name,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type
        return serialize(data)

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def serialize(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: serialize(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [serialize(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, date):
        return obj.isoformat()
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Approval Events
# =============================================================================


@dataclass(frozen=True)
class ApprovalStepPending(DomainEvent):
    """An approval step became pending and awaits this recipient."""

    step_id: UUID
    sequence: int

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class PayRunApproved(DomainEvent):
    """The final approval step was approved."""

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAY_RUN


@dataclass(frozen=True)
class PayRunRejected(DomainEvent):
    """An approver rejected the pay run."""

    step_id: UUID
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAY_RUN

    def template_variables(self) -> dict[str, str]:
        variables = super().template_variables()
        variables["reason"] = self.reason
        return variables
