"""Audit trail for authorization decisions and workflow transitions.

Records are buffered per request by ``AuditTrail`` and written to the
``audit_event`` table when the request finishes. Denial records are written
even when the request's own transaction is rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from uuid import UUID

from payroll_approvals.events.types import serialize

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class AuditResult(str, Enum):
    """Outcome of an audited action."""

    SUCCESS = "success"
    DENIED = "denied"
    REJECTED = "rejected"
    CONFLICT = "conflict"
    SECURITY = "security"


@dataclass(frozen=True)
class AuditRecord:
    """One audit entry.

    ``actor_id`` is who the request acted as; ``real_identity_id`` is who
    authenticated. They differ only while impersonating.
    """

    actor_id: UUID
    real_identity_id: UUID
    action: str
    target: str
    result: AuditResult
    timestamp: datetime
    organization_id: UUID | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_failure(self) -> bool:
        return self.result != AuditResult.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return serialize(
            {
                "actor_id": self.actor_id,
                "real_identity_id": self.real_identity_id,
                "action": self.action,
                "target": self.target,
                "result": self.result,
                "timestamp": self.timestamp,
                "organization_id": self.organization_id,
                "details": self.details,
            }
        )


@runtime_checkable
class AuditEventLogger(Protocol):
    """Consumer of audit records."""

    def record(self, event: AuditRecord) -> None:
        ...


class AuditTrail:
    """Request-scoped audit buffer.

    Usage:
        trail = AuditTrail()
        trail.record(AuditRecord(...))
        ...
        await trail.persist(session)
    """

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    def record(self, event: AuditRecord) -> None:
        """Buffer a record and mirror it to the application log."""
        self._records.append(event)
        level = logging.WARNING if event.result == AuditResult.SECURITY else logging.INFO
        logger.log(
            level,
            "audit action=%s target=%s result=%s actor=%s real=%s",
            event.action,
            event.target,
            AuditResult(event.result).value,
            event.actor_id,
            event.real_identity_id,
        )

    @property
    def records(self) -> list[AuditRecord]:
        return list(self._records)

    def by_action(self, action: str) -> list[AuditRecord]:
        return [r for r in self._records if r.action == action]

    def failures(self) -> list[AuditRecord]:
        """Records that must survive a rolled-back request."""
        return [r for r in self._records if r.is_failure or r.action.startswith("impersonation.")]

    async def persist(self, session: AsyncSession, failures_only: bool = False) -> int:
        """Write buffered records as audit_event rows and clear the buffer.

        Returns count of rows added. The caller owns the commit.
        """
        from payroll_approvals.models import AuditEvent

        records = self.failures() if failures_only else self._records
        for rec in records:
            entity_type, _, entity_id = rec.target.partition(":")
            session.add(
                AuditEvent(
                    organization_id=rec.organization_id,
                    actor_user_id=rec.actor_id,
                    real_user_id=rec.real_identity_id,
                    action=rec.action,
                    entity_type=entity_type,
                    entity_id=entity_id or None,
                    result=AuditResult(rec.result).value,
                    details_json=serialize(rec.details) if rec.details else None,
                    occurred_at=rec.timestamp,
                )
            )
        count = len(records)
        self._records = []
        return count

