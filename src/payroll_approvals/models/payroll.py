"""Pay run, approval chain, approval workflow and audit models."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from payroll_approvals.models.base import Base, TimestampMixin


# ===== Approval Chains =====


class ApprovalChain(Base, TimestampMixin):
    """Versioned approval chain configured for an organization.

    Chains are never edited in place. Reconfiguring deactivates the current
    chain and inserts a new version, so workflows keep pointing at the chain
    they were instantiated from.
    """

    __tablename__ = "approval_chain"

    chain_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by_user_id: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "version", name="approval_chain_org_version_unique"),
    )


class ApprovalChainLevel(Base):
    """One ordered approver slot in a chain: a named user or a role."""

    __tablename__ = "approval_chain_level"

    chain_level_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    chain_id: Mapped[UUID] = mapped_column(
        ForeignKey("approval_chain.chain_id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_user_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("app_user.user_id"),
        nullable=True,
    )
    approver_role: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("chain_id", "sequence", name="approval_chain_level_seq_unique"),
        CheckConstraint(
            "approver_user_id IS NOT NULL OR approver_role IS NOT NULL",
            name="approval_chain_level_approver_check",
        ),
        CheckConstraint("sequence >= 1", name="approval_chain_level_sequence_check"),
    )


# ===== Pay Runs =====


class PayRun(Base, TimestampMixin):
    """Pay run whose approval state is gated by a workflow."""

    __tablename__ = "pay_run"

    pay_run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    created_by_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    submitted_by_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Workflow currently gating this run; None while draft
    current_workflow_id: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'pending_approval', 'approved', 'rejected', 'locked')",
            name="pay_run_status_check",
        ),
        CheckConstraint("period_end >= period_start", name="pay_run_period_check"),
    )

    @property
    def pay_period(self) -> str:
        """Human-readable pay period."""
        return f"{self.period_start.isoformat()} to {self.period_end.isoformat()}"


# ===== Approval Workflows =====


class ApprovalWorkflow(Base, TimestampMixin):
    """One approval attempt for a pay run.

    Rejected and superseded workflows are terminal. Resubmitting a pay run
    creates a new workflow with fresh steps.
    """

    __tablename__ = "approval_workflow"

    workflow_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run.pay_run_id", ondelete="CASCADE"),
        nullable=False,
    )
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
    )
    chain_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("approval_chain.chain_id"),
        nullable=True,
    )
    chain_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    created_by_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'approved', 'rejected', 'superseded')",
            name="approval_workflow_status_check",
        ),
    )


class ApprovalStep(Base, TimestampMixin):
    """One level of an approval workflow. Steps are never deleted."""

    __tablename__ = "approval_step"

    step_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    workflow_id: Mapped[UUID] = mapped_column(
        ForeignKey("approval_workflow.workflow_id", ondelete="CASCADE"),
        nullable=False,
    )
    pay_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run.pay_run_id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    approver_role: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="waiting")
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    actioned_by_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    actioned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Delegation
    original_approver_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    delegated_by_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    delegated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Administrative override
    override_by_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("workflow_id", "sequence", name="approval_step_workflow_seq_unique"),
        CheckConstraint(
            "status IN ('waiting', 'pending', 'approved', 'rejected')",
            name="approval_step_status_check",
        ),
        CheckConstraint(
            "approver_user_id IS NOT NULL OR approver_role IS NOT NULL",
            name="approval_step_approver_check",
        ),
    )


# ===== Audit =====


class AuditEvent(Base, TimestampMixin):
    """Audit trail entry.

    Identifiers are stored without foreign keys so that records of denied or
    cross-organization attempts survive regardless of what they referenced.
    """

    __tablename__ = "audit_event"

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True)
    actor_user_id: Mapped[UUID] = mapped_column(nullable=False)
    real_user_id: Mapped[UUID] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    result: Mapped[str] = mapped_column(String, nullable=False)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
