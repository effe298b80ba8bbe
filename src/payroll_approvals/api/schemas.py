"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from payroll_approvals.auth.roles import Role


# ============================================================================
# Session schemas
# ============================================================================


class SessionResponse(BaseModel):
    """Resolved session for the bearer token."""

    user_id: UUID
    real_user_id: UUID
    role: str
    organization_id: UUID | None = None
    impersonating: bool
    permissions: list[str]
    expires_at: datetime
    seconds_until_expiry: int
    refresh_recommended: bool


# ============================================================================
# Pay Run schemas
# ============================================================================


class PayRunCreate(BaseModel):
    """Schema for creating a new pay run."""

    period_start: date
    period_end: date
    organization_id: UUID | None = None

    @model_validator(mode="after")
    def check_period(self) -> "PayRunCreate":
        if self.period_end < self.period_start:
            raise ValueError("period_end must not precede period_start")
        return self


class PayRunResponse(BaseModel):
    """Schema for pay run response."""

    model_config = ConfigDict(from_attributes=True)

    pay_run_id: UUID
    organization_id: UUID
    period_start: date
    period_end: date
    status: str
    created_by_user_id: UUID | None = None
    submitted_by_user_id: UUID | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    locked_by_user_id: UUID | None = None
    locked_at: datetime | None = None
    current_workflow_id: UUID | None = None
    created_at: datetime


class PayRunListResponse(BaseModel):
    """Schema for listing pay runs."""

    items: list[PayRunResponse]
    total: int
    page: int
    page_size: int


class ForceUnlockRequest(BaseModel):
    """Administrative unlock request."""

    reason: str


# ============================================================================
# Approval schemas
# ============================================================================


class ApprovalStepResponse(BaseModel):
    """Schema for an approval step."""

    model_config = ConfigDict(from_attributes=True)

    step_id: UUID
    workflow_id: UUID
    pay_run_id: UUID
    sequence: int
    approver_user_id: UUID | None = None
    approver_role: str | None = None
    status: str
    comments: str | None = None
    actioned_by_user_id: UUID | None = None
    actioned_at: datetime | None = None
    original_approver_user_id: UUID | None = None
    delegated_by_user_id: UUID | None = None
    override_by_user_id: UUID | None = None
    override_reason: str | None = None


class WorkflowResponse(BaseModel):
    """Current approval state of a pay run."""

    pay_run_id: UUID
    pay_run_status: str
    workflow_id: UUID | None = None
    workflow_status: str | None = None
    chain_version: int | None = None
    current_step_id: UUID | None = None
    blocked_reason: str | None = None
    steps: list[ApprovalStepResponse] = Field(default_factory=list)


class ApproveRequest(BaseModel):
    """Approve the current step."""

    comments: str | None = None


class RejectRequest(BaseModel):
    """Reject the current step."""

    comments: str | None = None


class DelegateRequest(BaseModel):
    """Reassign the current step."""

    new_approver_id: UUID


class OverrideRequest(BaseModel):
    """Administrative approval of the current step."""

    reason: str


class PendingApprovalsResponse(BaseModel):
    """Steps awaiting the acting user."""

    items: list[ApprovalStepResponse]
    total: int


# ============================================================================
# Approval chain schemas
# ============================================================================


class ApprovalChainLevelRequest(BaseModel):
    """One requested chain level."""

    approver_user_id: UUID | None = None
    approver_role: Role | None = None

    @model_validator(mode="after")
    def check_approver(self) -> "ApprovalChainLevelRequest":
        if self.approver_user_id is None and self.approver_role is None:
            raise ValueError("approver_user_id or approver_role is required")
        return self


class ApprovalChainRequest(BaseModel):
    """Replace an organization's approval chain."""

    levels: list[ApprovalChainLevelRequest] = Field(min_length=1)


class ApprovalChainLevelResponse(BaseModel):
    """Configured chain level."""

    model_config = ConfigDict(from_attributes=True)

    sequence: int
    approver_user_id: UUID | None = None
    approver_role: str | None = None


class ApprovalChainResponse(BaseModel):
    """Configured approval chain."""

    chain_id: UUID | None = None
    organization_id: UUID
    version: int | None = None
    levels: list[ApprovalChainLevelResponse] = Field(default_factory=list)


# ============================================================================
# Common schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
