"""Approval step endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path

from payroll_approvals.api.dependencies import CurrentScope
from payroll_approvals.api.schemas import (
    ApprovalStepResponse,
    ApproveRequest,
    DelegateRequest,
    ErrorResponse,
    OverrideRequest,
    PendingApprovalsResponse,
    RejectRequest,
)
from payroll_approvals.services.approval_engine import ApprovalWorkflowEngine

router = APIRouter(tags=["approvals"])

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}

PayRunId = Annotated[UUID, Path()]
StepId = Annotated[UUID, Path()]


@router.get("/approvals/mine", response_model=PendingApprovalsResponse, responses=_ERRORS)
async def my_pending_approvals(scope: CurrentScope) -> PendingApprovalsResponse:
    """Pending steps the caller can act on."""
    async with scope.unit_of_work() as db:
        steps = await ApprovalWorkflowEngine(db).my_pending_steps(scope.auth)
    return PendingApprovalsResponse(
        items=[ApprovalStepResponse.model_validate(step) for step in steps],
        total=len(steps),
    )


@router.post(
    "/pay-runs/{pay_run_id}/steps/{step_id}/approve",
    response_model=ApprovalStepResponse,
    responses=_ERRORS,
)
async def approve_step(
    scope: CurrentScope,
    pay_run_id: PayRunId,
    step_id: StepId,
    payload: ApproveRequest | None = None,
) -> ApprovalStepResponse:
    """Approve the current pending step."""
    comments = payload.comments if payload else None
    async with scope.unit_of_work() as db:
        step = await ApprovalWorkflowEngine(db, scope.emitter).approve(
            scope.auth, pay_run_id, step_id, comments
        )
    return ApprovalStepResponse.model_validate(step)


@router.post(
    "/pay-runs/{pay_run_id}/steps/{step_id}/reject",
    response_model=ApprovalStepResponse,
    responses=_ERRORS,
)
async def reject_step(
    scope: CurrentScope,
    pay_run_id: PayRunId,
    step_id: StepId,
    payload: RejectRequest,
) -> ApprovalStepResponse:
    """Reject the current pending step."""
    async with scope.unit_of_work() as db:
        step = await ApprovalWorkflowEngine(db, scope.emitter).reject(
            scope.auth, pay_run_id, step_id, payload.comments
        )
    return ApprovalStepResponse.model_validate(step)


@router.post(
    "/pay-runs/{pay_run_id}/steps/{step_id}/delegate",
    response_model=ApprovalStepResponse,
    responses=_ERRORS,
)
async def delegate_step(
    scope: CurrentScope,
    pay_run_id: PayRunId,
    step_id: StepId,
    payload: DelegateRequest,
) -> ApprovalStepResponse:
    """Reassign the current pending step to another approver."""
    async with scope.unit_of_work() as db:
        step = await ApprovalWorkflowEngine(db, scope.emitter).delegate(
            scope.auth, pay_run_id, step_id, payload.new_approver_id
        )
    return ApprovalStepResponse.model_validate(step)


@router.post(
    "/pay-runs/{pay_run_id}/steps/{step_id}/override",
    response_model=ApprovalStepResponse,
    responses=_ERRORS,
)
async def override_step(
    scope: CurrentScope,
    pay_run_id: PayRunId,
    step_id: StepId,
    payload: OverrideRequest,
) -> ApprovalStepResponse:
    """Administrative approval of a blocked step."""
    async with scope.unit_of_work() as db:
        step = await ApprovalWorkflowEngine(db, scope.emitter).override_step(
            scope.auth, pay_run_id, step_id, payload.reason
        )
    return ApprovalStepResponse.model_validate(step)
