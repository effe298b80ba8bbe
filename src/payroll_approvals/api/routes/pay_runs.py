"""Pay run API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from payroll_approvals.api.dependencies import CurrentScope
from payroll_approvals.api.schemas import (
    ApprovalStepResponse,
    ErrorResponse,
    ForceUnlockRequest,
    PayRunCreate,
    PayRunListResponse,
    PayRunResponse,
    WorkflowResponse,
)
from payroll_approvals.services.approval_engine import ApprovalWorkflowEngine, WorkflowView
from payroll_approvals.services.pay_run_service import PayRunService

router = APIRouter(prefix="/pay-runs", tags=["pay-runs"])

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def workflow_response(view: WorkflowView) -> WorkflowResponse:
    workflow = view.workflow
    return WorkflowResponse(
        pay_run_id=view.pay_run.pay_run_id,
        pay_run_status=view.pay_run.status,
        workflow_id=workflow.workflow_id if workflow else None,
        workflow_status=workflow.status if workflow else None,
        chain_version=workflow.chain_version if workflow else None,
        current_step_id=view.current_step.step_id if view.current_step else None,
        blocked_reason=view.blocked_reason,
        steps=[ApprovalStepResponse.model_validate(step) for step in view.steps],
    )


# ============================================================================
# Pay Run CRUD
# ============================================================================


@router.post(
    "",
    response_model=PayRunResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
)
async def create_pay_run(scope: CurrentScope, payload: PayRunCreate) -> PayRunResponse:
    """Create a new pay run in draft status."""
    async with scope.unit_of_work() as db:
        pay_run = await PayRunService(db).create_pay_run(
            scope.auth,
            payload.period_start,
            payload.period_end,
            payload.organization_id,
        )
    return PayRunResponse.model_validate(pay_run)


@router.get("", response_model=PayRunListResponse, responses=_ERRORS)
async def list_pay_runs(
    scope: CurrentScope,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> PayRunListResponse:
    """List pay runs in the caller's organization."""
    async with scope.unit_of_work() as db:
        pay_runs, total = await PayRunService(db).list_pay_runs(
            scope.auth, status_filter, page, page_size
        )
    return PayRunListResponse(
        items=[PayRunResponse.model_validate(pr) for pr in pay_runs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{pay_run_id}", response_model=PayRunResponse, responses=_ERRORS)
async def get_pay_run(
    scope: CurrentScope,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Get a specific pay run by ID."""
    async with scope.unit_of_work() as db:
        pay_run = await PayRunService(db).get_pay_run(scope.auth, pay_run_id)
    return PayRunResponse.model_validate(pay_run)


# ============================================================================
# Pay Run State Transitions
# ============================================================================


@router.post("/{pay_run_id}/submit", response_model=WorkflowResponse, responses=_ERRORS)
async def submit_pay_run(
    scope: CurrentScope,
    pay_run_id: Annotated[UUID, Path()],
) -> WorkflowResponse:
    """Submit a draft pay run for approval."""
    async with scope.unit_of_work() as db:
        engine = ApprovalWorkflowEngine(db, scope.emitter)
        await engine.submit(scope.auth, pay_run_id)
        view = await engine.get_workflow(scope.auth, pay_run_id)
    return workflow_response(view)


@router.post("/{pay_run_id}/lock", response_model=PayRunResponse, responses=_ERRORS)
async def lock_pay_run(
    scope: CurrentScope,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Lock an approved pay run."""
    async with scope.unit_of_work() as db:
        pay_run = await ApprovalWorkflowEngine(db, scope.emitter).lock(scope.auth, pay_run_id)
    return PayRunResponse.model_validate(pay_run)


@router.post("/{pay_run_id}/return-to-draft", response_model=PayRunResponse, responses=_ERRORS)
async def return_pay_run_to_draft(
    scope: CurrentScope,
    pay_run_id: Annotated[UUID, Path()],
) -> PayRunResponse:
    """Return a rejected pay run to draft for correction and resubmission."""
    async with scope.unit_of_work() as db:
        pay_run = await ApprovalWorkflowEngine(db, scope.emitter).return_to_draft(
            scope.auth, pay_run_id
        )
    return PayRunResponse.model_validate(pay_run)


@router.post("/{pay_run_id}/force-unlock", response_model=PayRunResponse, responses=_ERRORS)
async def force_unlock_pay_run(
    scope: CurrentScope,
    pay_run_id: Annotated[UUID, Path()],
    payload: ForceUnlockRequest,
) -> PayRunResponse:
    """Administrative unlock back to draft."""
    async with scope.unit_of_work() as db:
        pay_run = await ApprovalWorkflowEngine(db, scope.emitter).force_unlock(
            scope.auth, pay_run_id, payload.reason
        )
    return PayRunResponse.model_validate(pay_run)


@router.get("/{pay_run_id}/approval", response_model=WorkflowResponse, responses=_ERRORS)
async def get_pay_run_approval(
    scope: CurrentScope,
    pay_run_id: Annotated[UUID, Path()],
) -> WorkflowResponse:
    """Current approval workflow, including why it is blocked if it is."""
    async with scope.unit_of_work() as db:
        view = await ApprovalWorkflowEngine(db).get_workflow(scope.auth, pay_run_id)
    return workflow_response(view)
