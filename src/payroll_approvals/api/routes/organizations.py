"""Organization approval chain endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path

from payroll_approvals.api.dependencies import CurrentScope
from payroll_approvals.api.schemas import (
    ApprovalChainLevelResponse,
    ApprovalChainRequest,
    ApprovalChainResponse,
    ErrorResponse,
)
from payroll_approvals.services.chain_service import ApprovalChainService, ChainLevelSpec

router = APIRouter(prefix="/organizations", tags=["organizations"])

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


@router.get(
    "/{organization_id}/approval-chain",
    response_model=ApprovalChainResponse,
    responses=_ERRORS,
)
async def get_approval_chain(
    scope: CurrentScope,
    organization_id: Annotated[UUID, Path()],
) -> ApprovalChainResponse:
    """Active approval chain of an organization."""
    async with scope.unit_of_work() as db:
        chain, levels = await ApprovalChainService(db).get_active_chain(
            scope.auth, organization_id
        )
    return ApprovalChainResponse(
        chain_id=chain.chain_id if chain else None,
        organization_id=organization_id,
        version=chain.version if chain else None,
        levels=[ApprovalChainLevelResponse.model_validate(level) for level in levels],
    )


@router.put(
    "/{organization_id}/approval-chain",
    response_model=ApprovalChainResponse,
    responses=_ERRORS,
)
async def configure_approval_chain(
    scope: CurrentScope,
    organization_id: Annotated[UUID, Path()],
    payload: ApprovalChainRequest,
) -> ApprovalChainResponse:
    """Replace the approval chain with a new version."""
    levels = [
        ChainLevelSpec(approver_user_id=level.approver_user_id, approver_role=level.approver_role)
        for level in payload.levels
    ]
    async with scope.unit_of_work() as db:
        chain, rows = await ApprovalChainService(db).configure(scope.auth, organization_id, levels)
    return ApprovalChainResponse(
        chain_id=chain.chain_id,
        organization_id=organization_id,
        version=chain.version,
        levels=[ApprovalChainLevelResponse.model_validate(row) for row in rows],
    )
