"""Payroll approval services."""

from payroll_approvals.services.approval_engine import ApprovalWorkflowEngine, WorkflowView
from payroll_approvals.services.chain_service import ApprovalChainService, ChainLevelSpec
from payroll_approvals.services.pay_run_service import PayRunService
from payroll_approvals.services.state_machine import (
    PayRunStateMachine,
    PayRunStatus,
    StepStateMachine,
    StepStatus,
    WorkflowStatus,
)

__all__ = [
    "PayRunStateMachine",
    "PayRunStatus",
    "StepStateMachine",
    "StepStatus",
    "WorkflowStatus",
    "ApprovalWorkflowEngine",
    "WorkflowView",
    "ApprovalChainService",
    "ChainLevelSpec",
    "PayRunService",
]
