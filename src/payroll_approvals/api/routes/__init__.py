"""API routes."""

from payroll_approvals.api.routes.approvals import router as approvals_router
from payroll_approvals.api.routes.health import router as health_router
from payroll_approvals.api.routes.organizations import router as organizations_router
from payroll_approvals.api.routes.pay_runs import router as pay_runs_router
from payroll_approvals.api.routes.session import router as session_router

__all__ = [
    "approvals_router",
    "health_router",
    "organizations_router",
    "pay_runs_router",
    "session_router",
]
