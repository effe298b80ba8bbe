"""Pay run records: creation and organization-scoped reads."""

from __future__ import annotations

import logging
from datetime import date
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_approvals.audit import AuditResult
from payroll_approvals.auth.authorizer import Authorizer
from payroll_approvals.auth.roles import Permission
from payroll_approvals.errors import ResourceNotFound
from payroll_approvals.models import Organization, PayRun
from payroll_approvals.services.state_machine import PayRunStatus

logger = logging.getLogger(__name__)


class PayRunService:
    """Service for pay run records outside the approval workflow."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_pay_run(
        self,
        auth: Authorizer,
        period_start: date,
        period_end: date,
        organization_id: UUID | None = None,
    ) -> PayRun:
        """Create a draft pay run.

        Organization-bound actors always create in their effective
        organization; an explicit ``organization_id`` must match it.
        """
        action = "pay_run.create"
        auth.require_active_session()
        org_id = organization_id or auth.organization_id
        if org_id is None:
            raise ResourceNotFound("Organization")
        target = f"organization:{org_id}"
        organization = await self.session.get(Organization, org_id)
        if organization is None:
            raise ResourceNotFound("Organization")
        auth.require_org_access(org_id, action, "Organization", target)
        auth.require_permission(Permission.PREPARE_PAYROLL, action, target, org_id)

        pay_run = PayRun(
            organization_id=org_id,
            period_start=period_start,
            period_end=period_end,
            status=PayRunStatus.DRAFT.value,
            created_by_user_id=auth.actor_id,
        )
        self.session.add(pay_run)
        await self.session.flush()

        auth.record(
            action,
            f"pay_run:{pay_run.pay_run_id}",
            AuditResult.SUCCESS,
            org_id,
            pay_period=pay_run.pay_period,
        )
        return pay_run

    async def get_pay_run(self, auth: Authorizer, pay_run_id: UUID) -> PayRun:
        """Load a pay run visible to the actor."""
        action = "pay_run.view"
        target = f"pay_run:{pay_run_id}"
        auth.require_active_session()
        pay_run = await self.session.get(PayRun, pay_run_id)
        if pay_run is None:
            raise ResourceNotFound("Pay run")
        auth.require_org_access(pay_run.organization_id, action, "Pay run", target)
        auth.require_permission(Permission.VIEW_PAYROLL, action, target, pay_run.organization_id)
        return pay_run

    async def list_pay_runs(
        self,
        auth: Authorizer,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[PayRun], int]:
        """List pay runs in the actor's effective organization.

        Platform-wide actors see every organization.
        """
        auth.require_active_session()
        auth.require_permission(
            Permission.VIEW_PAYROLL,
            "pay_run.list",
            f"organization:{auth.organization_id or 'platform'}",
            auth.organization_id,
        )
        query = select(PayRun)
        if not auth.scope.is_platform_wide:
            query = query.where(PayRun.organization_id == auth.organization_id)
        if status:
            query = query.where(PayRun.status == status)

        total = await self.session.scalar(select(func.count()).select_from(query.subquery())) or 0

        query = query.order_by(PayRun.period_start.desc(), PayRun.created_at.desc())
        query = query.offset((page - 1) * page_size).limit(page_size)
        result = await self.session.execute(query)
        return list(result.scalars().all()), total
