"""Approval chain configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_approvals.audit import AuditResult
from payroll_approvals.auth.authorizer import Authorizer
from payroll_approvals.auth.roles import Permission, Role, permissions_of
from payroll_approvals.errors import ChainConfigurationError, ResourceNotFound
from payroll_approvals.models import AppUser, ApprovalChain, ApprovalChainLevel, Organization

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainLevelSpec:
    """Requested approver for one chain level: a named user or a role."""

    approver_user_id: UUID | None = None
    approver_role: Role | None = None


class ApprovalChainService:
    """Service for organization approval chains.

    A chain is never edited in place: configuring deactivates the active
    chain and inserts the next version. Workflows already in flight keep
    the steps they were instantiated with.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_chain(
        self, auth: Authorizer, organization_id: UUID
    ) -> tuple[ApprovalChain | None, list[ApprovalChainLevel]]:
        """Active chain and its ordered levels."""
        action = "approval_chain.view"
        await self._guarded_organization(auth, organization_id, action)
        auth.require_permission(
            Permission.VIEW_PAYROLL,
            action,
            f"organization:{organization_id}",
            organization_id,
        )
        chain = await self.session.scalar(
            select(ApprovalChain).where(
                ApprovalChain.organization_id == organization_id,
                ApprovalChain.is_active.is_(True),
            )
        )
        if chain is None:
            return None, []
        return chain, await self._levels(chain.chain_id)

    async def configure(
        self,
        auth: Authorizer,
        organization_id: UUID,
        levels: list[ChainLevelSpec],
    ) -> tuple[ApprovalChain, list[ApprovalChainLevel]]:
        """Replace the organization's approval chain with a new version."""
        action = "approval_chain.configure"
        target = f"organization:{organization_id}"
        organization = await self._guarded_organization(auth, organization_id, action)
        auth.require_permission(
            Permission.ORGANIZATION_CONFIGURATION, action, target, organization_id
        )

        try:
            await self._validate(organization, levels)
        except ChainConfigurationError as exc:
            auth.record(action, target, AuditResult.REJECTED, organization_id, reason=str(exc))
            raise

        current_version = await self.session.scalar(
            select(func.max(ApprovalChain.version)).where(
                ApprovalChain.organization_id == organization_id
            )
        )
        await self.session.execute(
            update(ApprovalChain)
            .where(
                ApprovalChain.organization_id == organization_id,
                ApprovalChain.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )

        chain = ApprovalChain(
            chain_id=uuid4(),
            organization_id=organization_id,
            version=(current_version or 0) + 1,
            is_active=True,
            created_by_user_id=auth.actor_id,
        )
        rows = [
            ApprovalChainLevel(
                chain_level_id=uuid4(),
                chain_id=chain.chain_id,
                sequence=index,
                approver_user_id=level.approver_user_id,
                approver_role=level.approver_role.value if level.approver_role else None,
            )
            for index, level in enumerate(levels, start=1)
        ]
        self.session.add(chain)
        await self.session.flush()
        self.session.add_all(rows)
        await self.session.flush()

        auth.record(
            action,
            target,
            AuditResult.SUCCESS,
            organization_id,
            chain_id=chain.chain_id,
            version=chain.version,
            levels=[
                {"user_id": row.approver_user_id, "role": row.approver_role} for row in rows
            ],
        )
        logger.info(
            "Approval chain v%d configured for organization %s (%d levels)",
            chain.version,
            organization_id,
            len(rows),
        )
        return chain, rows

    async def _guarded_organization(
        self, auth: Authorizer, organization_id: UUID, action: str
    ) -> Organization:
        auth.require_active_session()
        organization = await self.session.get(Organization, organization_id)
        if organization is None:
            raise ResourceNotFound("Organization")
        auth.require_org_access(
            organization_id, action, "Organization", f"organization:{organization_id}"
        )
        return organization

    async def _validate(self, organization: Organization, levels: list[ChainLevelSpec]) -> None:
        if not levels:
            raise ChainConfigurationError("An approval chain needs at least one level")
        if len(levels) > organization.max_approval_levels:
            raise ChainConfigurationError(
                f"An approval chain may have at most {organization.max_approval_levels} levels"
            )

        for index, level in enumerate(levels, start=1):
            if level.approver_user_id is None and level.approver_role is None:
                raise ChainConfigurationError(f"Level {index} names no approver")
            if level.approver_role is not None and (
                Permission.APPROVE_PAYROLL not in permissions_of(level.approver_role)
            ):
                raise ChainConfigurationError(
                    f"Level {index}: role '{level.approver_role.value}' cannot approve payroll"
                )
            if level.approver_user_id is not None:
                user = await self.session.get(AppUser, level.approver_user_id)
                if user is None or user.organization_id != organization.organization_id:
                    raise ChainConfigurationError(
                        f"Level {index}: approver is not a member of this organization"
                    )
                if not user.is_active:
                    raise ChainConfigurationError(f"Level {index}: approver is deactivated")
                if Permission.APPROVE_PAYROLL not in permissions_of(user.role):
                    raise ChainConfigurationError(
                        f"Level {index}: approver's role cannot approve payroll"
                    )

    async def _levels(self, chain_id: UUID) -> list[ApprovalChainLevel]:
        result = await self.session.execute(
            select(ApprovalChainLevel)
            .where(ApprovalChainLevel.chain_id == chain_id)
            .order_by(ApprovalChainLevel.sequence)
        )
        return list(result.scalars().all())
