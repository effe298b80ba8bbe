"""Tests for approval chain configuration and pay run records."""

from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy import select

from payroll_approvals.audit import AuditResult, AuditTrail
from payroll_approvals.auth.roles import Role
from payroll_approvals.database import audited_session
from payroll_approvals.errors import (
    ChainConfigurationError,
    OrgScopeViolation,
    PermissionDenied,
    ResourceNotFound,
)
from payroll_approvals.models import ApprovalChain, AuditEvent
from payroll_approvals.services import ApprovalChainService, ChainLevelSpec, PayRunService

pytestmark = pytest.mark.asyncio


async def configure(session_factory, user, org_id, levels, trail=None):
    trail = trail if trail is not None else AuditTrail()
    async with audited_session(trail, session_factory) as db:
        chain, rows = await ApprovalChainService(db).configure(user.authorizer(trail), org_id, levels)
    return chain, rows


class TestConfigureChain:
    """Test chain versioning and validation."""

    async def test_configure_creates_versions(self, session_factory, seeded):
        s = seeded
        first, _ = await configure(
            session_factory, s.admin, s.org_a, [ChainLevelSpec(approver_user_id=s.approver1.user_id)]
        )
        second, rows = await configure(
            session_factory,
            s.admin,
            s.org_a,
            [
                ChainLevelSpec(approver_role=Role.COMPANY_PAYROLL_ADMIN),
                ChainLevelSpec(approver_user_id=s.controller.user_id),
            ],
        )

        assert (first.version, second.version) == (1, 2)
        assert [r.sequence for r in rows] == [1, 2]
        assert rows[0].approver_role == "company_payroll_admin"
        assert rows[1].approver_user_id == s.controller.user_id

        async with session_factory() as db:
            chains = (
                await db.execute(select(ApprovalChain).order_by(ApprovalChain.version))
            ).scalars().all()
            active, levels = await ApprovalChainService(db).get_active_chain(s.viewer.authorizer(), s.org_a)

        assert [c.is_active for c in chains] == [False, True]
        assert active.chain_id == second.chain_id
        assert len(levels) == 2

    @pytest.mark.parametrize(
        "levels, message",
        [
            ([], "at least one level"),
            ([ChainLevelSpec()], "names no approver"),
            ([ChainLevelSpec(approver_role=Role.ORG_VIEWER)], "cannot approve payroll"),
        ],
    )
    async def test_invalid_levels(self, session_factory, seeded, levels, message):
        trail = AuditTrail()

        with pytest.raises(ChainConfigurationError, match=message):
            await configure(session_factory, seeded.admin, seeded.org_a, levels, trail)

        async with session_factory() as db:
            assert (await db.execute(select(ApprovalChain))).scalars().all() == []
            [record] = (
                await db.execute(select(AuditEvent).where(AuditEvent.action == "approval_chain.configure"))
            ).scalars().all()
        assert record.result == AuditResult.REJECTED

    async def test_user_level_checks(self, session_factory, seeded):
        s = seeded
        cases = [
            (s.viewer.user_id, "cannot approve payroll"),
            (s.controller_b.user_id, "not a member"),
            (uuid4(), "not a member"),
        ]
        for user_id, message in cases:
            with pytest.raises(ChainConfigurationError, match=message):
                await configure(
                    session_factory, s.admin, s.org_a, [ChainLevelSpec(approver_user_id=user_id)]
                )

    async def test_too_many_levels(self, session_factory, seeded):
        levels = [ChainLevelSpec(approver_role=Role.COMPANY_PAYROLL_ADMIN)] * 6

        with pytest.raises(ChainConfigurationError, match="at most 5"):
            await configure(session_factory, seeded.admin, seeded.org_a, levels)

    async def test_requires_organization_configuration(self, session_factory, seeded):
        with pytest.raises(PermissionDenied):
            await configure(
                session_factory,
                seeded.controller,
                seeded.org_a,
                [ChainLevelSpec(approver_role=Role.COMPANY_PAYROLL_ADMIN)],
            )

    async def test_other_organization(self, session_factory, seeded):
        with pytest.raises(OrgScopeViolation):
            await configure(
                session_factory,
                seeded.admin_b,
                seeded.org_a,
                [ChainLevelSpec(approver_role=Role.COMPANY_PAYROLL_ADMIN)],
            )

    async def test_platform_admin_configures_any_org(self, session_factory, seeded):
        chain, _ = await configure(
            session_factory,
            seeded.super_admin,
            seeded.org_b,
            [ChainLevelSpec(approver_user_id=seeded.controller_b.user_id)],
        )

        assert chain.organization_id == seeded.org_b
        assert chain.created_by_user_id == seeded.super_admin.user_id


class TestPayRunService:
    async def test_create_in_effective_org(self, session_factory, seeded):
        trail = AuditTrail()
        async with audited_session(trail, session_factory) as db:
            pay_run = await PayRunService(db).create_pay_run(
                seeded.officer.authorizer(trail), date(2026, 4, 1), date(2026, 4, 30)
            )

        assert pay_run.organization_id == seeded.org_a
        assert pay_run.status == "draft"
        assert pay_run.created_by_user_id == seeded.officer.user_id
        assert pay_run.pay_period == "2026-04-01 to 2026-04-30"

    async def test_create_in_other_org(self, session_factory, seeded):
        async with session_factory() as db:
            with pytest.raises(OrgScopeViolation):
                await PayRunService(db).create_pay_run(
                    seeded.officer.authorizer(), date(2026, 4, 1), date(2026, 4, 30), seeded.org_b
                )

    async def test_platform_actor_must_name_org(self, session_factory, seeded):
        async with session_factory() as db:
            with pytest.raises(ResourceNotFound):
                await PayRunService(db).create_pay_run(
                    seeded.super_admin.authorizer(), date(2026, 4, 1), date(2026, 4, 30)
                )

    async def test_viewer_cannot_create(self, session_factory, seeded):
        async with session_factory() as db:
            with pytest.raises(PermissionDenied):
                await PayRunService(db).create_pay_run(
                    seeded.viewer.authorizer(), date(2026, 4, 1), date(2026, 4, 30)
                )

    async def test_list_is_org_scoped(self, session_factory, seeded, create_pay_run):
        await create_pay_run(seeded.org_a)
        await create_pay_run(seeded.org_a)
        await create_pay_run(seeded.org_b)

        async with session_factory() as db:
            service = PayRunService(db)
            items_a, total_a = await service.list_pay_runs(seeded.viewer.authorizer())
            items_b, total_b = await service.list_pay_runs(seeded.admin_b.authorizer())
            _, total_all = await service.list_pay_runs(seeded.platform_auditor.authorizer())
            _, approved = await service.list_pay_runs(seeded.viewer.authorizer(), status="approved")

        assert total_a == 2
        assert {p.organization_id for p in items_a} == {seeded.org_a}
        assert total_b == 1
        assert total_all == 3
        assert approved == 0

    async def test_get_other_org_pay_run(self, session_factory, seeded, create_pay_run):
        pay_run_id = await create_pay_run(seeded.org_b)

        async with session_factory() as db:
            with pytest.raises(OrgScopeViolation):
                await PayRunService(db).get_pay_run(seeded.admin.authorizer(), pay_run_id)
            with pytest.raises(ResourceNotFound):
                await PayRunService(db).get_pay_run(seeded.admin.authorizer(), uuid4())
