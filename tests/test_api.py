"""API endpoint tests.

Drives the FastAPI application in-process with signed bearer tokens.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from payroll_approvals.api.app import create_app, status_for
from payroll_approvals.audit import AuditResult
from payroll_approvals.errors import (
    ApproverUnavailable,
    AuthenticationExpired,
    ChainConfigurationError,
    ImpersonationEscalationRejected,
    InvalidTransition,
    OrgScopeViolation,
    PermissionDenied,
    ResourceNotFound,
    StaleStateConflict,
)
from payroll_approvals.events import ApprovalStepPending
from payroll_approvals.models import AuditEvent

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def client(settings, session_factory, emitter, seeded):
    """HTTP client bound to an app sharing the test database."""
    app = create_app(settings, session_factory, emitter)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def headers(make_token):
    def _headers(user, **kwargs):
        return {"Authorization": f"Bearer {make_token(user, **kwargs)}"}

    return _headers


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Health endpoint should return 200."""
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert "timestamp" in data

    async def test_readiness_and_liveness(self, client: AsyncClient):
        assert (await client.get("/ready")).json()["status"] == "ready"
        assert (await client.get("/live")).json()["status"] == "alive"


class TestSession:
    async def test_session_info(self, client, seeded, headers):
        response = await client.get("/api/v1/session", headers=headers(seeded.controller))

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == str(seeded.controller.user_id)
        assert data["role"] == "org_finance_controller"
        assert data["organization_id"] == str(seeded.org_a)
        assert data["impersonating"] is False
        assert "approve_payroll" in data["permissions"]
        assert "unlock_payroll" not in data["permissions"]
        assert data["refresh_recommended"] is False

    async def test_refresh_recommended_near_expiry(self, client, seeded, headers):
        response = await client.get(
            "/api/v1/session", headers=headers(seeded.controller, expires_in=timedelta(seconds=30))
        )

        assert response.json()["refresh_recommended"] is True
        assert response.json()["seconds_until_expiry"] <= 30

    async def test_missing_token(self, client):
        response = await client.get("/api/v1/session")

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_SESSION"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    async def test_expired_token(self, client, seeded, headers):
        response = await client.get(
            "/api/v1/session", headers=headers(seeded.controller, expires_in=timedelta(seconds=-10))
        )

        assert response.status_code == 401
        assert response.json()["code"] == "SESSION_EXPIRED"

    async def test_escalating_overlay_is_ignored_and_audited(
        self, client, seeded, headers, session_factory
    ):
        overlay = {
            "target_org_id": str(seeded.org_a),
            "target_role": "org_finance_controller",
            "exp": 4102444800,
        }
        response = await client.get("/api/v1/session", headers=headers(seeded.hr, imp=overlay))

        assert response.status_code == 200
        assert response.json()["role"] == "org_hr_admin"
        assert response.json()["impersonating"] is False

        async with session_factory() as db:
            [record] = (
                await db.execute(
                    select(AuditEvent).where(AuditEvent.action == "impersonation.escalation_rejected")
                )
            ).scalars().all()
        assert record.result == AuditResult.SECURITY
        assert record.real_user_id == seeded.hr.user_id


class TestErrorMapping:
    """Errors map to stable statuses; cross-org access is indistinguishable from absence."""

    @pytest.mark.parametrize(
        "exc, expected",
        [
            (AuthenticationExpired(), 401),
            (OrgScopeViolation("Pay run", uuid4()), 404),
            (ResourceNotFound("Pay run"), 404),
            (PermissionDenied("pay_run.lock"), 403),
            (ImpersonationEscalationRejected("org_viewer", "org_admin"), 403),
            (StaleStateConflict("Approval step", uuid4(), "pending"), 409),
            (InvalidTransition("pay_run", "draft", "locked", "no"), 400),
            (ApproverUnavailable("approval_step", "pending", "approved", "gone"), 400),
            (ChainConfigurationError("empty"), 400),
        ],
        ids=lambda v: type(v).__name__ if isinstance(v, Exception) else str(v),
    )
    def test_status_for(self, exc, expected):
        assert status_for(exc) == expected

    async def test_other_org_pay_run_looks_missing(self, client, seeded, headers, create_pay_run):
        other_org_run = await create_pay_run(seeded.org_b)

        foreign = await client.get(f"/api/v1/pay-runs/{other_org_run}", headers=headers(seeded.admin))
        missing = await client.get(f"/api/v1/pay-runs/{uuid4()}", headers=headers(seeded.admin))

        assert foreign.status_code == missing.status_code == 404
        assert foreign.json() == missing.json()

    async def test_other_org_chain_looks_missing(self, client, seeded, headers):
        response = await client.get(
            f"/api/v1/organizations/{seeded.org_b}/approval-chain", headers=headers(seeded.admin)
        )

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_permission_denied(self, client, seeded, headers, create_pay_run):
        pay_run_id = await create_pay_run(seeded.org_a)

        response = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/submit", headers=headers(seeded.viewer)
        )

        assert response.status_code == 403
        assert response.json()["code"] == "PERMISSION_DENIED"

    async def test_invalid_chain(self, client, seeded, headers):
        response = await client.put(
            f"/api/v1/organizations/{seeded.org_a}/approval-chain",
            headers=headers(seeded.admin),
            json={"levels": [{"approver_role": "org_viewer"}]},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_APPROVAL_CHAIN"

    async def test_malformed_request(self, client, seeded, headers):
        response = await client.post(
            "/api/v1/pay-runs",
            headers=headers(seeded.officer),
            json={"period_start": "2026-04-30", "period_end": "2026-04-01"},
        )

        assert response.status_code == 422


class TestApprovalFlow:
    """Full lifecycle over HTTP."""

    async def test_create_submit_approve_lock(self, client, seeded, headers, emitter):
        s = seeded
        notified = []
        emitter.on(ApprovalStepPending, notified.append)

        chain = await client.put(
            f"/api/v1/organizations/{s.org_a}/approval-chain",
            headers=headers(s.admin),
            json={
                "levels": [
                    {"approver_user_id": str(s.approver1.user_id)},
                    {"approver_role": "project_manager"},
                ]
            },
        )
        assert chain.status_code == 200
        assert chain.json()["version"] == 1
        assert [lv["sequence"] for lv in chain.json()["levels"]] == [1, 2]

        created = await client.post(
            "/api/v1/pay-runs",
            headers=headers(s.officer),
            json={"period_start": "2026-04-01", "period_end": "2026-04-30"},
        )
        assert created.status_code == 201
        pay_run_id = created.json()["pay_run_id"]
        assert created.json()["status"] == "draft"
        assert created.json()["organization_id"] == str(s.org_a)

        submitted = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/submit", headers=headers(s.controller)
        )
        assert submitted.status_code == 200
        workflow = submitted.json()
        assert workflow["pay_run_status"] == "pending_approval"
        step1, step2 = (step["step_id"] for step in workflow["steps"])
        assert workflow["current_step_id"] == step1
        assert [n.recipient_user_id for n in notified] == [s.approver1.user_id]

        mine = await client.get("/api/v1/approvals/mine", headers=headers(s.approver1))
        assert [item["step_id"] for item in mine.json()["items"]] == [step1]

        out_of_order = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/steps/{step2}/approve", headers=headers(s.approver2)
        )
        assert out_of_order.status_code == 400
        assert out_of_order.json()["code"] == "INVALID_TRANSITION"

        first = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/steps/{step1}/approve", headers=headers(s.approver1)
        )
        assert first.status_code == 200
        assert first.json()["status"] == "approved"

        second = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/steps/{step2}/approve",
            headers=headers(s.approver2),
            json={"comments": "ok"},
        )
        assert second.status_code == 200
        assert second.json()["comments"] == "ok"

        approval = await client.get(
            f"/api/v1/pay-runs/{pay_run_id}/approval", headers=headers(s.auditor)
        )
        assert approval.json()["pay_run_status"] == "approved"
        assert approval.json()["workflow_status"] == "approved"
        assert approval.json()["current_step_id"] is None

        locked = await client.post(f"/api/v1/pay-runs/{pay_run_id}/lock", headers=headers(s.controller))
        assert locked.status_code == 200
        assert locked.json()["status"] == "locked"
        assert locked.json()["locked_by_user_id"] == str(s.controller.user_id)

        unlocked = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/force-unlock",
            headers=headers(s.admin),
            json={"reason": "bank file rejected"},
        )
        assert unlocked.status_code == 200
        assert unlocked.json()["status"] == "draft"

        listing = await client.get("/api/v1/pay-runs", headers=headers(s.viewer))
        assert listing.json()["total"] == 1

    async def test_reject_and_return_to_draft(self, client, seeded, headers, configure_chain, create_pay_run):
        s = seeded
        await configure_chain(s.org_a, s.approver1.user_id)
        pay_run_id = await create_pay_run(s.org_a, s.controller.user_id)

        workflow = (
            await client.post(f"/api/v1/pay-runs/{pay_run_id}/submit", headers=headers(s.controller))
        ).json()
        [step] = workflow["steps"]

        no_comment = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/steps/{step['step_id']}/reject",
            headers=headers(s.approver1),
            json={},
        )
        assert no_comment.status_code == 400

        rejected = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/steps/{step['step_id']}/reject",
            headers=headers(s.approver1),
            json={"comments": "wrong cost centre"},
        )
        assert rejected.status_code == 200
        assert rejected.json()["status"] == "rejected"

        back = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/return-to-draft", headers=headers(s.controller)
        )
        assert back.status_code == 200
        assert back.json()["status"] == "draft"
        assert back.json()["current_workflow_id"] is None

    async def test_delegate_and_override(self, client, seeded, headers, configure_chain, create_pay_run):
        s = seeded
        await configure_chain(s.org_a, s.approver1.user_id, s.approver2.user_id)
        pay_run_id = await create_pay_run(s.org_a, s.controller.user_id)
        workflow = (
            await client.post(f"/api/v1/pay-runs/{pay_run_id}/submit", headers=headers(s.controller))
        ).json()
        step1, step2 = (step["step_id"] for step in workflow["steps"])

        delegated = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/steps/{step1}/delegate",
            headers=headers(s.approver1),
            json={"new_approver_id": str(s.approver3.user_id)},
        )
        assert delegated.status_code == 200
        assert delegated.json()["approver_user_id"] == str(s.approver3.user_id)
        assert delegated.json()["original_approver_user_id"] == str(s.approver1.user_id)

        await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/steps/{step1}/approve", headers=headers(s.approver3)
        )
        overridden = await client.post(
            f"/api/v1/pay-runs/{pay_run_id}/steps/{step2}/override",
            headers=headers(s.admin),
            json={"reason": "approver on leave"},
        )
        assert overridden.status_code == 200
        assert overridden.json()["override_by_user_id"] == str(s.admin.user_id)

        pay_run = await client.get(f"/api/v1/pay-runs/{pay_run_id}", headers=headers(s.viewer))
        assert pay_run.json()["status"] == "approved"
