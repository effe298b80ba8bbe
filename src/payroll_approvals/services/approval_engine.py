"""Approval workflow engine.

Drives a pay run from draft through its ordered approval steps to approved,
rejected or locked. Every state change is a conditional UPDATE keyed on the
expected prior status, so of two racing requests exactly one wins and the
other gets StaleStateConflict. Audit records and notifications are produced
only after the winning write.

Check order for every operation:
1. the pay run exists
2. OrgScopeGuard (organization taken from the stored pay run)
3. permission
4. workflow state
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from payroll_approvals.audit import AuditResult
from payroll_approvals.auth.authorizer import Authorizer
from payroll_approvals.auth.roles import Permission, permissions_of
from payroll_approvals.errors import (
    ApprovalCoreError,
    ApproverUnavailable,
    InvalidTransition,
    PermissionDenied,
    ResourceNotFound,
    StaleStateConflict,
)
from payroll_approvals.events import (
    ApprovalStepPending,
    EventEmitter,
    EventMetadata,
    PayRunApproved,
    PayRunRejected,
)
from payroll_approvals.models import (
    AppUser,
    ApprovalChain,
    ApprovalChainLevel,
    ApprovalStep,
    ApprovalWorkflow,
    Organization,
    PayRun,
)
from payroll_approvals.services.state_machine import (
    PayRunStateMachine,
    PayRunStatus,
    StepStateMachine,
    StepStatus,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class WorkflowView:
    """Read view of a pay run's current approval state."""

    pay_run: PayRun
    workflow: ApprovalWorkflow | None
    steps: list[ApprovalStep]
    current_step: ApprovalStep | None
    blocked_reason: str | None = None

    @property
    def is_blocked(self) -> bool:
        return self.blocked_reason is not None


def _apply(obj: Any, **values: Any) -> None:
    """Mirror a successful conditional UPDATE onto a loaded instance."""
    for key, value in values.items():
        set_committed_value(obj, key, value)


def _pay_run_target(pay_run_id: UUID) -> str:
    return f"pay_run:{pay_run_id}"


def _step_target(step_id: UUID) -> str:
    return f"approval_step:{step_id}"



def _designated_as(step: ApprovalStep) -> tuple[Any, Any]:
    """Conditions pinning a step to the approver it was checked against."""
    return (
        ApprovalStep.approver_user_id.is_(None)
        if step.approver_user_id is None
        else ApprovalStep.approver_user_id == step.approver_user_id,
        ApprovalStep.approver_role.is_(None)
        if step.approver_role is None
        else ApprovalStep.approver_role == step.approver_role,
    )


class ApprovalWorkflowEngine:
    """Service for pay run approval transitions.

    Operations:
    - submit: draft → pending_approval, instantiating the approval chain
    - approve / reject: act on the current pending step
    - lock: approved → locked
    - return_to_draft: rejected → draft, ready for resubmission
    - delegate: reassign the current pending step
    - override_step: administrative approval of a blocked step
    - force_unlock: administrative return to draft from any gated state
    - get_workflow / my_pending_steps: reads
    """

    def __init__(self, session: AsyncSession, emitter: EventEmitter | None = None):
        self.session = session
        self.emitter = emitter

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(self, auth: Authorizer, pay_run_id: UUID) -> ApprovalWorkflow:
        """Submit a draft pay run for approval.

        The pay run status change, the workflow and all of its steps are
        written in the caller's transaction: either the whole chain exists or
        none of it does.
        """
        action = "pay_run.submit"
        target = _pay_run_target(pay_run_id)
        pay_run = await self._guarded_pay_run(auth, pay_run_id, action)
        org_id = pay_run.organization_id
        auth.require_permission(Permission.PROCESS_PAYROLL, action, target, org_id)

        self._validate_pay_run(auth, pay_run, PayRunStatus.PENDING_APPROVAL, action, target)

        chain, levels = await self._active_chain(org_id)
        if chain is None or not levels:
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "pay_run",
                    pay_run.status,
                    PayRunStatus.PENDING_APPROVAL.value,
                    "organization has no active approval chain",
                    actor_id=auth.actor_id,
                ),
            )

        now = auth.now
        workflow_id = uuid4()
        result = await self.session.execute(
            update(PayRun)
            .where(
                PayRun.pay_run_id == pay_run_id,
                PayRun.status == PayRunStatus.DRAFT.value,
            )
            .values(
                status=PayRunStatus.PENDING_APPROVAL.value,
                submitted_by_user_id=auth.actor_id,
                submitted_at=now,
                approved_at=None,
                locked_by_user_id=None,
                locked_at=None,
                current_workflow_id=workflow_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._stale(auth, action, target, org_id, "Pay run", pay_run_id, PayRunStatus.DRAFT)

        workflow = ApprovalWorkflow(
            workflow_id=workflow_id,
            pay_run_id=pay_run_id,
            organization_id=org_id,
            chain_id=chain.chain_id,
            chain_version=chain.version,
            status=WorkflowStatus.ACTIVE.value,
            created_by_user_id=auth.actor_id,
        )
        steps = [
            ApprovalStep(
                step_id=uuid4(),
                workflow_id=workflow_id,
                pay_run_id=pay_run_id,
                sequence=index,
                approver_user_id=level.approver_user_id,
                approver_role=level.approver_role,
                status=(StepStatus.PENDING if index == 1 else StepStatus.WAITING).value,
            )
            for index, level in enumerate(levels, start=1)
        ]
        self.session.add(workflow)
        await self.session.flush()
        self.session.add_all(steps)
        await self.session.flush()

        _apply(
            pay_run,
            status=PayRunStatus.PENDING_APPROVAL.value,
            submitted_by_user_id=auth.actor_id,
            submitted_at=now,
            approved_at=None,
            locked_by_user_id=None,
            locked_at=None,
            current_workflow_id=workflow_id,
        )

        auth.record(
            action,
            target,
            AuditResult.SUCCESS,
            org_id,
            workflow_id=workflow_id,
            chain_version=chain.version,
            step_count=len(steps),
        )
        logger.info(
            "Pay run %s submitted by %s with %d approval step(s)",
            pay_run_id,
            auth.actor_id,
            len(steps),
        )
        await self._notify_step_pending(auth, pay_run, steps[0])
        return workflow

    # =========================================================================
    # Step actions
    # =========================================================================

    async def approve(
        self,
        auth: Authorizer,
        pay_run_id: UUID,
        step_id: UUID,
        comments: str | None = None,
    ) -> ApprovalStep:
        """Approve the current pending step.

        Activates the next step, or approves the pay run when this was the
        last one.
        """
        action = "approval_step.approve"
        target = _step_target(step_id)
        pay_run = await self._guarded_pay_run(auth, pay_run_id, action)
        org_id = pay_run.organization_id
        auth.require_permission(Permission.APPROVE_PAYROLL, action, target, org_id)

        step = await self._actionable_step(auth, pay_run, step_id, StepStatus.APPROVED, action)
        await self._require_available(auth, pay_run, step, StepStatus.APPROVED, action)
        self._require_designated(auth, step, action, org_id)

        now = auth.now
        values = {
            "status": StepStatus.APPROVED.value,
            "comments": comments,
            "actioned_by_user_id": auth.actor_id,
            "actioned_at": now,
        }
        await self.transition_step(
            auth, step, StepStatus.PENDING, values, action, org_id, *_designated_as(step)
        )

        auth.record(
            action,
            target,
            AuditResult.SUCCESS,
            org_id,
            pay_run_id=pay_run_id,
            sequence=step.sequence,
        )
        await self._advance(auth, pay_run, step)
        return step

    async def reject(
        self,
        auth: Authorizer,
        pay_run_id: UUID,
        step_id: UUID,
        comments: str | None,
    ) -> ApprovalStep:
        """Reject the current pending step.

        The pay run and workflow become rejected. Later steps stay waiting;
        the workflow is never resumed.
        """
        action = "approval_step.reject"
        target = _step_target(step_id)
        pay_run = await self._guarded_pay_run(auth, pay_run_id, action)
        org_id = pay_run.organization_id
        auth.require_permission(Permission.APPROVE_PAYROLL, action, target, org_id)

        step = await self._actionable_step(auth, pay_run, step_id, StepStatus.REJECTED, action)
        await self._require_available(auth, pay_run, step, StepStatus.REJECTED, action)
        self._require_designated(auth, step, action, org_id)

        organization = await self.session.get(Organization, org_id)
        comments = (comments or "").strip() or None
        if organization is not None and organization.rejection_comment_required and not comments:
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "approval_step",
                    step.status,
                    StepStatus.REJECTED.value,
                    "a rejection comment is required",
                    actor_id=auth.actor_id,
                ),
            )

        now = auth.now
        await self.transition_step(
            auth,
            step,
            StepStatus.PENDING,
            {
                "status": StepStatus.REJECTED.value,
                "comments": comments,
                "actioned_by_user_id": auth.actor_id,
                "actioned_at": now,
            },
            action,
            org_id,
            *_designated_as(step),
        )
        await self._set_pay_run_status(
            auth,
            pay_run,
            PayRunStatus.PENDING_APPROVAL,
            PayRunStatus.REJECTED,
            action,
        )
        await self._close_workflow(step.workflow_id, WorkflowStatus.REJECTED, now)

        auth.record(
            action,
            target,
            AuditResult.SUCCESS,
            org_id,
            pay_run_id=pay_run_id,
            sequence=step.sequence,
            comments=comments,
        )
        logger.info(
            "Pay run %s rejected at step %d by %s",
            pay_run_id,
            step.sequence,
            auth.actor_id,
        )
        await self._notify_rejected(auth, pay_run, step, comments or "")
        return step

    async def delegate(
        self,
        auth: Authorizer,
        pay_run_id: UUID,
        step_id: UUID,
        new_approver_id: UUID,
    ) -> ApprovalStep:
        """Reassign the current pending step to another approver."""
        action = "approval_step.delegate"
        target = _step_target(step_id)
        pay_run = await self._guarded_pay_run(auth, pay_run_id, action)
        org_id = pay_run.organization_id

        organization = await self.session.get(Organization, org_id)
        if organization is not None and not organization.allow_delegation:
            auth.record(action, target, AuditResult.DENIED, org_id, reason="delegation_disabled")
            raise PermissionDenied(action, reason="delegation is disabled for this organization")

        step = await self._actionable_step(auth, pay_run, step_id, StepStatus.PENDING, action)
        if not self._is_designated(auth, step) and not auth.has_permission(Permission.MANAGE_USERS):
            auth.record(
                action,
                target,
                AuditResult.DENIED,
                org_id,
                required_permission=Permission.MANAGE_USERS.value,
            )
            raise PermissionDenied(
                action,
                required_permission=Permission.MANAGE_USERS.value,
                reason="only the designated approver or a user manager may delegate",
            )

        delegate_user = await self.session.get(AppUser, new_approver_id)
        if delegate_user is None or delegate_user.organization_id != org_id:
            raise ResourceNotFound("User")
        reason = None
        if not delegate_user.is_active:
            reason = "delegate account is deactivated"
        elif Permission.APPROVE_PAYROLL not in permissions_of(delegate_user.role):
            reason = "delegate cannot approve payroll"
        elif delegate_user.user_id == step.approver_user_id:
            reason = "step is already assigned to this approver"
        if reason:
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "approval_step",
                    step.status,
                    StepStatus.PENDING.value,
                    reason,
                    actor_id=auth.actor_id,
                ),
            )

        previous_user = step.approver_user_id
        previous_role = step.approver_role
        now = auth.now
        await self.transition_step(
            auth,
            step,
            StepStatus.PENDING,
            {
                "approver_user_id": new_approver_id,
                "approver_role": None,
                "original_approver_user_id": step.original_approver_user_id or previous_user,
                "delegated_by_user_id": auth.actor_id,
                "delegated_at": now,
            },
            action,
            org_id,
            *_designated_as(step),
        )

        auth.record(
            action,
            target,
            AuditResult.SUCCESS,
            org_id,
            pay_run_id=pay_run_id,
            from_user_id=previous_user,
            from_role=previous_role,
            to_user_id=new_approver_id,
        )
        await self._notify_step_pending(auth, pay_run, step)
        return step

    async def override_step(
        self,
        auth: Authorizer,
        pay_run_id: UUID,
        step_id: UUID,
        reason: str,
    ) -> ApprovalStep:
        """Approve the current pending step on behalf of its approver.

        Reserved for holders of unlock_payroll; used to clear a workflow
        blocked by an unavailable approver.
        """
        action = "approval_step.override"
        target = _step_target(step_id)
        pay_run = await self._guarded_pay_run(auth, pay_run_id, action)
        org_id = pay_run.organization_id
        auth.require_permission(Permission.UNLOCK_PAYROLL, action, target, org_id)

        step = await self._actionable_step(auth, pay_run, step_id, StepStatus.APPROVED, action)
        reason = (reason or "").strip()
        if not reason:
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "approval_step",
                    step.status,
                    StepStatus.APPROVED.value,
                    "an override reason is required",
                    actor_id=auth.actor_id,
                ),
            )

        now = auth.now
        await self.transition_step(
            auth,
            step,
            StepStatus.PENDING,
            {
                "status": StepStatus.APPROVED.value,
                "comments": reason,
                "actioned_by_user_id": auth.actor_id,
                "actioned_at": now,
                "override_by_user_id": auth.actor_id,
                "override_reason": reason,
            },
            action,
            org_id,
        )

        auth.record(
            action,
            target,
            AuditResult.SUCCESS,
            org_id,
            pay_run_id=pay_run_id,
            sequence=step.sequence,
            designated_user_id=step.approver_user_id,
            designated_role=step.approver_role,
            reason=reason,
        )
        logger.warning(
            "Approval step %s of pay run %s overridden by %s (real %s): %s",
            step_id,
            pay_run_id,
            auth.actor_id,
            auth.real_user_id,
            reason,
        )
        await self._advance(auth, pay_run, step)
        return step

    # =========================================================================
    # Pay run actions
    # =========================================================================

    async def lock(self, auth: Authorizer, pay_run_id: UUID) -> PayRun:
        """Lock an approved pay run."""
        action = "pay_run.lock"
        target = _pay_run_target(pay_run_id)
        pay_run = await self._guarded_pay_run(auth, pay_run_id, action)
        org_id = pay_run.organization_id
        auth.require_permission(Permission.PROCESS_PAYROLL, action, target, org_id)
        auth.require_permission(Permission.LOCK_PAYROLL, action, target, org_id)

        self._validate_pay_run(auth, pay_run, PayRunStatus.LOCKED, action, target)

        now = auth.now
        await self._set_pay_run_status(
            auth,
            pay_run,
            PayRunStatus.APPROVED,
            PayRunStatus.LOCKED,
            action,
            locked_by_user_id=auth.actor_id,
            locked_at=now,
        )
        auth.record(action, target, AuditResult.SUCCESS, org_id)
        logger.info("Pay run %s locked by %s", pay_run_id, auth.actor_id)
        return pay_run

    async def return_to_draft(self, auth: Authorizer, pay_run_id: UUID) -> PayRun:
        """Return a rejected pay run to draft so it can be corrected and resubmitted."""
        action = "pay_run.return_to_draft"
        target = _pay_run_target(pay_run_id)
        pay_run = await self._guarded_pay_run(auth, pay_run_id, action)
        org_id = pay_run.organization_id
        auth.require_permission(Permission.PROCESS_PAYROLL, action, target, org_id)

        self._validate_pay_run(auth, pay_run, PayRunStatus.DRAFT, action, target)

        previous_workflow_id = pay_run.current_workflow_id
        await self._set_pay_run_status(
            auth,
            pay_run,
            PayRunStatus.REJECTED,
            PayRunStatus.DRAFT,
            action,
            current_workflow_id=None,
        )
        auth.record(
            action,
            target,
            AuditResult.SUCCESS,
            org_id,
            rejected_workflow_id=previous_workflow_id,
        )
        return pay_run

    async def force_unlock(self, auth: Authorizer, pay_run_id: UUID, reason: str) -> PayRun:
        """Administrative return to draft, independent of the step chain.

        Any active workflow is superseded; its steps are retained.
        """
        action = "pay_run.force_unlock"
        target = _pay_run_target(pay_run_id)
        pay_run = await self._guarded_pay_run(auth, pay_run_id, action)
        org_id = pay_run.organization_id
        auth.require_permission(Permission.UNLOCK_PAYROLL, action, target, org_id)

        from_status = pay_run.status
        reason = (reason or "").strip()
        if not reason:
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "pay_run",
                    from_status,
                    PayRunStatus.DRAFT.value,
                    "an unlock reason is required",
                    actor_id=auth.actor_id,
                ),
            )
        if not PayRunStateMachine.can_transition(from_status, PayRunStatus.DRAFT, admin=True) or (
            from_status == PayRunStatus.REJECTED
        ):
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "pay_run",
                    from_status,
                    PayRunStatus.DRAFT.value,
                    "only pending, approved or locked pay runs can be unlocked",
                    actor_id=auth.actor_id,
                ),
            )

        workflow_id = pay_run.current_workflow_id
        now = auth.now
        await self._set_pay_run_status(
            auth,
            pay_run,
            PayRunStatus(from_status),
            PayRunStatus.DRAFT,
            action,
            submitted_by_user_id=None,
            submitted_at=None,
            approved_at=None,
            locked_by_user_id=None,
            locked_at=None,
            current_workflow_id=None,
        )
        if workflow_id is not None:
            await self._close_workflow(workflow_id, WorkflowStatus.SUPERSEDED, now, only_active=True)

        auth.record(
            action,
            target,
            AuditResult.SUCCESS,
            org_id,
            from_status=from_status,
            superseded_workflow_id=workflow_id,
            reason=reason,
        )
        logger.warning(
            "Pay run %s force-unlocked from %s by %s (real %s): %s",
            pay_run_id,
            from_status,
            auth.actor_id,
            auth.real_user_id,
            reason,
        )
        return pay_run

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_workflow(self, auth: Authorizer, pay_run_id: UUID) -> WorkflowView:
        """Current workflow of a pay run, with blocked_reason for dead ends."""
        action = "pay_run.view_approval"
        target = _pay_run_target(pay_run_id)
        pay_run = await self._guarded_pay_run(auth, pay_run_id, action)
        auth.require_permission(Permission.VIEW_PAYROLL, action, target, pay_run.organization_id)

        workflow_id = pay_run.current_workflow_id
        if workflow_id is None:
            return WorkflowView(pay_run=pay_run, workflow=None, steps=[], current_step=None)

        workflow = await self.session.get(ApprovalWorkflow, workflow_id)
        steps = await self._workflow_steps(workflow_id)
        current = next((s for s in steps if s.status == StepStatus.PENDING.value), None)
        blocked_reason = None
        if current is not None:
            blocked_reason = await self.blocked_reason(pay_run.organization_id, current)
        return WorkflowView(
            pay_run=pay_run,
            workflow=workflow,
            steps=steps,
            current_step=current,
            blocked_reason=blocked_reason,
        )

    async def my_pending_steps(self, auth: Authorizer) -> list[ApprovalStep]:
        """Pending steps the acting user may approve."""
        if not auth.has_permission(Permission.APPROVE_PAYROLL):
            return []
        query = (
            select(ApprovalStep)
            .join(ApprovalWorkflow, ApprovalWorkflow.workflow_id == ApprovalStep.workflow_id)
            .where(
                ApprovalStep.status == StepStatus.PENDING.value,
                ApprovalWorkflow.status == WorkflowStatus.ACTIVE.value,
                or_(
                    ApprovalStep.approver_user_id == auth.actor_id,
                    ApprovalStep.approver_role == auth.role.value,
                ),
            )
            .order_by(ApprovalStep.created_at)
        )
        if not auth.scope.is_platform_wide:
            query = query.where(ApprovalWorkflow.organization_id == auth.organization_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def blocked_reason(self, organization_id: UUID, step: ApprovalStep) -> str | None:
        """Why the designated approver of a step cannot act, or None."""
        if step.approver_user_id is not None:
            user = await self.session.get(AppUser, step.approver_user_id)
            if user is None or not user.is_active:
                return f"designated approver {step.approver_user_id} is deactivated"
            if user.organization_id != organization_id:
                return f"designated approver {step.approver_user_id} is not a member of this organization"
            if Permission.APPROVE_PAYROLL not in permissions_of(user.role):
                return f"designated approver {step.approver_user_id} can no longer approve payroll"
            return None
        holders = await self.session.scalar(
            select(func.count())
            .select_from(AppUser)
            .where(
                AppUser.organization_id == organization_id,
                AppUser.role == step.approver_role,
                AppUser.is_active.is_(True),
            )
        )
        if not holders:
            return f"no active user holds designated role '{step.approver_role}'"
        return None

    # =========================================================================
    # Conditional writes
    # =========================================================================

    async def transition_step(
        self,
        auth: Authorizer,
        step: ApprovalStep,
        expected: StepStatus,
        values: dict[str, Any],
        action: str,
        organization_id: UUID,
        *conditions: Any,
    ) -> None:
        """Apply ``values`` to a step only if it is still in ``expected`` status.

        The write also requires the step's workflow to still be the active
        workflow of a pay run awaiting approval. Raises StaleStateConflict
        when another request got there first.
        """
        live_workflow = (
            select(PayRun.pay_run_id)
            .join(ApprovalWorkflow, ApprovalWorkflow.workflow_id == PayRun.current_workflow_id)
            .where(
                PayRun.pay_run_id == step.pay_run_id,
                PayRun.current_workflow_id == step.workflow_id,
                PayRun.status == PayRunStatus.PENDING_APPROVAL.value,
                ApprovalWorkflow.status == WorkflowStatus.ACTIVE.value,
            )
            .exists()
        )
        result = await self.session.execute(
            update(ApprovalStep)
            .where(
                ApprovalStep.step_id == step.step_id,
                ApprovalStep.status == expected.value,
                live_workflow,
                *conditions,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._stale(
                auth,
                action,
                _step_target(step.step_id),
                organization_id,
                "Approval step",
                step.step_id,
                expected,
            )
        _apply(step, **values)

    async def _set_pay_run_status(
        self,
        auth: Authorizer,
        pay_run: PayRun,
        expected: PayRunStatus,
        new: PayRunStatus,
        action: str,
        **values: Any,
    ) -> None:
        values["status"] = new.value
        result = await self.session.execute(
            update(PayRun)
            .where(
                PayRun.pay_run_id == pay_run.pay_run_id,
                PayRun.status == expected.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._stale(
                auth,
                action,
                _pay_run_target(pay_run.pay_run_id),
                pay_run.organization_id,
                "Pay run",
                pay_run.pay_run_id,
                expected,
            )
        _apply(pay_run, **values)

    async def _close_workflow(
        self,
        workflow_id: UUID,
        status: WorkflowStatus,
        closed_at: Any,
        only_active: bool = False,
    ) -> None:
        stmt = update(ApprovalWorkflow).where(ApprovalWorkflow.workflow_id == workflow_id)
        if only_active:
            stmt = stmt.where(ApprovalWorkflow.status == WorkflowStatus.ACTIVE.value)
        result = await self.session.execute(
            stmt.values(status=status.value, closed_at=closed_at).execution_options(
                synchronize_session=False
            )
        )
        if result.rowcount:
            workflow = await self.session.get(ApprovalWorkflow, workflow_id)
            if workflow is not None:
                _apply(workflow, status=status.value, closed_at=closed_at)

    async def _advance(self, auth: Authorizer, pay_run: PayRun, step: ApprovalStep) -> None:
        """Activate the step after ``step``, or approve the pay run."""
        org_id = pay_run.organization_id
        next_step = await self.session.scalar(
            select(ApprovalStep).where(
                ApprovalStep.workflow_id == step.workflow_id,
                ApprovalStep.sequence == step.sequence + 1,
            )
        )
        if next_step is not None:
            StepStateMachine.validate_transition(next_step.status, StepStatus.PENDING, auth.actor_id)
            await self.transition_step(
                auth,
                next_step,
                StepStatus.WAITING,
                {"status": StepStatus.PENDING.value},
                "approval_step.activate",
                org_id,
            )
            await self._notify_step_pending(auth, pay_run, next_step)
            return

        now = auth.now
        await self._set_pay_run_status(
            auth,
            pay_run,
            PayRunStatus.PENDING_APPROVAL,
            PayRunStatus.APPROVED,
            "pay_run.approve",
            approved_at=now,
        )
        await self._close_workflow(step.workflow_id, WorkflowStatus.APPROVED, now)
        auth.record(
            "pay_run.approve",
            _pay_run_target(pay_run.pay_run_id),
            AuditResult.SUCCESS,
            org_id,
            workflow_id=step.workflow_id,
        )
        logger.info("Pay run %s fully approved", pay_run.pay_run_id)
        await self._notify_approved(auth, pay_run)

    # =========================================================================
    # Guards
    # =========================================================================

    async def _guarded_pay_run(self, auth: Authorizer, pay_run_id: UUID, action: str) -> PayRun:
        auth.require_active_session()
        pay_run = await self.session.get(PayRun, pay_run_id)
        if pay_run is None:
            raise ResourceNotFound("Pay run")
        auth.require_org_access(
            pay_run.organization_id,
            action,
            "Pay run",
            _pay_run_target(pay_run_id),
        )
        return pay_run

    def _validate_pay_run(
        self,
        auth: Authorizer,
        pay_run: PayRun,
        to_status: PayRunStatus,
        action: str,
        target: str,
    ) -> None:
        try:
            PayRunStateMachine.validate_transition(pay_run.status, to_status, actor_id=auth.actor_id)
        except InvalidTransition as exc:
            self._fail(auth, action, target, pay_run.organization_id, exc)

    async def _actionable_step(
        self,
        auth: Authorizer,
        pay_run: PayRun,
        step_id: UUID,
        to_status: StepStatus,
        action: str,
    ) -> ApprovalStep:
        """Load a step and check it is the current pending step of the active workflow."""
        target = _step_target(step_id)
        org_id = pay_run.organization_id
        step = await self.session.get(ApprovalStep, step_id)
        if step is None or step.pay_run_id != pay_run.pay_run_id:
            raise ResourceNotFound("Approval step")

        if step.workflow_id != pay_run.current_workflow_id:
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "approval_step",
                    step.status,
                    to_status.value,
                    "step belongs to a closed workflow",
                    actor_id=auth.actor_id,
                ),
            )
        if pay_run.status != PayRunStatus.PENDING_APPROVAL.value:
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "pay_run",
                    pay_run.status,
                    PayRunStatus.PENDING_APPROVAL.value,
                    "pay run is not awaiting approval",
                    actor_id=auth.actor_id,
                    expected_status=PayRunStatus.PENDING_APPROVAL.value,
                ),
            )
        if step.status == StepStatus.WAITING.value:
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "approval_step",
                    step.status,
                    to_status.value,
                    f"out of order: step {step.sequence} is not the current pending step",
                    actor_id=auth.actor_id,
                    expected_status=StepStatus.PENDING.value,
                ),
            )
        if StepStateMachine.is_terminal(step.status):
            self._fail(
                auth,
                action,
                target,
                org_id,
                InvalidTransition(
                    "approval_step",
                    step.status,
                    to_status.value,
                    "step has already been actioned",
                    actor_id=auth.actor_id,
                    expected_status=StepStatus.PENDING.value,
                ),
            )
        return step

    async def _require_available(
        self,
        auth: Authorizer,
        pay_run: PayRun,
        step: ApprovalStep,
        to_status: StepStatus,
        action: str,
    ) -> None:
        reason = await self.blocked_reason(pay_run.organization_id, step)
        if reason is None:
            return
        logger.warning(
            "Approval workflow for pay run %s is blocked at step %d: %s",
            pay_run.pay_run_id,
            step.sequence,
            reason,
        )
        self._fail(
            auth,
            action,
            _step_target(step.step_id),
            pay_run.organization_id,
            ApproverUnavailable(
                "approval_step",
                step.status,
                to_status.value,
                f"workflow blocked: {reason}",
                actor_id=auth.actor_id,
            ),
        )

    @staticmethod
    def _is_designated(auth: Authorizer, step: ApprovalStep) -> bool:
        if step.approver_user_id is not None and step.approver_user_id == auth.actor_id:
            return True
        return step.approver_role is not None and step.approver_role == auth.role.value

    def _require_designated(
        self,
        auth: Authorizer,
        step: ApprovalStep,
        action: str,
        organization_id: UUID,
    ) -> None:
        if self._is_designated(auth, step):
            return
        logger.info(
            "Actor %s is not the designated approver of step %s",
            auth.actor_id,
            step.step_id,
        )
        auth.record(
            action,
            _step_target(step.step_id),
            AuditResult.DENIED,
            organization_id,
            designated_user_id=step.approver_user_id,
            designated_role=step.approver_role,
        )
        raise PermissionDenied(
            action,
            required_role=step.approver_role,
            reason="not the designated approver of this step",
        )

    def _fail(
        self,
        auth: Authorizer,
        action: str,
        target: str,
        organization_id: UUID,
        exc: ApprovalCoreError,
    ) -> None:
        auth.record(
            action,
            target,
            AuditResult.REJECTED,
            organization_id,
            error=exc.code,
            reason=str(exc),
        )
        raise exc

    def _stale(
        self,
        auth: Authorizer,
        action: str,
        target: str,
        organization_id: UUID,
        entity: str,
        entity_id: UUID,
        expected: Any,
    ) -> None:
        expected_value = expected.value if hasattr(expected, "value") else expected
        logger.info(
            "Conditional write lost: %s %s no longer '%s' (actor %s)",
            entity,
            entity_id,
            expected_value,
            auth.actor_id,
        )
        auth.record(
            action,
            target,
            AuditResult.CONFLICT,
            organization_id,
            expected_status=expected_value,
        )
        raise StaleStateConflict(entity, entity_id, expected_value)

    # =========================================================================
    # Loading
    # =========================================================================

    async def _active_chain(
        self, organization_id: UUID
    ) -> tuple[ApprovalChain | None, list[ApprovalChainLevel]]:
        chain = await self.session.scalar(
            select(ApprovalChain)
            .where(
                ApprovalChain.organization_id == organization_id,
                ApprovalChain.is_active.is_(True),
            )
            .order_by(ApprovalChain.version.desc())
            .limit(1)
        )
        if chain is None:
            return None, []
        result = await self.session.execute(
            select(ApprovalChainLevel)
            .where(ApprovalChainLevel.chain_id == chain.chain_id)
            .order_by(ApprovalChainLevel.sequence)
        )
        return chain, list(result.scalars().all())

    async def _workflow_steps(self, workflow_id: UUID) -> list[ApprovalStep]:
        result = await self.session.execute(
            select(ApprovalStep)
            .where(ApprovalStep.workflow_id == workflow_id)
            .order_by(ApprovalStep.sequence)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Notifications
    # =========================================================================

    async def _notify_step_pending(
        self, auth: Authorizer, pay_run: PayRun, step: ApprovalStep
    ) -> None:
        if self.emitter is None:
            return
        if step.approver_user_id is not None:
            user = await self.session.get(AppUser, step.approver_user_id)
            recipients = [user] if user is not None and user.is_active else []
        else:
            result = await self.session.execute(
                select(AppUser).where(
                    AppUser.organization_id == pay_run.organization_id,
                    AppUser.role == step.approver_role,
                    AppUser.is_active.is_(True),
                )
            )
            recipients = list(result.scalars().all())

        context = await self._notification_context(auth, pay_run)
        for user in recipients:
            self.emitter.emit(
                ApprovalStepPending(
                    metadata=self._metadata(auth, pay_run),
                    recipient_user_id=user.user_id,
                    recipient_email=user.email,
                    step_id=step.step_id,
                    sequence=step.sequence,
                    **context,
                )
            )

    async def _notify_approved(self, auth: Authorizer, pay_run: PayRun) -> None:
        if self.emitter is None:
            return
        context = await self._notification_context(auth, pay_run)
        for user in await self._submitters(pay_run):
            self.emitter.emit(
                PayRunApproved(
                    metadata=self._metadata(auth, pay_run),
                    recipient_user_id=user.user_id,
                    recipient_email=user.email,
                    **context,
                )
            )

    async def _notify_rejected(
        self, auth: Authorizer, pay_run: PayRun, step: ApprovalStep, reason: str
    ) -> None:
        if self.emitter is None:
            return
        context = await self._notification_context(auth, pay_run)
        for user in await self._submitters(pay_run):
            self.emitter.emit(
                PayRunRejected(
                    metadata=self._metadata(auth, pay_run),
                    recipient_user_id=user.user_id,
                    recipient_email=user.email,
                    step_id=step.step_id,
                    reason=reason,
                    **context,
                )
            )

    async def _submitters(self, pay_run: PayRun) -> list[AppUser]:
        ids = {pay_run.submitted_by_user_id, pay_run.created_by_user_id} - {None}
        users = []
        for user_id in sorted(ids, key=str):
            user = await self.session.get(AppUser, user_id)
            if user is not None and user.is_active:
                users.append(user)
        return users

    async def _notification_context(self, auth: Authorizer, pay_run: PayRun) -> dict[str, Any]:
        organization = await self.session.get(Organization, pay_run.organization_id)
        actor = await self.session.get(AppUser, auth.actor_id)
        return {
            "pay_run_id": pay_run.pay_run_id,
            "organization_name": organization.name if organization else "",
            "pay_period": pay_run.pay_period,
            "actor_name": actor.full_name if actor else str(auth.actor_id),
        }

    @staticmethod
    def _metadata(auth: Authorizer, pay_run: PayRun) -> EventMetadata:
        return EventMetadata.create(
            organization_id=pay_run.organization_id,
            correlation_id=pay_run.current_workflow_id,
            actor_id=auth.actor_id,
        )
