"""Tests for notification events and the batch-aware emitter.

Tests verify:
1. Event types are properly structured and serializable
2. Event emitter routes to correct handlers
3. Batching holds events until the transaction boundary closes
4. Handler errors are isolated
"""

import asyncio
import json
from uuid import uuid4

import pytest

from payroll_approvals.events import (
    ApprovalStepPending,
    EventCategory,
    EventEmitter,
    EventMetadata,
    PayRunApproved,
    PayRunRejected,
)


def context(**overrides):
    values = {
        "metadata": EventMetadata.create(organization_id=uuid4(), actor_id=uuid4()),
        "recipient_user_id": uuid4(),
        "recipient_email": "approver@example.com",
        "pay_run_id": uuid4(),
        "organization_name": "Acme Payroll Ltd",
        "pay_period": "2026-03-01 to 2026-03-31",
        "actor_name": "Carl Controller",
    }
    values.update(overrides)
    return values


def step_pending(**overrides) -> ApprovalStepPending:
    return ApprovalStepPending(step_id=uuid4(), sequence=1, **context(**overrides))


class TestEventMetadata:
    def test_create_metadata_auto_generates_fields(self):
        """Create generates event_id, timestamp, correlation_id."""
        org_id = uuid4()
        meta = EventMetadata.create(organization_id=org_id)

        assert meta.event_id is not None
        assert meta.timestamp.tzinfo is not None
        assert meta.correlation_id is not None
        assert meta.organization_id == org_id
        assert meta.source_service == "payroll-approvals"

    def test_correlation_id_is_kept(self):
        workflow_id = uuid4()
        assert EventMetadata.create(uuid4(), correlation_id=workflow_id).correlation_id == workflow_id


class TestEventTypes:
    def test_categories(self):
        assert step_pending().category == EventCategory.APPROVAL
        assert PayRunApproved(**context()).category == EventCategory.PAY_RUN
        assert PayRunRejected(step_id=uuid4(), reason="x", **context()).category == EventCategory.PAY_RUN

    def test_template_variables(self):
        event = PayRunRejected(step_id=uuid4(), reason="missing timesheets", **context())

        assert event.template_variables() == {
            "organization_name": "Acme Payroll Ltd",
            "pay_period": "2026-03-01 to 2026-03-31",
            "actor_name": "Carl Controller",
            "reason": "missing timesheets",
        }

    def test_serialization(self):
        event = step_pending()

        data = json.loads(event.to_json())

        assert data["event_type"] == "ApprovalStepPending"
        assert data["step_id"] == str(event.step_id)
        assert data["metadata"]["organization_id"] == str(event.metadata.organization_id)

    def test_events_are_immutable(self):
        event = step_pending()
        with pytest.raises(AttributeError):
            event.reason = "changed"  # type: ignore[misc]


class TestEventEmitter:
    """Test handler routing."""

    def test_routes_by_type(self):
        emitter = EventEmitter()
        pending, approved = [], []
        emitter.on(ApprovalStepPending, pending.append)
        emitter.on(PayRunApproved, approved.append)

        emitter.emit(step_pending())

        assert len(pending) == 1
        assert approved == []

    def test_routes_by_category(self):
        emitter = EventEmitter()
        received = []
        emitter.on_category(EventCategory.PAY_RUN, received.append)

        emitter.emit(step_pending())
        emitter.emit(PayRunApproved(**context()))

        assert [e.event_type for e in received] == ["PayRunApproved"]

    def test_off(self):
        emitter = EventEmitter()
        received = []
        handler = received.append
        emitter.on_all(handler)
        emitter.off(handler)

        emitter.emit(step_pending())

        assert received == []

    def test_handler_errors_are_isolated(self):
        emitter = EventEmitter()
        received = []

        def broken(event):
            raise RuntimeError("smtp down")

        emitter.on_all(broken)
        emitter.on_all(received.append)

        errors = emitter.emit(step_pending())

        assert len(received) == 1
        assert [str(e) for e in errors] == ["smtp down"]


class TestEventBatch:
    """Events leave only when the transaction boundary closes cleanly."""

    def test_batch_holds_until_exit(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)

        with emitter.batch():
            emitter.emit(step_pending())
            emitter.emit(step_pending())
            assert received == []
            assert len(emitter.held) == 2

        assert len(received) == 2
        assert emitter.held == []

    def test_batch_discarded_on_error(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)

        with pytest.raises(ValueError):
            with emitter.batch():
                emitter.emit(step_pending())
                raise ValueError("commit failed")

        assert received == []
        assert emitter.held == []

    def test_nested_batch_releases_its_own_events(self):
        """An inner unit of work that commits is delivered even if the outer one fails."""
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)
        winner = step_pending()

        with pytest.raises(RuntimeError):
            with emitter.batch():
                with emitter.batch():
                    emitter.emit(winner)
                assert received == [winner]
                emitter.emit(step_pending())
                raise RuntimeError("stale state")

        assert received == [winner]
        assert emitter.held == []

    def test_failed_inner_batch_is_not_released_by_outer(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)
        outer_event = step_pending()

        with emitter.batch():
            with pytest.raises(RuntimeError):
                with emitter.batch():
                    emitter.emit(step_pending())
                    raise RuntimeError("rolled back")
            emitter.emit(outer_event)
            assert emitter.held == [outer_event]

        assert received == [outer_event]

    async def test_concurrent_batches_are_isolated(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)
        committed = step_pending()
        both_open = asyncio.Event()
        entered = []

        async def unit_of_work(event, fail: bool):
            with emitter.batch():
                emitter.emit(event)
                entered.append(event)
                if len(entered) == 2:
                    both_open.set()
                await both_open.wait()
                if fail:
                    raise RuntimeError("conflict")

        results = await asyncio.gather(
            unit_of_work(step_pending(), fail=True),
            unit_of_work(committed, fail=False),
            return_exceptions=True,
        )

        assert isinstance(results[0], RuntimeError)
        assert received == [committed]

    def test_batches_of_other_emitters_do_not_hold(self):
        emitter, other = EventEmitter(), EventEmitter()
        received = []
        emitter.on_all(received.append)

        with other.batch():
            emitter.emit(step_pending())

        assert len(received) == 1

    def test_batch_collects_handler_errors(self):
        emitter = EventEmitter()

        def broken(event):
            raise RuntimeError("template missing")

        emitter.on_all(broken)
        with emitter.batch() as batch:
            emitter.emit(step_pending())

        assert len(batch.errors) == 1
