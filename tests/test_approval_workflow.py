"""
School Ledger - Approval Workflow Tests

Threshold routing, segregation of duties, decision history and handlers.
"""

import uuid

import pytest
from pydantic import ValidationError

from app.models.approval import ApprovalAction, ApprovalRequestStatus
from app.services.approval_workflow import ApprovalWorkflowService
from app.utils.error_handling import (
    ApprovalDeniedException,
    BusinessRuleException,
    ConflictException,
    InsufficientPermissionsException,
    InvalidStateTransitionException,
    ValidationException,
)
from tests.conftest import BURSAR_ID, CLERK_ID, PRINCIPAL_ID


RESOURCE = "purchase_order"


@pytest.fixture
def approvals(db_session) -> ApprovalWorkflowService:
    return ApprovalWorkflowService(db_session)


async def _configure(approvals, workflow_data, **fields):
    return await approvals.configure_workflow(workflow_data("PURCHASE", **fields), actor_id=PRINCIPAL_ID)


async def _submit(approvals, amount, actor_id=CLERK_ID, **kwargs):
    return await approvals.submit("PURCHASE", RESOURCE, uuid.uuid4(), amount, actor_id, **kwargs)


class TestDetermineLevel:
    """Tests for threshold routing."""

    @pytest.mark.asyncio
    async def test_thresholds(self, approvals, workflow_data):
        workflow = await _configure(approvals, workflow_data)
        assert approvals.determine_level(workflow, 99_999) == 0
        assert approvals.determine_level(workflow, 100_000) == 1
        assert approvals.determine_level(workflow, 999_999) == 1
        assert approvals.determine_level(workflow, 1_000_000) == 2

    @pytest.mark.asyncio
    async def test_dual_approval_lifts_level_1(self, approvals, workflow_data):
        workflow = await _configure(approvals, workflow_data, requires_dual_approval=True)
        assert approvals.determine_level(workflow, 50_000) == 0
        assert approvals.determine_level(workflow, 150_000) == 2

    @pytest.mark.asyncio
    async def test_requires_approval(self, approvals, workflow_data):
        assert await approvals.requires_approval("PURCHASE", 5_000_000) is False
        await _configure(approvals, workflow_data)
        assert await approvals.requires_approval("PURCHASE", 5_000_000) is True
        assert await approvals.requires_approval("PURCHASE", 5_000) is False

    def test_threshold_order_enforced(self, workflow_data):
        with pytest.raises(ValidationError):
            workflow_data("PURCHASE", level_1=500_000, level_2=100_000)

    @pytest.mark.asyncio
    async def test_configure_replaces_existing(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        workflow = await _configure(approvals, workflow_data, level_1=200_000, level_2=2_000_000)
        assert workflow.level_1_threshold == 200_000
        assert len(await approvals.list_workflows()) == 1


class TestSubmit:
    """Tests for opening requests."""

    @pytest.mark.asyncio
    async def test_below_threshold_auto_approved(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request = await _submit(approvals, 5_000)

        assert request.status == ApprovalRequestStatus.APPROVED
        assert request.approval_level == 0
        history = await approvals.get_history(request.id)
        assert [row.action for row in history] == [ApprovalAction.SUBMITTED, ApprovalAction.AUTO_APPROVED]

    @pytest.mark.asyncio
    async def test_min_level_overrides_amount(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request = await _submit(approvals, 5_000, min_level=1)
        assert request.status == ApprovalRequestStatus.PENDING
        assert request.approval_level == 1

    @pytest.mark.asyncio
    async def test_no_workflow_refused(self, approvals):
        with pytest.raises(BusinessRuleException) as exc_info:
            await _submit(approvals, 5_000)
        assert exc_info.value.details["violated_rule"] == "WORKFLOW_CONFIGURED"

    @pytest.mark.asyncio
    async def test_inactive_workflow_refused(self, approvals, workflow_data):
        await _configure(approvals, workflow_data, is_active=False)
        with pytest.raises(BusinessRuleException):
            await _submit(approvals, 500_000)

    @pytest.mark.asyncio
    async def test_one_open_request_per_resource(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        reference_id = uuid.uuid4()
        await approvals.submit("PURCHASE", RESOURCE, reference_id, 500_000, CLERK_ID)

        with pytest.raises(ConflictException):
            await approvals.submit("PURCHASE", RESOURCE, reference_id, 500_000, CLERK_ID)


class TestDecisions:
    """Tests for level-1 and level-2 decisions."""

    @pytest.mark.asyncio
    async def test_level_1_finalizes_level_1_request(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000)).id

        request = await approvals.approve_level_1(request_id, BURSAR_ID, "BURSAR", notes="Quotes attached")
        assert request.status == ApprovalRequestStatus.APPROVED
        assert request.level_1_approver == BURSAR_ID
        assert request.completed_at is not None
        assert await approvals.is_approved(RESOURCE, request.reference_id) is True

    @pytest.mark.asyncio
    async def test_level_2_request_runs_both_levels(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 2_000_000)).id

        request = await approvals.approve_level_1(request_id, BURSAR_ID, "BURSAR")
        assert request.status == ApprovalRequestStatus.APPROVED_LEVEL_1

        request = await approvals.approve_level_2(request_id, PRINCIPAL_ID, "PRINCIPAL")
        assert request.status == ApprovalRequestStatus.APPROVED
        history = await approvals.get_history(request_id)
        assert [row.action for row in history] == [
            ApprovalAction.SUBMITTED,
            ApprovalAction.APPROVED_LEVEL_1,
            ApprovalAction.APPROVED_LEVEL_2,
            ApprovalAction.FINALIZED,
        ]
        assert [row.sequence for row in history] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_level_2_directly_when_amount_reaches_threshold(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 2_000_000)).id

        request = await approvals.approve_level_2(request_id, PRINCIPAL_ID, "PRINCIPAL")
        assert request.status == ApprovalRequestStatus.APPROVED

    @pytest.mark.asyncio
    async def test_level_2_needs_level_1_under_dual_approval(self, approvals, workflow_data):
        await _configure(approvals, workflow_data, requires_dual_approval=True)
        request_id = (await _submit(approvals, 2_000_000)).id

        with pytest.raises(InvalidStateTransitionException):
            await approvals.approve_level_2(request_id, PRINCIPAL_ID, "PRINCIPAL")

    @pytest.mark.asyncio
    async def test_level_2_refused_for_level_1_amount(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000)).id

        with pytest.raises(InvalidStateTransitionException):
            await approvals.approve_level_2(request_id, PRINCIPAL_ID, "PRINCIPAL")

    @pytest.mark.asyncio
    async def test_wrong_role_refused(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000)).id

        with pytest.raises(InsufficientPermissionsException):
            await approvals.approve_level_1(request_id, BURSAR_ID, "TEACHER")

    @pytest.mark.asyncio
    async def test_requester_cannot_approve(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000, actor_id=BURSAR_ID)).id

        with pytest.raises(ApprovalDeniedException):
            await approvals.approve_level_1(request_id, BURSAR_ID, "BURSAR")

    @pytest.mark.asyncio
    async def test_same_person_cannot_approve_both_levels(self, approvals, workflow_data):
        await _configure(approvals, workflow_data, level_1_role="PRINCIPAL", level_2_role="PRINCIPAL")
        request_id = (await _submit(approvals, 2_000_000)).id
        await approvals.approve_level_1(request_id, PRINCIPAL_ID, "PRINCIPAL")

        with pytest.raises(ApprovalDeniedException):
            await approvals.approve_level_2(request_id, PRINCIPAL_ID, "PRINCIPAL")

    @pytest.mark.asyncio
    async def test_finalized_request_cannot_be_approved_again(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000)).id
        await approvals.approve_level_1(request_id, BURSAR_ID, "BURSAR")

        with pytest.raises(InvalidStateTransitionException):
            await approvals.approve_level_1(request_id, BURSAR_ID, "BURSAR")


class TestRejectAndCancel:
    """Tests for declining requests."""

    @pytest.mark.asyncio
    async def test_reject_records_reason(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000)).id

        request = await approvals.reject(request_id, BURSAR_ID, "Over quote", actor_role="BURSAR")
        assert request.status == ApprovalRequestStatus.REJECTED
        assert request.rejected_by == BURSAR_ID
        assert request.rejection_reason == "Over quote"

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000)).id

        with pytest.raises(ValidationException):
            await approvals.reject(request_id, BURSAR_ID, "")

    @pytest.mark.asyncio
    async def test_only_level_2_role_rejects_after_level_1(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 2_000_000)).id
        await approvals.approve_level_1(request_id, BURSAR_ID, "BURSAR")

        with pytest.raises(InsufficientPermissionsException):
            await approvals.reject(request_id, BURSAR_ID, "Changed my mind", actor_role="BURSAR")

        request = await approvals.reject(request_id, PRINCIPAL_ID, "Too expensive", actor_role="PRINCIPAL")
        assert request.status == ApprovalRequestStatus.REJECTED

    @pytest.mark.asyncio
    async def test_only_requester_cancels(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000)).id

        with pytest.raises(ApprovalDeniedException):
            await approvals.cancel(request_id, BURSAR_ID)

        request = await approvals.cancel(request_id, CLERK_ID, notes="Duplicate request")
        assert request.status == ApprovalRequestStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_terminal_request_cannot_be_rejected(self, approvals, workflow_data):
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000)).id
        await approvals.cancel(request_id, CLERK_ID)

        with pytest.raises(InvalidStateTransitionException):
            await approvals.reject(request_id, BURSAR_ID, "Too late")


class TestHandlersAndQueues:
    """Tests for completion handlers and pending queues."""

    @pytest.mark.asyncio
    async def test_handlers_called_on_completion(self, approvals, workflow_data):
        approved, declined = [], []

        async def on_approved(request, actor_id):
            approved.append((request.reference_id, actor_id))

        async def on_declined(request, actor_id):
            declined.append((request.reference_id, request.status))

        approvals.register_handlers(RESOURCE, on_approved=on_approved, on_declined=on_declined)
        await _configure(approvals, workflow_data)

        first = await _submit(approvals, 500_000)
        first_id, first_ref = first.id, first.reference_id
        await approvals.approve_level_1(first_id, BURSAR_ID, "BURSAR")

        second = await _submit(approvals, 500_000)
        second_id, second_ref = second.id, second.reference_id
        await approvals.reject(second_id, BURSAR_ID, "No budget")

        assert approved == [(first_ref, BURSAR_ID)]
        assert declined == [(second_ref, ApprovalRequestStatus.REJECTED)]

    @pytest.mark.asyncio
    async def test_failing_handler_rolls_back_decision(self, approvals, workflow_data):
        async def on_approved(request, actor_id):
            raise BusinessRuleException("Resource can no longer be applied")

        approvals.register_handlers(RESOURCE, on_approved=on_approved)
        await _configure(approvals, workflow_data)
        request_id = (await _submit(approvals, 500_000)).id

        with pytest.raises(BusinessRuleException):
            await approvals.approve_level_1(request_id, BURSAR_ID, "BURSAR")

        request = await approvals.get_request(request_id)
        assert request.status == ApprovalRequestStatus.PENDING
        assert len(request.history) == 1

    @pytest.mark.asyncio
    async def test_pending_for_role(self, approvals, workflow_data):
        await _configure(approvals, workflow_data, requires_dual_approval=True)
        level_1_id = (await _submit(approvals, 500_000)).id
        waiting_id = (await _submit(approvals, 2_000_000)).id
        await approvals.approve_level_1(waiting_id, BURSAR_ID, "BURSAR")

        bursar_queue = [request.id for request in await approvals.get_pending_for_role("BURSAR")]
        principal_queue = [request.id for request in await approvals.get_pending_for_role("PRINCIPAL")]
        assert bursar_queue == [level_1_id]
        assert principal_queue == [waiting_id]
