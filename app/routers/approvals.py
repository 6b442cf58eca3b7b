"""
School Ledger - Approvals Router

API endpoints for approval workflows and two-level approval decisions.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import Actor, get_current_actor, require_role
from app.schemas.approval import (
    ApprovalDecisionRequest,
    ApprovalHistoryResponse,
    ApprovalRejectRequest,
    ApprovalRequestResponse,
    ApprovalWorkflowCreate,
    ApprovalWorkflowResponse,
)
from app.services.accounting_service import AccountingService
from app.services.approval_workflow import ApprovalWorkflowService


router = APIRouter(prefix="/api/v1/approvals", tags=["Approvals"])


def _approvals(db: AsyncSession) -> ApprovalWorkflowService:
    # The accounting service registers the journal entry / void handlers
    return AccountingService(db).approvals


# ============================================================================
# WORKFLOWS
# ============================================================================

@router.get("/workflows", response_model=List[ApprovalWorkflowResponse])
async def list_workflows(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await _approvals(db).list_workflows()


@router.put("/workflows", response_model=ApprovalWorkflowResponse)
async def configure_workflow(
    data: ApprovalWorkflowCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(settings.finance_admin_roles)),
):
    """Create or replace the workflow for a transaction type."""
    return await _approvals(db).configure_workflow(data, actor.id)


# ============================================================================
# REQUESTS
# ============================================================================

@router.get("/pending", response_model=List[ApprovalRequestResponse])
async def list_pending_for_role(
    role: Optional[str] = Query(None, description="Approver role (defaults to the actor's role)"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await _approvals(db).get_pending_for_role(role or actor.role)


@router.get("/requests/{request_id}", response_model=ApprovalRequestResponse)
async def get_request(
    request_id: uuid.UUID = Path(..., description="Approval request ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await _approvals(db).get_request(request_id)


@router.get("/requests/{request_id}/history", response_model=List[ApprovalHistoryResponse])
async def get_request_history(
    request_id: uuid.UUID = Path(..., description="Approval request ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await _approvals(db).get_history(request_id)


@router.post("/requests/{request_id}/approve-level-1", response_model=ApprovalRequestResponse)
async def approve_level_1(
    data: ApprovalDecisionRequest,
    request_id: uuid.UUID = Path(..., description="Approval request ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await _approvals(db).approve_level_1(request_id, actor.id, actor.role, data.notes)


@router.post("/requests/{request_id}/approve-level-2", response_model=ApprovalRequestResponse)
async def approve_level_2(
    data: ApprovalDecisionRequest,
    request_id: uuid.UUID = Path(..., description="Approval request ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await _approvals(db).approve_level_2(request_id, actor.id, actor.role, data.notes)


@router.post("/requests/{request_id}/reject", response_model=ApprovalRequestResponse)
async def reject_request(
    data: ApprovalRejectRequest,
    request_id: uuid.UUID = Path(..., description="Approval request ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await _approvals(db).reject(request_id, actor.id, data.reason, actor_role=actor.role)


@router.post("/requests/{request_id}/cancel", response_model=ApprovalRequestResponse)
async def cancel_request(
    data: ApprovalDecisionRequest,
    request_id: uuid.UUID = Path(..., description="Approval request ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await _approvals(db).cancel(request_id, actor.id, data.notes)
