"""
School Ledger - Approval Workflow Service

Two-level, threshold-based approval gate.

Each transaction type has one ApprovalWorkflow. A request's level is fixed
when it is submitted:

    amount <  level_1_threshold   level 0, auto-approved
    amount >= level_1_threshold   level 1 (level 2 if dual approval is required)
    amount >= level_2_threshold   level 2

State machine:

    PENDING --L1--> APPROVED                              (level 1)
    PENDING --L1--> APPROVED_LEVEL_1 --L2--> APPROVED     (level 2)
    PENDING --L2--> APPROVED          (level 2, no dual approval, amount >= L2)
    PENDING | APPROVED_LEVEL_1 --> REJECTED | CANCELLED

A level-2 decision passes through APPROVED_LEVEL_2 before finalizing, and
both steps are written to the history. Every transition appends an
ApprovalHistory row; history rows are never edited.

Consumers register completion handlers per ``resource_type``. They run in the
same unit of work as the deciding transition, so a request never reaches
APPROVED without its effect being applied.
"""

import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.database import unit_of_work
from app.models.approval import (
    OPEN_REQUEST_STATUSES,
    ApprovalAction,
    ApprovalHistory,
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalWorkflow,
)
from app.schemas.approval import ApprovalWorkflowCreate
from app.services.audit_service import AuditService
from app.utils.error_handling import (
    ApprovalDeniedException,
    BusinessRuleException,
    ConflictException,
    ErrorCode,
    InsufficientPermissionsException,
    InvalidStateTransitionException,
    NotFoundException,
    ValidationException,
)

logger = logging.getLogger(__name__)


ApprovalHandler = Callable[[ApprovalRequest, int], Awaitable[None]]


class ApprovalWorkflowService:
    """
    Threshold approval workflow service
    """
    
    # Columns configure_workflow may overwrite on an existing workflow
    WORKFLOW_MUTABLE_COLUMNS = (
        "description",
        "level_1_threshold",
        "level_1_role",
        "level_2_threshold",
        "level_2_role",
        "requires_dual_approval",
        "is_active",
    )
    
    def __init__(self, db: AsyncSession, audit: Optional[AuditService] = None):
        self.db = db
        self.uow = unit_of_work(db)
        self.audit = audit or AuditService(db)
        self._approved_handlers: Dict[str, ApprovalHandler] = {}
        self._declined_handlers: Dict[str, ApprovalHandler] = {}
    
    def register_handlers(
        self,
        resource_type: str,
        on_approved: Optional[ApprovalHandler] = None,
        on_declined: Optional[ApprovalHandler] = None,
    ) -> None:
        """Attach completion callbacks for requests of ``resource_type``."""
        if on_approved:
            self._approved_handlers[resource_type] = on_approved
        if on_declined:
            self._declined_handlers[resource_type] = on_declined
    
    # ===========================================
    # WORKFLOWS
    # ===========================================
    
    async def configure_workflow(self, data: ApprovalWorkflowCreate, actor_id: int) -> ApprovalWorkflow:
        """Create or replace the workflow for a transaction type."""
        async with self.uow.atomic():
            workflow = await self.db.get(ApprovalWorkflow, data.transaction_type)
            old_values = None
            values = data.model_dump(include=set(self.WORKFLOW_MUTABLE_COLUMNS))
            
            if workflow:
                old_values = {column: getattr(workflow, column) for column in self.WORKFLOW_MUTABLE_COLUMNS}
                for column, value in values.items():
                    setattr(workflow, column, value)
                workflow.updated_by_id = actor_id
            else:
                workflow = ApprovalWorkflow(
                    transaction_type=data.transaction_type,
                    created_by_id=actor_id,
                    **values,
                )
                self.db.add(workflow)
            await self.db.flush()
            
            await self.audit.log_audit(
                actor_id, "CONFIGURE", "approval_workflows", workflow.transaction_type,
                old_values=old_values, new_values=values,
            )
        
        logger.info(f"Configured approval workflow '{workflow.transaction_type}'")
        return workflow
    
    async def get_workflow(self, transaction_type: str, active_only: bool = True) -> Optional[ApprovalWorkflow]:
        workflow = await self.db.get(ApprovalWorkflow, transaction_type)
        if workflow and active_only and not workflow.is_active:
            return None
        return workflow
    
    async def list_workflows(self) -> List[ApprovalWorkflow]:
        result = await self.db.execute(select(ApprovalWorkflow).order_by(ApprovalWorkflow.transaction_type))
        return list(result.scalars().all())
    
    @staticmethod
    def determine_level(workflow: ApprovalWorkflow, amount: int) -> int:
        """Approval level an amount requires under ``workflow`` (0 = none)."""
        amount = abs(amount)
        if amount >= workflow.level_2_threshold:
            return 2
        if amount >= workflow.level_1_threshold:
            return 2 if workflow.requires_dual_approval else 1
        return 0
    
    async def requires_approval(self, transaction_type: str, amount: int) -> bool:
        workflow = await self.get_workflow(transaction_type)
        return workflow is not None and self.determine_level(workflow, amount) > 0
    
    # ===========================================
    # REQUESTS
    # ===========================================
    
    async def submit(
        self,
        transaction_type: str,
        resource_type: str,
        reference_id: uuid.UUID,
        amount: int,
        actor_id: int,
        description: Optional[str] = None,
        min_level: int = 0,
    ) -> ApprovalRequest:
        """
        Open an approval request for a resource.
        
        ``min_level`` raises the computed level, for rules that gate a
        resource regardless of its amount. A level-0 request is recorded
        as APPROVED immediately.
        """
        async with self.uow.atomic():
            workflow = await self._require_workflow(transaction_type)
            
            existing = await self.find_open_request(resource_type, reference_id)
            if existing:
                raise ConflictException(
                    message=f"{resource_type} {reference_id} already has an open approval request",
                    resource_type="ApprovalRequest",
                    code=ErrorCode.ALREADY_PROCESSED,
                    details={"approval_request_id": str(existing.id)},
                )
            
            level = max(self.determine_level(workflow, amount), min_level)
            request = ApprovalRequest(
                transaction_type=transaction_type,
                resource_type=resource_type,
                reference_id=reference_id,
                amount=abs(amount),
                description=description,
                status=ApprovalRequestStatus.PENDING,
                approval_level=level,
                requested_by=actor_id,
                requested_at=datetime.utcnow(),
            )
            self.db.add(request)
            self._append_history(request, ApprovalAction.SUBMITTED, actor_id, None, ApprovalRequestStatus.PENDING)
            
            if level == 0:
                request.status = ApprovalRequestStatus.APPROVED
                request.completed_at = datetime.utcnow()
                self._append_history(
                    request, ApprovalAction.AUTO_APPROVED, actor_id,
                    ApprovalRequestStatus.PENDING, ApprovalRequestStatus.APPROVED,
                    notes="Below level-1 threshold",
                )
            await self.db.flush()
            
            await self.audit.log_audit(
                actor_id, "SUBMIT", "approval_requests", request.id,
                new_values={
                    "transaction_type": transaction_type,
                    "resource_type": resource_type,
                    "reference_id": reference_id,
                    "amount": request.amount,
                    "approval_level": level,
                    "status": request.status.value,
                },
            )
        
        logger.info(
            f"Submitted {resource_type} {reference_id} for level-{level} approval "
            f"({transaction_type}, amount={request.amount})"
        )
        return request
    
    async def approve_level_1(
        self,
        request_id: uuid.UUID,
        actor_id: int,
        actor_role: str,
        notes: Optional[str] = None,
    ) -> ApprovalRequest:
        """Record the level-1 decision. Finalizes level-1 requests."""
        async with self.uow.atomic():
            request = await self.get_request(request_id)
            workflow = await self._require_workflow(request.transaction_type, active_only=False)
            
            self._require_status(request, (ApprovalRequestStatus.PENDING,), "approve at level 1")
            self._require_role(workflow.level_1_role, actor_role)
            self._require_not_requester(request, actor_id)
            
            previous = request.status
            request.level_1_approver = actor_id
            request.level_1_approved_at = datetime.utcnow()
            
            if request.approval_level >= 2:
                request.status = ApprovalRequestStatus.APPROVED_LEVEL_1
                self._append_history(request, ApprovalAction.APPROVED_LEVEL_1, actor_id, previous, request.status, notes)
            else:
                request.status = ApprovalRequestStatus.APPROVED
                request.completed_at = datetime.utcnow()
                self._append_history(request, ApprovalAction.APPROVED_LEVEL_1, actor_id, previous, request.status, notes)
            await self.db.flush()
            
            if request.status == ApprovalRequestStatus.APPROVED:
                await self._dispatch(self._approved_handlers, request, actor_id)
            
            await self.audit.log_audit(
                actor_id, "APPROVE_L1", "approval_requests", request.id,
                old_values={"status": previous.value},
                new_values={"status": request.status.value, "notes": notes},
            )
        
        logger.info(f"Approval request {request.id} level-1 approved by {actor_id} -> {request.status.value}")
        return request
    
    async def approve_level_2(
        self,
        request_id: uuid.UUID,
        actor_id: int,
        actor_role: str,
        notes: Optional[str] = None,
    ) -> ApprovalRequest:
        """
        Record the level-2 decision and finalize.
        
        Allowed after level 1, or straight from PENDING when the workflow
        does not require dual approval and the amount itself reaches the
        level-2 threshold.
        """
        async with self.uow.atomic():
            request = await self.get_request(request_id)
            workflow = await self._require_workflow(request.transaction_type, active_only=False)
            
            direct = (
                request.status == ApprovalRequestStatus.PENDING
                and not workflow.requires_dual_approval
                and request.amount >= workflow.level_2_threshold
            )
            if request.status != ApprovalRequestStatus.APPROVED_LEVEL_1 and not direct:
                raise InvalidStateTransitionException(
                    "approval request",
                    request.status.value,
                    "approve at level 2",
                    message=(
                        "Level-2 approval requires a prior level-1 approval"
                        if request.status == ApprovalRequestStatus.PENDING
                        else f"Cannot approve at level 2 a request in status {request.status.value}"
                    ),
                )
            self._require_role(workflow.level_2_role, actor_role)
            self._require_not_requester(request, actor_id)
            if request.level_1_approver is not None and request.level_1_approver == actor_id:
                raise ApprovalDeniedException(
                    "Level-2 approver must differ from the level-1 approver",
                    details={"approval_request_id": str(request.id)},
                )
            
            previous = request.status
            request.level_2_approver = actor_id
            request.level_2_approved_at = datetime.utcnow()
            request.status = ApprovalRequestStatus.APPROVED_LEVEL_2
            self._append_history(request, ApprovalAction.APPROVED_LEVEL_2, actor_id, previous, request.status, notes)
            
            request.status = ApprovalRequestStatus.APPROVED
            request.completed_at = datetime.utcnow()
            self._append_history(
                request, ApprovalAction.FINALIZED, actor_id,
                ApprovalRequestStatus.APPROVED_LEVEL_2, ApprovalRequestStatus.APPROVED,
            )
            await self.db.flush()
            
            await self._dispatch(self._approved_handlers, request, actor_id)
            
            await self.audit.log_audit(
                actor_id, "APPROVE_L2", "approval_requests", request.id,
                old_values={"status": previous.value},
                new_values={"status": request.status.value, "notes": notes},
            )
        
        logger.info(f"Approval request {request.id} level-2 approved by {actor_id}")
        return request
    
    async def reject(
        self,
        request_id: uuid.UUID,
        actor_id: int,
        reason: str,
        actor_role: Optional[str] = None,
    ) -> ApprovalRequest:
        """Reject an open request. Rejected resources never take effect."""
        if not reason or not reason.strip():
            raise ValidationException("A reason is required to reject a request", field="reason")
        
        async with self.uow.atomic():
            request = await self.get_request(request_id)
            workflow = await self._require_workflow(request.transaction_type, active_only=False)
            
            self._require_status(request, OPEN_REQUEST_STATUSES, "reject")
            if actor_role is not None:
                allowed = (
                    (workflow.level_2_role,)
                    if request.status == ApprovalRequestStatus.APPROVED_LEVEL_1
                    else (workflow.level_1_role, workflow.level_2_role)
                )
                self._require_role(allowed, actor_role)
            
            previous = request.status
            now = datetime.utcnow()
            request.status = ApprovalRequestStatus.REJECTED
            request.rejected_by = actor_id
            request.rejected_at = now
            request.rejection_reason = reason.strip()
            request.completed_at = now
            self._append_history(request, ApprovalAction.REJECTED, actor_id, previous, request.status, reason.strip())
            await self.db.flush()
            
            await self._dispatch(self._declined_handlers, request, actor_id)
            
            await self.audit.log_audit(
                actor_id, "REJECT", "approval_requests", request.id,
                old_values={"status": previous.value},
                new_values={"status": request.status.value, "reason": reason.strip()},
            )
        
        logger.info(f"Approval request {request.id} rejected by {actor_id}")
        return request
    
    async def cancel(
        self,
        request_id: uuid.UUID,
        actor_id: int,
        notes: Optional[str] = None,
    ) -> ApprovalRequest:
        """Withdraw an open request. Only the requester may cancel."""
        async with self.uow.atomic():
            request = await self.get_request(request_id)
            self._require_status(request, OPEN_REQUEST_STATUSES, "cancel")
            if request.requested_by != actor_id:
                raise ApprovalDeniedException(
                    "Only the requester can cancel an approval request",
                    details={"approval_request_id": str(request.id)},
                )
            
            previous = request.status
            request.status = ApprovalRequestStatus.CANCELLED
            request.completed_at = datetime.utcnow()
            self._append_history(request, ApprovalAction.CANCELLED, actor_id, previous, request.status, notes)
            await self.db.flush()
            
            await self._dispatch(self._declined_handlers, request, actor_id)
            
            await self.audit.log_audit(
                actor_id, "CANCEL", "approval_requests", request.id,
                old_values={"status": previous.value},
                new_values={"status": request.status.value, "notes": notes},
            )
        
        logger.info(f"Approval request {request.id} cancelled by {actor_id}")
        return request
    
    # ===========================================
    # QUERIES
    # ===========================================
    
    async def get_request(self, request_id: uuid.UUID) -> ApprovalRequest:
        result = await self.db.execute(
            select(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .options(selectinload(ApprovalRequest.history))
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if not request:
            raise NotFoundException("ApprovalRequest", request_id)
        return request
    
    async def get_history(self, request_id: uuid.UUID) -> List[ApprovalHistory]:
        await self.get_request(request_id)
        result = await self.db.execute(
            select(ApprovalHistory)
            .where(ApprovalHistory.request_id == request_id)
            .order_by(ApprovalHistory.sequence)
        )
        return list(result.scalars().all())
    
    async def find_open_request(self, resource_type: str, reference_id: uuid.UUID) -> Optional[ApprovalRequest]:
        result = await self.db.execute(
            select(ApprovalRequest)
            .where(
                and_(
                    ApprovalRequest.resource_type == resource_type,
                    ApprovalRequest.reference_id == reference_id,
                    ApprovalRequest.status.in_(OPEN_REQUEST_STATUSES),
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none()
    
    async def is_approved(self, resource_type: str, reference_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(ApprovalRequest.id)
            .where(
                and_(
                    ApprovalRequest.resource_type == resource_type,
                    ApprovalRequest.reference_id == reference_id,
                    ApprovalRequest.status == ApprovalRequestStatus.APPROVED,
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
    
    async def get_pending_for_role(self, role: str) -> List[ApprovalRequest]:
        """Requests currently waiting on a decision from ``role``."""
        result = await self.db.execute(
            select(ApprovalRequest)
            .join(ApprovalWorkflow, ApprovalWorkflow.transaction_type == ApprovalRequest.transaction_type)
            .where(
                or_(
                    and_(
                        ApprovalRequest.status == ApprovalRequestStatus.PENDING,
                        ApprovalWorkflow.level_1_role == role,
                    ),
                    and_(
                        ApprovalRequest.status == ApprovalRequestStatus.APPROVED_LEVEL_1,
                        ApprovalWorkflow.level_2_role == role,
                    ),
                    and_(
                        ApprovalRequest.status == ApprovalRequestStatus.PENDING,
                        ApprovalWorkflow.requires_dual_approval.is_(False),
                        ApprovalRequest.amount >= ApprovalWorkflow.level_2_threshold,
                        ApprovalWorkflow.level_2_role == role,
                    ),
                )
            )
            .order_by(ApprovalRequest.requested_at)
        )
        return list(result.scalars().all())
    
    # ===========================================
    # HELPERS
    # ===========================================
    
    async def _require_workflow(self, transaction_type: str, active_only: bool = True) -> ApprovalWorkflow:
        workflow = await self.get_workflow(transaction_type, active_only=active_only)
        if not workflow:
            raise BusinessRuleException(
                f"No active approval workflow configured for '{transaction_type}'",
                rule="WORKFLOW_CONFIGURED",
                details={"transaction_type": transaction_type},
            )
        return workflow
    
    @staticmethod
    def _require_status(request: ApprovalRequest, allowed: Iterable[ApprovalRequestStatus], action: str) -> None:
        if request.status not in tuple(allowed):
            raise InvalidStateTransitionException("approval request", request.status.value, action)
    
    @staticmethod
    def _require_role(required, actor_role: Optional[str]) -> None:
        roles = (required,) if isinstance(required, str) else tuple(required)
        if actor_role not in roles:
            raise InsufficientPermissionsException(" or ".join(roles), actor_role)
    
    @staticmethod
    def _require_not_requester(request: ApprovalRequest, actor_id: int) -> None:
        if request.requested_by == actor_id:
            raise ApprovalDeniedException(
                "Requesters cannot approve their own request",
                details={"approval_request_id": str(request.id)},
            )
    
    @staticmethod
    def _append_history(
        request: ApprovalRequest,
        action: ApprovalAction,
        actor_id: int,
        previous_status: Optional[ApprovalRequestStatus],
        new_status: ApprovalRequestStatus,
        notes: Optional[str] = None,
    ) -> ApprovalHistory:
        row = ApprovalHistory(
            sequence=len(request.history) + 1,
            action=action,
            actor_id=actor_id,
            previous_status=previous_status,
            new_status=new_status,
            notes=notes,
        )
        request.history.append(row)
        return row
    
    async def _dispatch(
        self,
        handlers: Dict[str, ApprovalHandler],
        request: ApprovalRequest,
        actor_id: int,
    ) -> None:
        handler = handlers.get(request.resource_type)
        if handler:
            await handler(request, actor_id)
