"""
School Ledger - Approval Workflow Schemas
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictInt, model_validator

from app.models.approval import ApprovalAction, ApprovalRequestStatus


class ApprovalWorkflowCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    transaction_type: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=255)
    level_1_threshold: StrictInt = Field(..., ge=0)
    level_1_role: str = Field(..., min_length=1, max_length=50)
    level_2_threshold: StrictInt = Field(..., ge=0)
    level_2_role: str = Field(..., min_length=1, max_length=50)
    requires_dual_approval: bool = False
    is_active: bool = True
    
    @model_validator(mode="after")
    def check_thresholds(self):
        if self.level_1_threshold >= self.level_2_threshold:
            raise ValueError("level_1_threshold must be lower than level_2_threshold")
        return self


class ApprovalWorkflowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    transaction_type: str
    description: Optional[str] = None
    level_1_threshold: int
    level_1_role: str
    level_2_threshold: int
    level_2_role: str
    requires_dual_approval: bool
    is_active: bool


class ApprovalDecisionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    notes: Optional[str] = Field(None, max_length=1000)


class ApprovalRejectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    reason: str = Field(..., min_length=1, max_length=1000)


class ApprovalHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    id: UUID
    sequence: int
    action: ApprovalAction
    actor_id: int
    previous_status: Optional[ApprovalRequestStatus] = None
    new_status: ApprovalRequestStatus
    notes: Optional[str] = None
    created_at: datetime


class ApprovalRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    id: UUID
    transaction_type: str
    resource_type: str
    reference_id: UUID
    amount: int
    description: Optional[str] = None
    status: ApprovalRequestStatus
    approval_level: int
    requested_by: int
    requested_at: datetime
    level_1_approver: Optional[int] = None
    level_1_approved_at: Optional[datetime] = None
    level_2_approver: Optional[int] = None
    level_2_approved_at: Optional[datetime] = None
    rejected_by: Optional[int] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    history: List[ApprovalHistoryResponse] = []
