"""
School Ledger - Approval Workflow Models

Threshold-based two-level approval: one workflow per transaction type,
one request per gated resource, and an append-only decision history.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid,
    Enum as SQLEnum, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.models.base import AppendOnlyModel, AuditMixin, BaseModel, TimestampMixin


class ApprovalRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED_LEVEL_1 = "APPROVED_LEVEL_1"
    APPROVED_LEVEL_2 = "APPROVED_LEVEL_2"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


OPEN_REQUEST_STATUSES = (
    ApprovalRequestStatus.PENDING,
    ApprovalRequestStatus.APPROVED_LEVEL_1,
)


class ApprovalAction(str, Enum):
    SUBMITTED = "SUBMITTED"
    AUTO_APPROVED = "AUTO_APPROVED"
    APPROVED_LEVEL_1 = "APPROVED_LEVEL_1"
    APPROVED_LEVEL_2 = "APPROVED_LEVEL_2"
    FINALIZED = "FINALIZED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ApprovalWorkflow(Base, TimestampMixin, AuditMixin):
    """
    Approval thresholds for one transaction type.
    
    Amounts below ``level_1_threshold`` need no approval; amounts from
    level 1 up to ``level_2_threshold`` need the level-1 role; anything at
    or above level 2 (or everything gated, when dual approval is required)
    needs both roles in sequence.
    """
    
    __tablename__ = "approval_workflows"
    
    transaction_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    
    level_1_threshold: Mapped[int] = mapped_column(BigInteger, nullable=False)
    level_1_role: Mapped[str] = mapped_column(String(50), nullable=False)
    level_2_threshold: Mapped[int] = mapped_column(BigInteger, nullable=False)
    level_2_role: Mapped[str] = mapped_column(String(50), nullable=False)
    requires_dual_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    __table_args__ = (
        CheckConstraint("level_1_threshold < level_2_threshold", name="threshold_order"),
        CheckConstraint("level_1_threshold >= 0", name="non_negative_threshold"),
    )
    
    def __repr__(self) -> str:
        return f"<ApprovalWorkflow(transaction_type={self.transaction_type})>"


class ApprovalRequest(BaseModel):
    """Approval request for one gated resource (a journal entry or a void)."""
    
    __tablename__ = "approval_requests"
    
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    
    status: Mapped[ApprovalRequestStatus] = mapped_column(
        SQLEnum(ApprovalRequestStatus),
        default=ApprovalRequestStatus.PENDING,
        nullable=False,
    )
    approval_level: Mapped[int] = mapped_column(Integer, nullable=False)
    
    requested_by: Mapped[int] = mapped_column(Integer, nullable=False)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=datetime.utcnow, nullable=False
    )
    
    level_1_approver: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    level_1_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    level_2_approver: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    level_2_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    rejected_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    history: Mapped[List["ApprovalHistory"]] = relationship(
        back_populates="request",
        order_by="ApprovalHistory.sequence",
        lazy="selectin",
    )
    
    __table_args__ = (
        Index("ix_approval_requests_resource", "resource_type", "reference_id"),
        Index("ix_approval_requests_status", "status"),
        CheckConstraint("approval_level BETWEEN 0 AND 2", name="level_range"),
    )
    
    @property
    def is_open(self) -> bool:
        return self.status in OPEN_REQUEST_STATUSES


class ApprovalHistory(AppendOnlyModel):
    """One row per approval state transition. Never updated or deleted."""
    
    __tablename__ = "approval_history"
    
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("approval_requests.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[ApprovalAction] = mapped_column(SQLEnum(ApprovalAction), nullable=False)
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_status: Mapped[Optional[ApprovalRequestStatus]] = mapped_column(
        SQLEnum(ApprovalRequestStatus), nullable=True
    )
    new_status: Mapped[ApprovalRequestStatus] = mapped_column(
        SQLEnum(ApprovalRequestStatus), nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    request: Mapped["ApprovalRequest"] = relationship(back_populates="history")
    
    __table_args__ = (
        UniqueConstraint("request_id", "sequence", name="uq_approval_history_sequence"),
    )
