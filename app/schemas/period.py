"""
School Ledger - Financial Period Schemas
"""

from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.accounting import FinancialPeriodStatus, PeriodLockAction


class FinancialPeriodCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    name: str = Field(..., min_length=1, max_length=100)
    fiscal_year: int = Field(..., ge=1900, le=9999)
    start_date: date
    end_date: date
    
    @model_validator(mode="after")
    def check_range(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class FinancialPeriodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    id: UUID
    name: str
    fiscal_year: int
    start_date: date
    end_date: date
    status: FinancialPeriodStatus
    locked_by: Optional[int] = None
    locked_at: Optional[datetime] = None
    closed_by: Optional[int] = None
    closed_at: Optional[datetime] = None


class PeriodTransitionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    reason: Optional[str] = Field(None, max_length=1000)


class PeriodUnlockRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    reason: str = Field(..., min_length=1, max_length=1000)


class PeriodLockAuditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    id: UUID
    period_id: UUID
    sequence: int
    action: PeriodLockAction
    previous_status: FinancialPeriodStatus
    new_status: FinancialPeriodStatus
    performed_by: int
    reason: Optional[str] = None
    created_at: datetime


class TransactionDateCheck(BaseModel):
    """Answer of the period gate for one date."""
    allowed: bool
    message: Optional[str] = None
    period_id: Optional[UUID] = None
    period_name: Optional[str] = None
    period_status: Optional[FinancialPeriodStatus] = None
    fiscal_year: Optional[int] = None
