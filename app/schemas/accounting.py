"""
School Ledger - Accounting Schemas

Pydantic schemas for the Chart of Accounts and the journal posting engine.
Money fields are strict integers (cents); floats are rejected at the boundary.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

from app.models.accounting import (
    AccountType,
    EntryApprovalStatus,
    JournalEntryType,
    NormalBalance,
)


def _clean_department(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# =============================================================================
# CHART OF ACCOUNTS SCHEMAS
# =============================================================================

DEFAULT_NORMAL_BALANCE = {
    AccountType.ASSET: NormalBalance.DEBIT,
    AccountType.EXPENSE: NormalBalance.DEBIT,
    AccountType.LIABILITY: NormalBalance.CREDIT,
    AccountType.EQUITY: NormalBalance.CREDIT,
    AccountType.REVENUE: NormalBalance.CREDIT,
}


class AccountCreate(BaseModel):
    """Schema for creating an account."""
    model_config = ConfigDict(extra="forbid")
    
    code: str = Field(..., min_length=1, max_length=20, pattern=r"^[0-9A-Za-z\-]+$")
    name: str = Field(..., min_length=1, max_length=255)
    account_type: AccountType
    normal_balance: Optional[NormalBalance] = None
    description: Optional[str] = None
    is_system: bool = False
    is_active: bool = True
    
    @model_validator(mode="after")
    def default_normal_balance(self):
        if self.normal_balance is None:
            self.normal_balance = DEFAULT_NORMAL_BALANCE[self.account_type]
        return self


class AccountUpdate(BaseModel):
    """
    Mutable account columns. Type and normal balance are fixed at creation;
    ``code`` may only change on non-system accounts without postings.
    """
    model_config = ConfigDict(extra="forbid")
    
    code: Optional[str] = Field(None, min_length=1, max_length=20, pattern=r"^[0-9A-Za-z\-]+$")
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    id: UUID
    code: str
    name: str
    description: Optional[str] = None
    account_type: AccountType
    normal_balance: NormalBalance
    is_system: bool
    is_active: bool
    current_balance: int


# =============================================================================
# JOURNAL ENTRY SCHEMAS
# =============================================================================

class JournalEntryLineCreate(BaseModel):
    """One debit or credit line. Exactly one side must be positive."""
    model_config = ConfigDict(extra="forbid")
    
    account_code: str = Field(..., min_length=1, max_length=20)
    debit_amount: StrictInt = Field(0, ge=0)
    credit_amount: StrictInt = Field(0, ge=0)
    description: Optional[str] = Field(None, max_length=500)


class JournalEntryRequest(BaseModel):
    """Journal entry as submitted by a caller; the actor comes from the request context."""
    model_config = ConfigDict(extra="forbid")
    
    entry_date: date
    entry_type: JournalEntryType
    description: str = Field(..., min_length=1, max_length=500)
    lines: List[JournalEntryLineCreate] = Field(..., min_length=1)
    
    student_id: Optional[int] = None
    staff_id: Optional[int] = None
    term_id: Optional[int] = None
    department: Optional[str] = Field(None, max_length=100)
    
    source_ref: Optional[str] = Field(None, max_length=100)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=100)
    requires_approval: bool = False
    enforce_budget: bool = False
    
    @field_validator("department")
    @classmethod
    def normalize_department(cls, v):
        return _clean_department(v)


class JournalEntryCreate(JournalEntryRequest):
    """Schema the posting engine accepts."""
    created_by: int


class JournalEntryLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    id: UUID
    line_number: int
    account_code: str
    debit_amount: int
    credit_amount: int
    description: Optional[str] = None


class JournalEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    id: UUID
    entry_ref: str
    entry_date: date
    entry_type: JournalEntryType
    description: str
    student_id: Optional[int] = None
    staff_id: Optional[int] = None
    term_id: Optional[int] = None
    department: Optional[str] = None
    total_debit: int
    total_credit: int
    is_posted: bool
    posted_at: Optional[datetime] = None
    is_voided: bool
    voided_reason: Optional[str] = None
    voided_by: Optional[int] = None
    voided_at: Optional[datetime] = None
    reversal_of_id: Optional[UUID] = None
    requires_approval: bool
    approval_status: EntryApprovalStatus
    created_by: int
    created_at: datetime
    source_ref: Optional[str] = None
    idempotency_key: Optional[str] = None
    lines: List[JournalEntryLineResponse] = []


class PostingOutcome(str, Enum):
    POSTED = "POSTED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    DUPLICATE = "DUPLICATE"
    REJECTED = "REJECTED"


class PostingResult(BaseModel):
    """Outcome of a posting request. Business-rule failures land here, never as exceptions."""
    success: bool
    outcome: PostingOutcome
    entry_id: Optional[UUID] = None
    entry_ref: Optional[str] = None
    approval_request_id: Optional[UUID] = None
    error_code: Optional[str] = None
    message: str
    details: Dict[str, Any] = {}


class VoidRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    reason: str = Field(..., min_length=1, max_length=1000)


class VoidResult(BaseModel):
    success: bool
    requires_approval: bool = False
    approval_request_id: Optional[UUID] = None
    reversal_entry_id: Optional[UUID] = None
    void_audit_id: Optional[UUID] = None
    error_code: Optional[str] = None
    message: str


class VoidRecoveryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    recovered_amount: StrictInt = Field(..., gt=0)
    recovered_method: str = Field(..., min_length=1, max_length=50)
    notes: Optional[str] = None


class VoidAuditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    id: UUID
    entry_id: UUID
    reversal_entry_id: UUID
    entry_type: JournalEntryType
    original_amount: int
    student_id: Optional[int] = None
    description: Optional[str] = None
    void_reason: str
    voided_by: int
    voided_at: datetime
    approval_request_id: Optional[UUID] = None
    recovered_amount: Optional[int] = None
    recovered_method: Optional[str] = None
    recovered_at: Optional[datetime] = None
    recovered_by: Optional[int] = None
    notes: Optional[str] = None


# =============================================================================
# BALANCE SCHEMAS
# =============================================================================

class AccountBalanceResponse(BaseModel):
    account_code: str
    account_name: str
    normal_balance: NormalBalance
    total_debit: int
    total_credit: int
    balance: int
    as_of: Optional[date] = None


class TrialBalanceLine(BaseModel):
    account_code: str
    account_name: str
    account_type: AccountType
    debit_balance: int = 0
    credit_balance: int = 0


class TrialBalanceReport(BaseModel):
    as_of: Optional[date] = None
    lines: List[TrialBalanceLine]
    total_debit: int
    total_credit: int
    is_balanced: bool
