"""
School Ledger - Posting Helper Schemas

Inputs for the common school postings built on top of the journal engine.
"""

from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, model_validator


class PaymentMethod(str, Enum):
    CASH = "CASH"
    MPESA = "MPESA"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHEQUE = "CHEQUE"


class FeePaymentCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    student_id: int
    amount: StrictInt = Field(..., gt=0)
    payment_method: PaymentMethod
    payment_reference: str = Field(..., min_length=1, max_length=100)
    payment_date: date
    term_id: Optional[int] = None
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=100)


class InvoiceItem(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    gl_account_code: str = Field(..., min_length=1, max_length=20)
    amount: StrictInt = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)


class FeeInvoiceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    student_id: int
    invoice_date: date
    items: List[InvoiceItem] = Field(..., min_length=1)
    term_id: Optional[int] = None
    invoice_ref: Optional[str] = Field(None, max_length=100)


class StaffCategory(str, Enum):
    TEACHING = "TEACHING"
    NON_TEACHING = "NON_TEACHING"


class PayrollLine(BaseModel):
    """One staff member's pay for the period. Deductions default to zero."""
    model_config = ConfigDict(extra="forbid")
    
    staff_id: int
    category: StaffCategory = StaffCategory.TEACHING
    gross_salary: StrictInt = Field(..., gt=0)
    paye: StrictInt = Field(0, ge=0)
    nssf: StrictInt = Field(0, ge=0)
    nhif: StrictInt = Field(0, ge=0)
    housing_levy: StrictInt = Field(0, ge=0)
    
    @property
    def total_deductions(self) -> int:
        return self.paye + self.nssf + self.nhif + self.housing_levy
    
    @property
    def net_salary(self) -> int:
        return self.gross_salary - self.total_deductions
    
    @model_validator(mode="after")
    def deductions_within_gross(self):
        if self.total_deductions > self.gross_salary:
            raise ValueError("Deductions cannot exceed gross salary")
        return self


class PayrollPostingCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    period_label: str = Field(..., min_length=1, max_length=100)
    payment_date: date
    lines: List[PayrollLine] = Field(..., min_length=1)
    department: Optional[str] = Field(None, max_length=100)
    include_employer_contributions: bool = True
    enforce_budget: bool = True


class DepreciationCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    asset_ref: str = Field(..., min_length=1, max_length=100)
    amount: StrictInt = Field(..., gt=0)
    depreciation_date: date
    description: Optional[str] = Field(None, max_length=500)
