"""
School Ledger - Budget Schemas
"""

from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from app.schemas.accounting import _clean_department


class BudgetAllocationCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    account_code: str = Field(..., min_length=1, max_length=20)
    fiscal_year: int = Field(..., ge=1900, le=9999)
    department: Optional[str] = Field(None, max_length=100)
    allocated_amount: StrictInt = Field(..., ge=0)
    notes: Optional[str] = None
    
    @field_validator("department")
    @classmethod
    def normalize_department(cls, v):
        return _clean_department(v)


class BudgetAllocationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    
    id: UUID
    account_code: str
    fiscal_year: int
    department: Optional[str] = None
    allocated_amount: int
    is_active: bool
    notes: Optional[str] = None


class BudgetValidationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    
    account_code: str = Field(..., min_length=1, max_length=20)
    amount: StrictInt = Field(..., ge=0)
    fiscal_year: int = Field(..., ge=1900, le=9999)
    department: Optional[str] = Field(None, max_length=100)
    
    @field_validator("department")
    @classmethod
    def normalize_department(cls, v):
        return _clean_department(v)


class BudgetCheckLevel(str, Enum):
    NO_BUDGET = "NO_BUDGET"
    OK = "OK"
    NOTICE = "NOTICE"
    WARNING = "WARNING"
    BLOCKED = "BLOCKED"


class BudgetStatus(BaseModel):
    allocated: int
    spent: int
    remaining: int
    utilization_percentage: float
    utilization_after_transaction: float


class BudgetValidationResult(BaseModel):
    is_allowed: bool
    level: BudgetCheckLevel
    message: str
    overrun_amount: int = 0
    budget_status: Optional[BudgetStatus] = None


class BudgetUtilization(BudgetAllocationResponse):
    spent: int
    remaining: int
    utilization_percentage: float


class VarianceStatus(str, Enum):
    UNDER_BUDGET = "UNDER_BUDGET"
    ON_BUDGET = "ON_BUDGET"
    OVER_BUDGET = "OVER_BUDGET"


class BudgetVarianceLine(BaseModel):
    account_code: str
    account_name: str
    department: Optional[str] = None
    budgeted: int
    actual: int
    variance: int
    variance_percentage: float
    status: VarianceStatus


class BudgetVarianceReport(BaseModel):
    fiscal_year: int
    lines: List[BudgetVarianceLine]
    total_budgeted: int
    total_actual: int
    total_variance: int


class AlertSeverity(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    EXCEEDED = "EXCEEDED"


class BudgetAlert(BaseModel):
    allocation_id: UUID
    account_code: str
    account_name: str
    department: Optional[str] = None
    allocated: int
    spent: int
    utilization_percentage: float
    severity: AlertSeverity
    message: str
