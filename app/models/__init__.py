"""
School Ledger - Database Models

Importing this package registers every table on ``Base.metadata`` and
installs the immutability guards.
"""

from app.models.base import BaseModel, TimestampMixin, AuditMixin, AppendOnlyModel
from app.models.accounting import (
    Account,
    AccountType,
    NormalBalance,
    JournalEntry,
    JournalEntryLine,
    JournalEntryType,
    EntryApprovalStatus,
    FinancialPeriod,
    FinancialPeriodStatus,
    PeriodLockAudit,
    PeriodLockAction,
    VoidAudit,
)
from app.models.approval import (
    ApprovalWorkflow,
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalHistory,
    ApprovalAction,
)
from app.models.budget import BudgetAllocation
from app.models.audit import AuditLog
from app.models import guards  # noqa: F401

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "AuditMixin",
    "AppendOnlyModel",
    "Account",
    "AccountType",
    "NormalBalance",
    "JournalEntry",
    "JournalEntryLine",
    "JournalEntryType",
    "EntryApprovalStatus",
    "FinancialPeriod",
    "FinancialPeriodStatus",
    "PeriodLockAudit",
    "PeriodLockAction",
    "VoidAudit",
    "ApprovalWorkflow",
    "ApprovalRequest",
    "ApprovalRequestStatus",
    "ApprovalHistory",
    "ApprovalAction",
    "BudgetAllocation",
    "AuditLog",
]
