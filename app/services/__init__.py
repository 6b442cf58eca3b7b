"""
School Ledger - Services Package

Business logic services.
"""

from app.services.audit_service import AuditService
from app.services.period_lock_service import PeriodLockService
from app.services.approval_workflow import ApprovalWorkflowService
from app.services.budget_service import BudgetEnforcementService
from app.services.accounting_service import AccountingService
from app.services.ledger_posting_service import LedgerPostingService
from app.services.amount_repair_service import AmountRepairService

__all__ = [
    "AuditService",
    "PeriodLockService",
    "ApprovalWorkflowService",
    "BudgetEnforcementService",
    "AccountingService",
    "LedgerPostingService",
    "AmountRepairService",
]
