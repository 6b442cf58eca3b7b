"""
School Ledger - Budget Enforcement Service

Gates postings against per-account budget allocations:
- No allocation for the exact scope: allowed (budgets are opt-in)
- Spend would exceed the allocation: blocked, overrun reported
- Utilization crosses 90% / 80%: allowed with a warning / notice
- Any internal failure: blocked (fail closed)

Spend is read as a live aggregate; two concurrent postings may both pass the
check before either commits.
"""

import logging
import uuid
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import unit_of_work
from app.models.accounting import (
    Account,
    JournalEntry,
    JournalEntryLine,
    JournalEntryType,
    NormalBalance,
)
from app.models.budget import BudgetAllocation
from app.schemas.budget import (
    AlertSeverity,
    BudgetAlert,
    BudgetAllocationCreate,
    BudgetCheckLevel,
    BudgetStatus,
    BudgetUtilization,
    BudgetValidationResult,
    BudgetVarianceLine,
    BudgetVarianceReport,
    VarianceStatus,
)
from app.services.audit_service import AuditService
from app.services.period_lock_service import PeriodLockService
from app.utils.error_handling import ErrorCode, NotFoundException
from app.utils.money import format_cents, percentage

logger = logging.getLogger(__name__)


def _department_clause(column, department: Optional[str]):
    """Exact department match; NULL matches only NULL."""
    if department is None:
        return column.is_(None)
    return column == department


def _scope_label(account_code: str, fiscal_year: int, department: Optional[str]) -> str:
    label = f"account {account_code} in FY {fiscal_year}"
    if department:
        label += f" ({department})"
    return label


class BudgetEnforcementService:
    """Service for budget allocations and pre-posting budget checks."""
    
    def __init__(
        self,
        db: AsyncSession,
        audit: Optional[AuditService] = None,
        periods: Optional[PeriodLockService] = None,
        notice_threshold: Optional[int] = None,
        warning_threshold: Optional[int] = None,
    ):
        self.db = db
        self.uow = unit_of_work(db)
        self.audit = audit or AuditService(db)
        self.periods = periods or PeriodLockService(db, audit=self.audit)
        self.notice_threshold = notice_threshold if notice_threshold is not None else settings.budget_notice_threshold
        self.warning_threshold = warning_threshold if warning_threshold is not None else settings.budget_warning_threshold
    
    # ===========================================
    # ALLOCATIONS
    # ===========================================
    
    async def set_allocation(self, data: BudgetAllocationCreate, actor_id: int) -> BudgetAllocation:
        """Create or update the active allocation for an account/year/department scope."""
        async with self.uow.atomic():
            account = await self.db.scalar(select(Account).where(Account.code == data.account_code))
            if not account:
                raise NotFoundException(
                    "Account", message=f"Account {data.account_code} not found",
                    code=ErrorCode.ACCOUNT_NOT_FOUND,
                )
            
            allocation = await self.get_allocation(data.account_code, data.fiscal_year, data.department)
            old_values = None
            if allocation:
                old_values = {"allocated_amount": allocation.allocated_amount, "notes": allocation.notes}
                allocation.allocated_amount = data.allocated_amount
                allocation.notes = data.notes
                allocation.updated_by_id = actor_id
            else:
                allocation = BudgetAllocation(
                    account_code=data.account_code,
                    fiscal_year=data.fiscal_year,
                    department=data.department,
                    allocated_amount=data.allocated_amount,
                    notes=data.notes,
                    is_active=True,
                    created_by_id=actor_id,
                )
                self.db.add(allocation)
            await self.db.flush()
            
            await self.audit.log_audit(
                actor_id, "UPDATE" if old_values else "CREATE", "budget_allocations", allocation.id,
                old_values=old_values, new_values=data.model_dump(),
            )
        
        logger.info(
            f"Budget allocation for {_scope_label(data.account_code, data.fiscal_year, data.department)} "
            f"set to {data.allocated_amount}"
        )
        return allocation
    
    async def deactivate_allocation(self, allocation_id: uuid.UUID, actor_id: int) -> BudgetAllocation:
        async with self.uow.atomic():
            allocation = await self.db.get(BudgetAllocation, allocation_id)
            if not allocation:
                raise NotFoundException("BudgetAllocation", allocation_id)
            allocation.is_active = False
            allocation.updated_by_id = actor_id
            await self.db.flush()
            
            await self.audit.log_audit(
                actor_id, "DEACTIVATE", "budget_allocations", allocation.id,
                old_values={"is_active": True}, new_values={"is_active": False},
            )
        return allocation
    
    async def get_allocation(
        self,
        account_code: str,
        fiscal_year: int,
        department: Optional[str] = None,
    ) -> Optional[BudgetAllocation]:
        """Active allocation for exactly this scope."""
        result = await self.db.execute(
            select(BudgetAllocation).where(
                and_(
                    BudgetAllocation.account_code == account_code,
                    BudgetAllocation.fiscal_year == fiscal_year,
                    _department_clause(BudgetAllocation.department, department),
                    BudgetAllocation.is_active.is_(True),
                )
            )
        )
        return result.scalar_one_or_none()
    
    async def list_allocations(self, fiscal_year: int) -> List[BudgetUtilization]:
        """Active allocations of a fiscal year with their current utilization."""
        result = await self.db.execute(
            select(BudgetAllocation)
            .where(and_(BudgetAllocation.fiscal_year == fiscal_year, BudgetAllocation.is_active.is_(True)))
            .order_by(BudgetAllocation.account_code, BudgetAllocation.department)
        )
        items = []
        for allocation in result.scalars().all():
            spent = await self.calculate_spent(allocation.account_code, fiscal_year, allocation.department)
            items.append(BudgetUtilization(
                id=allocation.id,
                account_code=allocation.account_code,
                fiscal_year=allocation.fiscal_year,
                department=allocation.department,
                allocated_amount=allocation.allocated_amount,
                is_active=allocation.is_active,
                notes=allocation.notes,
                spent=spent,
                remaining=allocation.allocated_amount - spent,
                utilization_percentage=percentage(spent, allocation.allocated_amount),
            ))
        return items
    
    # ===========================================
    # SPEND
    # ===========================================
    
    async def get_fiscal_year_bounds(self, fiscal_year: int) -> Tuple[date, date]:
        """
        Fiscal year boundaries from the configured periods. Falls back to the
        calendar year only when no period of that year exists.
        """
        bounds = await self.periods.get_fiscal_year_bounds(fiscal_year)
        if bounds is None:
            return date(fiscal_year, 1, 1), date(fiscal_year, 12, 31)
        return bounds
    
    async def calculate_spent(
        self,
        account_code: str,
        fiscal_year: int,
        department: Optional[str] = None,
    ) -> int:
        """
        Net activity on an account within the fiscal year, signed by the
        account's normal balance.
        
        Voided entries and their VOID_REVERSAL counterparts are both left out.
        """
        normal_balance = await self.db.scalar(
            select(Account.normal_balance).where(Account.code == account_code)
        )
        if normal_balance is None:
            raise NotFoundException(
                "Account", message=f"Account {account_code} not found",
                code=ErrorCode.ACCOUNT_NOT_FOUND,
            )
        start, end = await self.get_fiscal_year_bounds(fiscal_year)
        
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(JournalEntryLine.debit_amount), 0),
                func.coalesce(func.sum(JournalEntryLine.credit_amount), 0),
            )
            .join(JournalEntry, JournalEntry.id == JournalEntryLine.entry_id)
            .where(
                and_(
                    JournalEntryLine.account_code == account_code,
                    JournalEntry.is_posted.is_(True),
                    JournalEntry.is_voided.is_(False),
                    JournalEntry.entry_type != JournalEntryType.VOID_REVERSAL,
                    JournalEntry.entry_date >= start,
                    JournalEntry.entry_date <= end,
                    _department_clause(JournalEntry.department, department),
                )
            )
        )
        debits, credits = result.one()
        if normal_balance == NormalBalance.DEBIT:
            return int(debits) - int(credits)
        return int(credits) - int(debits)
    
    # ===========================================
    # VALIDATION
    # ===========================================
    
    async def validate_transaction(
        self,
        account_code: str,
        amount: int,
        fiscal_year: int,
        department: Optional[str] = None,
    ) -> BudgetValidationResult:
        """
        Check a proposed spend against the budget.
        
        Never raises: any failure while computing the check blocks the
        transaction instead of letting unchecked spend through.
        """
        try:
            return await self._validate(account_code, amount, fiscal_year, department)
        except Exception as e:
            logger.exception(f"Budget validation failed for {_scope_label(account_code, fiscal_year, department)}")
            return BudgetValidationResult(
                is_allowed=False,
                level=BudgetCheckLevel.BLOCKED,
                message=(
                    f"Budget validation failed: {e}. "
                    "Transaction blocked until budget checks recover."
                ),
            )
    
    async def _validate(
        self,
        account_code: str,
        amount: int,
        fiscal_year: int,
        department: Optional[str],
    ) -> BudgetValidationResult:
        allocation = await self.get_allocation(account_code, fiscal_year, department)
        if not allocation:
            return BudgetValidationResult(
                is_allowed=True,
                level=BudgetCheckLevel.NO_BUDGET,
                message=f"No budget allocation for {_scope_label(account_code, fiscal_year, department)}",
            )
        
        allocated = allocation.allocated_amount
        spent = await self.calculate_spent(account_code, fiscal_year, department)
        after = spent + amount
        status = BudgetStatus(
            allocated=allocated,
            spent=spent,
            remaining=allocated - spent,
            utilization_percentage=percentage(spent, allocated),
            utilization_after_transaction=percentage(after, allocated),
        )
        
        if after > allocated:
            overrun = after - allocated
            return BudgetValidationResult(
                is_allowed=False,
                level=BudgetCheckLevel.BLOCKED,
                message=(
                    f"Budget exceeded for {_scope_label(account_code, fiscal_year, department)}. "
                    f"Allocated: {format_cents(allocated)}, Spent: {format_cents(spent)}, "
                    f"Requested: {format_cents(amount)}, Overrun: {format_cents(overrun)}"
                ),
                overrun_amount=overrun,
                budget_status=status,
            )
        
        if self._crosses(spent, after, allocated, self.warning_threshold):
            return BudgetValidationResult(
                is_allowed=True,
                level=BudgetCheckLevel.WARNING,
                message=(
                    f"Warning: this transaction brings {_scope_label(account_code, fiscal_year, department)} "
                    f"to {status.utilization_after_transaction}% of its budget"
                ),
                budget_status=status,
            )
        
        if self._crosses(spent, after, allocated, self.notice_threshold):
            return BudgetValidationResult(
                is_allowed=True,
                level=BudgetCheckLevel.NOTICE,
                message=(
                    f"Notice: {_scope_label(account_code, fiscal_year, department)} has reached "
                    f"{status.utilization_after_transaction}% of its budget"
                ),
                budget_status=status,
            )
        
        return BudgetValidationResult(
            is_allowed=True,
            level=BudgetCheckLevel.OK,
            message=f"Within budget. Remaining after transaction: {format_cents(allocated - after)}",
            budget_status=status,
        )
    
    @staticmethod
    def _crosses(before: int, after: int, allocated: int, threshold_percent: int) -> bool:
        """True when utilization moves from below ``threshold_percent`` to at/above it."""
        limit = threshold_percent * allocated
        return before * 100 < limit <= after * 100
    
    # ===========================================
    # REPORTS
    # ===========================================
    
    async def variance_report(self, fiscal_year: int) -> BudgetVarianceReport:
        lines = []
        for item in await self.list_allocations(fiscal_year):
            name = await self.db.scalar(select(Account.name).where(Account.code == item.account_code))
            variance = item.allocated_amount - item.spent
            if item.spent > item.allocated_amount:
                status = VarianceStatus.OVER_BUDGET
            elif item.utilization_percentage >= 95:
                status = VarianceStatus.ON_BUDGET
            else:
                status = VarianceStatus.UNDER_BUDGET
            lines.append(BudgetVarianceLine(
                account_code=item.account_code,
                account_name=name or item.account_code,
                department=item.department,
                budgeted=item.allocated_amount,
                actual=item.spent,
                variance=variance,
                variance_percentage=percentage(variance, item.allocated_amount) if item.allocated_amount else 0.0,
                status=status,
            ))
        
        total_budgeted = sum(line.budgeted for line in lines)
        total_actual = sum(line.actual for line in lines)
        return BudgetVarianceReport(
            fiscal_year=fiscal_year,
            lines=lines,
            total_budgeted=total_budgeted,
            total_actual=total_actual,
            total_variance=total_budgeted - total_actual,
        )
    
    async def get_alerts(self, fiscal_year: int, threshold: Optional[int] = None) -> List[BudgetAlert]:
        """Allocations at or above ``threshold`` percent utilization."""
        threshold = threshold if threshold is not None else self.notice_threshold
        alerts = []
        for item in await self.list_allocations(fiscal_year):
            if item.spent * 100 < threshold * item.allocated_amount:
                continue
            if item.spent >= item.allocated_amount:
                severity = AlertSeverity.EXCEEDED
            elif item.spent * 100 >= self.warning_threshold * item.allocated_amount:
                severity = AlertSeverity.CRITICAL
            else:
                severity = AlertSeverity.WARNING
            name = await self.db.scalar(select(Account.name).where(Account.code == item.account_code))
            alerts.append(BudgetAlert(
                allocation_id=item.id,
                account_code=item.account_code,
                account_name=name or item.account_code,
                department=item.department,
                allocated=item.allocated_amount,
                spent=item.spent,
                utilization_percentage=item.utilization_percentage,
                severity=severity,
                message=(
                    f"{name or item.account_code} is at {item.utilization_percentage}% "
                    f"of its {fiscal_year} budget"
                ),
            ))
        return alerts
