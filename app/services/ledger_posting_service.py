"""
School Ledger - Ledger Posting Service

Builds the journal lines for routine school transactions and hands them
to the posting engine:
- Fee payments:   Dr Cash/Bank,            Cr Student Receivables
- Fee invoices:   Dr Student Receivables,  Cr each fee revenue account
- Payroll:        Dr Salary expense,       Cr statutory payables + Salary Payable
- Depreciation:   Dr Depreciation Expense, Cr Accumulated Depreciation
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.accounting import JournalEntry, JournalEntryType
from app.schemas.accounting import JournalEntryCreate, JournalEntryLineCreate, PostingResult
from app.schemas.posting import (
    DepreciationCreate,
    FeeInvoiceCreate,
    FeePaymentCreate,
    PaymentMethod,
    PayrollPostingCreate,
    StaffCategory,
)
from app.services.accounting_service import AccountingService

logger = logging.getLogger(__name__)


class SystemAccounts:
    """Account codes the posting helpers rely on."""
    CASH = "1010"
    BANK = "1020"
    ACCOUNTS_RECEIVABLE = "1100"
    ACCUMULATED_DEPRECIATION = "1390"
    SALARY_PAYABLE = "2100"
    PAYE_PAYABLE = "2110"
    NSSF_PAYABLE = "2120"
    NHIF_PAYABLE = "2130"
    HOUSING_LEVY_PAYABLE = "2140"
    SALARY_TEACHING = "5010"
    SALARY_NON_TEACHING = "5020"
    EMPLOYER_NSSF_EXPENSE = "5030"
    EMPLOYER_HOUSING_LEVY_EXPENSE = "5050"
    DEPRECIATION_EXPENSE = "5600"


def _debit(account_code: str, amount: int, description: str) -> JournalEntryLineCreate:
    return JournalEntryLineCreate(account_code=account_code, debit_amount=amount, description=description)


def _credit(account_code: str, amount: int, description: str) -> JournalEntryLineCreate:
    return JournalEntryLineCreate(account_code=account_code, credit_amount=amount, description=description)


class LedgerPostingService:
    """Service for routine school postings."""
    
    def __init__(self, db: AsyncSession, accounting: Optional[AccountingService] = None):
        self.db = db
        self.accounting = accounting or AccountingService(db)
        self.uow = self.accounting.uow
    
    async def record_payment(self, data: FeePaymentCreate, actor_id: int) -> PostingResult:
        """
        Record a student fee payment.
        
        The payment reference doubles as the idempotency key unless the
        caller supplies one, so a resubmitted payment comes back DUPLICATE.
        """
        cash_account = SystemAccounts.CASH if data.payment_method == PaymentMethod.CASH else SystemAccounts.BANK
        idempotency_key = data.idempotency_key or (
            f"fee-payment:{data.payment_method.value}:{data.payment_reference}"
        )
        
        return await self.accounting.create_entry(JournalEntryCreate(
            entry_date=data.payment_date,
            entry_type=JournalEntryType.FEE_PAYMENT,
            description=f"Fee payment received - {data.payment_method.value} - Ref: {data.payment_reference}",
            student_id=data.student_id,
            term_id=data.term_id,
            source_ref=data.payment_reference,
            idempotency_key=idempotency_key,
            created_by=actor_id,
            lines=[
                _debit(cash_account, data.amount, "Fee payment received"),
                _credit(SystemAccounts.ACCOUNTS_RECEIVABLE, data.amount, "Student fee payment"),
            ],
        ))
    
    async def record_invoice(self, data: FeeInvoiceCreate, actor_id: int) -> PostingResult:
        total = sum(item.amount for item in data.items)
        lines = [_debit(SystemAccounts.ACCOUNTS_RECEIVABLE, total, "Total fee invoice")]
        lines.extend(_credit(item.gl_account_code, item.amount, item.description) for item in data.items)
        
        return await self.accounting.create_entry(JournalEntryCreate(
            entry_date=data.invoice_date,
            entry_type=JournalEntryType.FEE_INVOICE,
            description="Fee invoice for student",
            student_id=data.student_id,
            term_id=data.term_id,
            source_ref=data.invoice_ref,
            idempotency_key=f"fee-invoice:{data.invoice_ref}" if data.invoice_ref else None,
            created_by=actor_id,
            lines=lines,
        ))
    
    async def post_payroll(self, data: PayrollPostingCreate, actor_id: int) -> JournalEntry:
        """
        Post one SALARY entry for a payroll run.
        
        Runs through ``create_entry_sync`` so callers can post payroll rows
        of their own in the same ``atomic()`` block; any failure rolls back
        all of it.
        """
        gross: Dict[StaffCategory, int] = defaultdict(int)
        paye = nssf = nhif = housing = net = 0
        for line in data.lines:
            gross[line.category] += line.gross_salary
            paye += line.paye
            nssf += line.nssf
            nhif += line.nhif
            housing += line.housing_levy
            net += line.net_salary
        
        label = data.period_label
        lines: List[JournalEntryLineCreate] = []
        if gross[StaffCategory.TEACHING]:
            lines.append(_debit(SystemAccounts.SALARY_TEACHING, gross[StaffCategory.TEACHING], f"Gross salary - teaching staff - {label}"))
        if gross[StaffCategory.NON_TEACHING]:
            lines.append(_debit(SystemAccounts.SALARY_NON_TEACHING, gross[StaffCategory.NON_TEACHING], f"Gross salary - non-teaching staff - {label}"))
        
        # Employer matches the employee NSSF and housing levy portions
        employer_nssf = nssf if data.include_employer_contributions else 0
        employer_housing = housing if data.include_employer_contributions else 0
        if employer_nssf:
            lines.append(_debit(SystemAccounts.EMPLOYER_NSSF_EXPENSE, employer_nssf, "NSSF (Employer matching portion)"))
        if employer_housing:
            lines.append(_debit(SystemAccounts.EMPLOYER_HOUSING_LEVY_EXPENSE, employer_housing, "Housing Levy (Employer matching portion)"))
        
        for code, amount, description in (
            (SystemAccounts.PAYE_PAYABLE, paye, "PAYE"),
            (SystemAccounts.NSSF_PAYABLE, nssf + employer_nssf, "NSSF"),
            (SystemAccounts.NHIF_PAYABLE, nhif, "NHIF/SHIF"),
            (SystemAccounts.HOUSING_LEVY_PAYABLE, housing + employer_housing, "Housing Levy"),
            (SystemAccounts.SALARY_PAYABLE, net, "Net salaries payable"),
        ):
            if amount:
                lines.append(_credit(code, amount, f"{description} - {label}"))
        
        async with self.uow.atomic():
            entry = await self.accounting.create_entry_sync(JournalEntryCreate(
                entry_date=data.payment_date,
                entry_type=JournalEntryType.SALARY,
                description=f"Payroll for {label} ({len(data.lines)} staff)",
                department=data.department,
                source_ref=f"payroll:{label}",
                idempotency_key=f"payroll:{label}",
                enforce_budget=data.enforce_budget,
                created_by=actor_id,
                lines=lines,
            ))
        
        logger.info(f"Posted payroll {label}: {entry.entry_ref}")
        return entry
    
    async def record_depreciation(self, data: DepreciationCreate, actor_id: int) -> PostingResult:
        return await self.accounting.create_entry(JournalEntryCreate(
            entry_date=data.depreciation_date,
            entry_type=JournalEntryType.DEPRECIATION,
            description=data.description or f"Depreciation - {data.asset_ref}",
            source_ref=data.asset_ref,
            idempotency_key=f"depreciation:{data.asset_ref}:{data.depreciation_date.isoformat()}",
            created_by=actor_id,
            lines=[
                _debit(SystemAccounts.DEPRECIATION_EXPENSE, data.amount, f"Depreciation - {data.asset_ref}"),
                _credit(SystemAccounts.ACCUMULATED_DEPRECIATION, data.amount, f"Accumulated depreciation - {data.asset_ref}"),
            ],
        ))
