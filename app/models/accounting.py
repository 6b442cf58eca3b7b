"""
School Ledger - Chart of Accounts & General Ledger Models

Double-entry accounting backbone:
- Chart of Accounts (Assets, Liabilities, Equity, Revenue, Expenses)
- Journal Entries and their lines
- Financial periods with a lock audit trail
- Void audit records

All money columns hold integer cents.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Boolean, Date, DateTime, ForeignKey, Integer, String, Text,
    Uuid, Enum as SQLEnum, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import AppendOnlyModel, BaseModel


# =============================================================================
# ENUMS
# =============================================================================

class AccountType(str, Enum):
    """Main account types."""
    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"
    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"


class NormalBalance(str, Enum):
    """Normal balance side for accounts."""
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class JournalEntryType(str, Enum):
    """Closed set of financial events the ledger accepts."""
    FEE_PAYMENT = "FEE_PAYMENT"
    FEE_INVOICE = "FEE_INVOICE"
    EXPENSE = "EXPENSE"
    INCOME = "INCOME"
    SALARY = "SALARY"
    REFUND = "REFUND"
    OPENING_BALANCE = "OPENING_BALANCE"
    ADJUSTMENT = "ADJUSTMENT"
    ASSET_ACQUISITION = "ASSET_ACQUISITION"
    ASSET_DISPOSAL = "ASSET_DISPOSAL"
    DEPRECIATION = "DEPRECIATION"
    LOAN_DISBURSEMENT = "LOAN_DISBURSEMENT"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"
    DONATION = "DONATION"
    GRANT = "GRANT"
    VOID_REVERSAL = "VOID_REVERSAL"


class EntryApprovalStatus(str, Enum):
    """Approval state carried on the journal entry itself."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class FinancialPeriodStatus(str, Enum):
    """Financial period lifecycle."""
    OPEN = "OPEN"
    LOCKED = "LOCKED"
    CLOSED = "CLOSED"


class PeriodLockAction(str, Enum):
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    CLOSE = "CLOSE"


# Short prefixes used in generated entry references
ENTRY_REF_PREFIXES = {
    JournalEntryType.FEE_PAYMENT: "PAY",
    JournalEntryType.FEE_INVOICE: "INV",
    JournalEntryType.VOID_REVERSAL: "VOI",
    JournalEntryType.DEPRECIATION: "DEP",
    JournalEntryType.SALARY: "SAL",
}


# =============================================================================
# CHART OF ACCOUNTS
# =============================================================================

class Account(BaseModel):
    """
    Chart of Accounts entry.
    
    ``normal_balance`` is fixed at creation and decides the sign of
    ``current_balance``: debits - credits for DEBIT accounts,
    credits - debits for CREDIT accounts.
    """
    
    __tablename__ = "accounts"
    
    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    account_type: Mapped[AccountType] = mapped_column(SQLEnum(AccountType), nullable=False)
    normal_balance: Mapped[NormalBalance] = mapped_column(SQLEnum(NormalBalance), nullable=False)
    
    is_system: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
        comment="System accounts cannot be deleted or renumbered",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    # Derived, maintained by the posting engine
    current_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    
    __table_args__ = (
        Index("ix_accounts_type", "account_type"),
    )
    
    def __repr__(self) -> str:
        return f"<Account(code={self.code}, name={self.name})>"


# =============================================================================
# FINANCIAL PERIODS
# =============================================================================

class FinancialPeriod(BaseModel):
    """
    Accounting period with an OPEN -> LOCKED -> CLOSED lifecycle.
    
    Periods never overlap; every dated write resolves its date to exactly
    one period and is refused unless that period is OPEN.
    """
    
    __tablename__ = "financial_periods"
    
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    
    status: Mapped[FinancialPeriodStatus] = mapped_column(
        SQLEnum(FinancialPeriodStatus),
        default=FinancialPeriodStatus.OPEN,
        nullable=False,
    )
    
    locked_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="date_range"),
        Index("ix_financial_periods_dates", "start_date", "end_date"),
    )
    
    def __repr__(self) -> str:
        return f"<FinancialPeriod(name={self.name}, status={self.status})>"


class PeriodLockAudit(AppendOnlyModel):
    """Append-only history of period status transitions."""
    
    __tablename__ = "period_lock_audit"
    
    period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("financial_periods.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[PeriodLockAction] = mapped_column(SQLEnum(PeriodLockAction), nullable=False)
    previous_status: Mapped[FinancialPeriodStatus] = mapped_column(
        SQLEnum(FinancialPeriodStatus), nullable=False
    )
    new_status: Mapped[FinancialPeriodStatus] = mapped_column(
        SQLEnum(FinancialPeriodStatus), nullable=False
    )
    performed_by: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    __table_args__ = (
        UniqueConstraint("period_id", "sequence", name="uq_period_lock_audit_sequence"),
    )


# =============================================================================
# JOURNAL ENTRIES
# =============================================================================

class JournalEntry(BaseModel):
    """
    Journal Entry - The core of double-entry accounting.
    
    Every financial event creates an entry whose lines balance. Once posted
    the entry is immutable except for its void columns; voiding never deletes,
    it flags the entry and posts a mirrored VOID_REVERSAL entry.
    """
    
    __tablename__ = "journal_entries"
    
    entry_ref: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    entry_type: Mapped[JournalEntryType] = mapped_column(SQLEnum(JournalEntryType), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    
    # Optional links to school records
    student_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    staff_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    term_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    
    # Totals (for quick reference - must always balance)
    total_debit: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_credit: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    
    # Posting
    is_posted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    # Voiding
    is_voided: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    voided_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    voided_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reversal_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("journal_entries.id", ondelete="RESTRICT"),
        nullable=True,
        comment="Original entry when this is a VOID_REVERSAL",
    )
    
    # Approval
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    approval_status: Mapped[EntryApprovalStatus] = mapped_column(
        SQLEnum(EntryApprovalStatus),
        default=EntryApprovalStatus.APPROVED,
        nullable=False,
    )
    
    # Origin
    created_by: Mapped[int] = mapped_column(Integer, nullable=False)
    source_ref: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True,
        comment="Reference to the originating or legacy record",
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    
    lines: Mapped[List["JournalEntryLine"]] = relationship(
        back_populates="entry",
        cascade="save-update, merge",
        order_by="JournalEntryLine.line_number",
        lazy="selectin",
    )
    
    __table_args__ = (
        CheckConstraint("total_debit = total_credit", name="balanced"),
        CheckConstraint("total_debit >= 0", name="non_negative_total"),
        Index("ix_journal_entries_posted", "is_posted", "is_voided"),
        Index("ix_journal_entries_department", "department"),
    )
    
    @property
    def amount(self) -> int:
        return self.total_debit
    
    def __repr__(self) -> str:
        return f"<JournalEntry(ref={self.entry_ref}, posted={self.is_posted}, voided={self.is_voided})>"


class JournalEntryLine(BaseModel):
    """
    Journal Entry Line - individual debit or credit.
    
    Exactly one of debit_amount / credit_amount is non-zero.
    """
    
    __tablename__ = "journal_entry_lines"
    
    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("journal_entries.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    account_code: Mapped[str] = mapped_column(
        String(20),
        ForeignKey("accounts.code", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    
    debit_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    credit_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    
    entry: Mapped["JournalEntry"] = relationship(back_populates="lines")
    
    __table_args__ = (
        CheckConstraint(
            "(debit_amount > 0 AND credit_amount = 0) OR (debit_amount = 0 AND credit_amount > 0)",
            name="one_side",
        ),
        UniqueConstraint("entry_id", "line_number", name="uq_journal_entry_lines_number"),
    )


# =============================================================================
# VOID AUDIT
# =============================================================================

class VoidAudit(BaseModel):
    """
    Record of a void. Immutable except for the recovery columns, which are
    filled once if voided funds are later recovered.
    """
    
    __tablename__ = "void_audit"
    
    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("journal_entries.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    reversal_entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("journal_entries.id", ondelete="RESTRICT"),
        nullable=False,
    )
    entry_type: Mapped[JournalEntryType] = mapped_column(SQLEnum(JournalEntryType), nullable=False)
    original_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    student_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    void_reason: Mapped[str] = mapped_column(Text, nullable=False)
    voided_by: Mapped[int] = mapped_column(Integer, nullable=False)
    voided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approval_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("approval_requests.id", ondelete="RESTRICT"),
        nullable=True,
    )
    
    # Recovery
    recovered_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    recovered_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    recovered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    recovered_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    RECOVERY_COLUMNS = frozenset({
        "recovered_amount", "recovered_method", "recovered_at", "recovered_by", "notes", "updated_at",
    })
