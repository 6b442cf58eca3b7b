"""
School Ledger - Accounting Router

API endpoints for the Chart of Accounts and the General Ledger.
"""

import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import Actor, get_current_actor
from app.models.accounting import AccountType, JournalEntryType
from app.schemas.accounting import (
    AccountBalanceResponse,
    AccountCreate,
    AccountResponse,
    AccountUpdate,
    JournalEntryCreate,
    JournalEntryRequest,
    JournalEntryResponse,
    PostingResult,
    TrialBalanceReport,
    VoidAuditResponse,
    VoidRecoveryCreate,
    VoidRequest,
    VoidResult,
)
from app.schemas.posting import (
    DepreciationCreate,
    FeeInvoiceCreate,
    FeePaymentCreate,
    PayrollPostingCreate,
)
from app.services.accounting_service import AccountingService
from app.services.ledger_posting_service import LedgerPostingService


router = APIRouter(prefix="/api/v1/accounting", tags=["Accounting"])


# ============================================================================
# CHART OF ACCOUNTS ENDPOINTS
# ============================================================================

@router.get("/accounts", response_model=List[AccountResponse])
async def list_accounts(
    account_type: Optional[AccountType] = Query(None, description="Filter by account type"),
    include_inactive: bool = Query(True, description="Include inactive accounts"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Get the chart of accounts."""
    service = AccountingService(db)
    return await service.list_accounts(account_type=account_type, include_inactive=include_inactive)


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(
    data: AccountCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    return await service.create_account(data, actor.id)


@router.post("/accounts/seed", response_model=List[AccountResponse])
async def seed_chart_of_accounts(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Create the default school chart of accounts. Existing codes are left alone."""
    service = AccountingService(db)
    return await service.seed_chart_of_accounts(actor.id)


@router.get("/accounts/{code}", response_model=AccountResponse)
async def get_account(
    code: str = Path(..., description="Account code"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    return await service.require_account(code)


@router.patch("/accounts/{code}", response_model=AccountResponse)
async def update_account(
    data: AccountUpdate,
    code: str = Path(..., description="Account code"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    return await service.update_account(code, data, actor.id)


@router.delete("/accounts/{code}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(
    code: str = Path(..., description="Account code"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    await service.delete_account(code, actor.id)


@router.get("/accounts/{code}/balance", response_model=AccountBalanceResponse)
async def get_account_balance(
    code: str = Path(..., description="Account code"),
    as_of: Optional[date] = Query(None, description="Balance as of this date"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    return await service.get_account_balance(code, as_of=as_of)


# ============================================================================
# JOURNAL ENTRY ENDPOINTS
# ============================================================================

@router.get("/journal-entries", response_model=List[JournalEntryResponse])
async def list_journal_entries(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    entry_type: Optional[JournalEntryType] = Query(None),
    is_posted: Optional[bool] = Query(None),
    is_voided: Optional[bool] = Query(None),
    student_id: Optional[int] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    return await service.list_entries(
        start_date=start_date,
        end_date=end_date,
        entry_type=entry_type,
        is_posted=is_posted,
        is_voided=is_voided,
        student_id=student_id,
        skip=skip,
        limit=limit,
    )


@router.post("/journal-entries", response_model=PostingResult)
async def create_journal_entry(
    data: JournalEntryRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """
    Post a journal entry.
    
    Business-rule rejections are returned in the result body
    (``success=false``) rather than as error statuses.
    """
    service = AccountingService(db)
    return await service.create_entry(JournalEntryCreate(**data.model_dump(), created_by=actor.id))


@router.get("/journal-entries/{entry_id}", response_model=JournalEntryResponse)
async def get_journal_entry(
    entry_id: uuid.UUID = Path(..., description="Journal entry ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    return await service.get_entry(entry_id)


@router.post("/journal-entries/{entry_id}/void", response_model=VoidResult)
async def void_journal_entry(
    data: VoidRequest,
    entry_id: uuid.UUID = Path(..., description="Journal entry ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Void a posted entry, or open a void approval request when one is required."""
    service = AccountingService(db)
    return await service.void_entry(entry_id, data.reason, actor.id)


@router.get("/void-audits/{void_audit_id}", response_model=VoidAuditResponse)
async def get_void_audit(
    void_audit_id: uuid.UUID = Path(..., description="Void audit ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    return await service.get_void_audit(void_audit_id)


@router.post("/void-audits/{void_audit_id}/recovery", response_model=VoidAuditResponse)
async def record_void_recovery(
    data: VoidRecoveryCreate,
    void_audit_id: uuid.UUID = Path(..., description="Void audit ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    return await service.record_recovery(void_audit_id, data, actor.id)


# ============================================================================
# POSTING HELPERS
# ============================================================================

@router.post("/fee-payments", response_model=PostingResult)
async def record_fee_payment(
    data: FeePaymentCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = LedgerPostingService(db)
    return await service.record_payment(data, actor.id)


@router.post("/fee-invoices", response_model=PostingResult)
async def record_fee_invoice(
    data: FeeInvoiceCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = LedgerPostingService(db)
    return await service.record_invoice(data, actor.id)


@router.post("/payroll", response_model=JournalEntryResponse, status_code=status.HTTP_201_CREATED)
async def post_payroll(
    data: PayrollPostingCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = LedgerPostingService(db)
    return await service.post_payroll(data, actor.id)


@router.post("/depreciation", response_model=PostingResult)
async def record_depreciation(
    data: DepreciationCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = LedgerPostingService(db)
    return await service.record_depreciation(data, actor.id)


# ============================================================================
# REPORTS
# ============================================================================

@router.get("/reports/trial-balance", response_model=TrialBalanceReport)
async def get_trial_balance(
    as_of: Optional[date] = Query(None, description="Report date"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = AccountingService(db)
    return await service.get_trial_balance(as_of=as_of)
