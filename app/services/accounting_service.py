"""
School Ledger - Accounting Service

Service layer for the Chart of Accounts and the General Ledger.
This is the core posting engine that handles:
- Chart of Accounts management
- Journal entry validation and posting
- Approval-gated entries and voids
- Void reversal with audit
- Balances and trial balance
"""

import logging
import uuid
from collections import defaultdict
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, func, and_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.database import unit_of_work
from app.models.accounting import (
    Account,
    AccountType,
    EntryApprovalStatus,
    ENTRY_REF_PREFIXES,
    JournalEntry,
    JournalEntryLine,
    JournalEntryType,
    NormalBalance,
    VoidAudit,
)
from app.models.approval import ApprovalRequest
from app.models.budget import BudgetAllocation
from app.schemas.accounting import (
    AccountBalanceResponse,
    AccountCreate,
    AccountUpdate,
    JournalEntryCreate,
    PostingOutcome,
    PostingResult,
    TrialBalanceLine,
    TrialBalanceReport,
    VoidRecoveryCreate,
    VoidResult,
)
from app.services.approval_workflow import ApprovalWorkflowService
from app.services.audit_service import AuditService
from app.services.budget_service import BudgetEnforcementService
from app.services.period_lock_service import PeriodLockService
from app.utils.error_handling import (
    AppException,
    BudgetExceededException,
    BusinessRuleException,
    ConflictException,
    DuplicateEntryException,
    ErrorCode,
    InvalidLineException,
    InvalidStateTransitionException,
    NotFoundException,
    UnbalancedEntryException,
    UnknownAccountException,
    ValidationException,
)

logger = logging.getLogger(__name__)


ENTRY_RESOURCE = "journal_entry"
VOID_RESOURCE = "journal_void"


# Kenyan school chart of accounts, seeded as system accounts
DEFAULT_CHART_OF_ACCOUNTS = [
    # ASSETS
    {"code": "1010", "name": "Cash on Hand", "type": AccountType.ASSET, "normal": NormalBalance.DEBIT},
    {"code": "1020", "name": "Bank Account - KCB", "type": AccountType.ASSET, "normal": NormalBalance.DEBIT},
    {"code": "1030", "name": "Bank Account - Equity", "type": AccountType.ASSET, "normal": NormalBalance.DEBIT},
    {"code": "1100", "name": "Accounts Receivable - Students", "type": AccountType.ASSET, "normal": NormalBalance.DEBIT},
    {"code": "1200", "name": "Inventory - Supplies", "type": AccountType.ASSET, "normal": NormalBalance.DEBIT},
    {"code": "1300", "name": "Fixed Assets - Buildings", "type": AccountType.ASSET, "normal": NormalBalance.DEBIT},
    {"code": "1310", "name": "Fixed Assets - Vehicles", "type": AccountType.ASSET, "normal": NormalBalance.DEBIT},
    {"code": "1320", "name": "Fixed Assets - Furniture", "type": AccountType.ASSET, "normal": NormalBalance.DEBIT},
    {"code": "1390", "name": "Accumulated Depreciation", "type": AccountType.ASSET, "normal": NormalBalance.CREDIT},
    
    # LIABILITIES
    {"code": "2010", "name": "Accounts Payable", "type": AccountType.LIABILITY, "normal": NormalBalance.CREDIT},
    {"code": "2020", "name": "Student Credit Balances", "type": AccountType.LIABILITY, "normal": NormalBalance.CREDIT},
    {"code": "2100", "name": "Salary Payable", "type": AccountType.LIABILITY, "normal": NormalBalance.CREDIT},
    {"code": "2110", "name": "PAYE Payable", "type": AccountType.LIABILITY, "normal": NormalBalance.CREDIT},
    {"code": "2120", "name": "NSSF Payable", "type": AccountType.LIABILITY, "normal": NormalBalance.CREDIT},
    {"code": "2130", "name": "NHIF/SHIF Payable", "type": AccountType.LIABILITY, "normal": NormalBalance.CREDIT},
    {"code": "2140", "name": "Housing Levy Payable", "type": AccountType.LIABILITY, "normal": NormalBalance.CREDIT},
    {"code": "2200", "name": "Loans Payable", "type": AccountType.LIABILITY, "normal": NormalBalance.CREDIT},
    
    # EQUITY
    {"code": "3010", "name": "Capital", "type": AccountType.EQUITY, "normal": NormalBalance.CREDIT},
    {"code": "3020", "name": "Retained Earnings", "type": AccountType.EQUITY, "normal": NormalBalance.CREDIT},
    {"code": "3030", "name": "Current Year Surplus/Deficit", "type": AccountType.EQUITY, "normal": NormalBalance.CREDIT},
    
    # REVENUE
    {"code": "4010", "name": "Tuition Fees", "type": AccountType.REVENUE, "normal": NormalBalance.CREDIT},
    {"code": "4020", "name": "Boarding Fees", "type": AccountType.REVENUE, "normal": NormalBalance.CREDIT},
    {"code": "4030", "name": "Transport Fees", "type": AccountType.REVENUE, "normal": NormalBalance.CREDIT},
    {"code": "4040", "name": "Activity Fees", "type": AccountType.REVENUE, "normal": NormalBalance.CREDIT},
    {"code": "4050", "name": "Exam Fees", "type": AccountType.REVENUE, "normal": NormalBalance.CREDIT},
    {"code": "4100", "name": "Government Grants - Capitation", "type": AccountType.REVENUE, "normal": NormalBalance.CREDIT},
    {"code": "4200", "name": "Donations", "type": AccountType.REVENUE, "normal": NormalBalance.CREDIT},
    {"code": "4300", "name": "Other Income", "type": AccountType.REVENUE, "normal": NormalBalance.CREDIT},
    
    # EXPENSES
    {"code": "5010", "name": "Salaries - Teaching Staff", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5020", "name": "Salaries - Non-Teaching Staff", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5030", "name": "Statutory Deductions - NSSF", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5040", "name": "Statutory Deductions - NHIF/SHIF", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5050", "name": "Statutory Deductions - Housing Levy", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5100", "name": "Food & Catering - Boarding", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5200", "name": "Transport - Fuel & Maintenance", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5210", "name": "Transport - Driver Salaries", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5300", "name": "Utilities - Electricity", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5310", "name": "Utilities - Water", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5400", "name": "Supplies - Stationery", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5410", "name": "Supplies - Cleaning", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5500", "name": "Repairs & Maintenance", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5600", "name": "Depreciation Expense", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5700", "name": "Bank Charges", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5800", "name": "Professional Fees", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
    {"code": "5900", "name": "Miscellaneous Expenses", "type": AccountType.EXPENSE, "normal": NormalBalance.DEBIT},
]


def _signed(normal_balance: NormalBalance, debit: int, credit: int) -> int:
    if normal_balance == NormalBalance.DEBIT:
        return debit - credit
    return credit - debit


class AccountingService:
    """Service for accounting operations."""
    
    # Columns update_account may touch
    ACCOUNT_UPDATABLE_COLUMNS = ("code", "name", "description", "is_active")
    
    def __init__(
        self,
        db: AsyncSession,
        audit: Optional[AuditService] = None,
        clock: Callable[[], date] = date.today,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.uow = unit_of_work(db)
        self.clock = clock
        self.settings = config or settings
        self.audit = audit or AuditService(db)
        self.periods = PeriodLockService(db, audit=self.audit)
        self.budgets = BudgetEnforcementService(
            db,
            audit=self.audit,
            periods=self.periods,
            notice_threshold=self.settings.budget_notice_threshold,
            warning_threshold=self.settings.budget_warning_threshold,
        )
        self.approvals = ApprovalWorkflowService(db, audit=self.audit)
        self.approvals.register_handlers(
            ENTRY_RESOURCE,
            on_approved=self._on_entry_approved,
            on_declined=self._on_entry_declined,
        )
        self.approvals.register_handlers(VOID_RESOURCE, on_approved=self._on_void_approved)
    
    # =========================================================================
    # CHART OF ACCOUNTS
    # =========================================================================
    
    async def list_accounts(
        self,
        account_type: Optional[AccountType] = None,
        include_inactive: bool = True,
    ) -> List[Account]:
        query = select(Account)
        if account_type:
            query = query.where(Account.account_type == account_type)
        if not include_inactive:
            query = query.where(Account.is_active.is_(True))
        result = await self.db.execute(
            query.order_by(Account.code).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
    
    async def get_account_by_code(self, code: str) -> Optional[Account]:
        # Balances move through bulk UPDATEs, so refresh whatever is in the session
        result = await self.db.execute(
            select(Account).where(Account.code == code).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
    
    async def require_account(self, code: str) -> Account:
        account = await self.get_account_by_code(code)
        if not account:
            raise NotFoundException(
                "Account", message=f"Account {code} not found", code=ErrorCode.ACCOUNT_NOT_FOUND,
            )
        return account
    
    async def create_account(self, data: AccountCreate, actor_id: int) -> Account:
        async with self.uow.atomic():
            existing = await self.get_account_by_code(data.code)
            if existing:
                raise DuplicateEntryException("Account", "code", data.code, existing.id)
            
            account = Account(
                code=data.code,
                name=data.name,
                description=data.description,
                account_type=data.account_type,
                normal_balance=data.normal_balance,
                is_system=data.is_system,
                is_active=data.is_active,
                current_balance=0,
            )
            self.db.add(account)
            await self.db.flush()
            
            await self.audit.log_audit(
                actor_id, "CREATE", "accounts", account.id, new_values=data.model_dump(),
            )
        
        logger.info(f"Created account {account.code} - {account.name}")
        return account
    
    async def update_account(self, code: str, data: AccountUpdate, actor_id: int) -> Account:
        """
        Update the mutable columns of an account.
        
        Renumbering is refused for system accounts and for accounts that
        already carry journal lines or budget allocations.
        """
        values = {
            column: value
            for column, value in data.model_dump(exclude_unset=True).items()
            if column in self.ACCOUNT_UPDATABLE_COLUMNS
        }
        
        async with self.uow.atomic():
            account = await self.require_account(code)
            if not values:
                return account
            
            new_code = values.get("code")
            if new_code is not None and new_code != account.code:
                if account.is_system:
                    raise BusinessRuleException(
                        f"System account {account.code} cannot be renumbered",
                        rule="SYSTEM_ACCOUNT",
                        code=ErrorCode.CANNOT_MODIFY,
                    )
                if await self._is_referenced(account.code):
                    raise BusinessRuleException(
                        f"Account {account.code} has postings or budgets and cannot be renumbered",
                        rule="ACCOUNT_IN_USE",
                        code=ErrorCode.CANNOT_MODIFY,
                    )
                clash = await self.get_account_by_code(new_code)
                if clash:
                    raise DuplicateEntryException("Account", "code", new_code, clash.id)
            else:
                values.pop("code", None)
            
            old_values = {column: getattr(account, column) for column in values}
            await self.db.execute(
                update(Account)
                .where(Account.id == account.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.refresh(account)
            
            await self.audit.log_audit(
                actor_id, "UPDATE", "accounts", account.id,
                old_values=old_values, new_values=values,
            )
        
        return account
    
    async def delete_account(self, code: str, actor_id: int) -> None:
        async with self.uow.atomic():
            account = await self.require_account(code)
            if account.is_system:
                raise BusinessRuleException(
                    f"System account {account.code} cannot be deleted",
                    rule="SYSTEM_ACCOUNT",
                    code=ErrorCode.CANNOT_DELETE,
                )
            if await self._is_referenced(account.code):
                raise BusinessRuleException(
                    f"Account {account.code} has postings or budgets; deactivate it instead",
                    rule="ACCOUNT_IN_USE",
                    code=ErrorCode.CANNOT_DELETE,
                )
            
            await self.audit.log_audit(
                actor_id, "DELETE", "accounts", account.id,
                old_values={"code": account.code, "name": account.name},
            )
            await self.db.delete(account)
            await self.db.flush()
        
        logger.info(f"Deleted account {code}")
    
    async def seed_chart_of_accounts(self, actor_id: int) -> List[Account]:
        """Create any missing default school accounts. Safe to run repeatedly."""
        async with self.uow.atomic():
            result = await self.db.execute(select(Account.code))
            existing = set(result.scalars().all())
            
            created = []
            for spec in DEFAULT_CHART_OF_ACCOUNTS:
                if spec["code"] in existing:
                    continue
                account = Account(
                    code=spec["code"],
                    name=spec["name"],
                    account_type=spec["type"],
                    normal_balance=spec["normal"],
                    is_system=True,
                    is_active=True,
                    current_balance=0,
                )
                self.db.add(account)
                created.append(account)
            await self.db.flush()
            
            if created:
                await self.audit.log_audit(
                    actor_id, "SEED", "accounts", "chart_of_accounts",
                    new_values={"codes": [account.code for account in created]},
                )
        
        logger.info(f"Seeded {len(created)} chart of accounts entries")
        return created
    
    async def _is_referenced(self, code: str) -> bool:
        lines = await self.db.scalar(
            select(func.count(JournalEntryLine.id)).where(JournalEntryLine.account_code == code)
        )
        budgets = await self.db.scalar(
            select(func.count(BudgetAllocation.id)).where(BudgetAllocation.account_code == code)
        )
        return bool(lines) or bool(budgets)
    
    # =========================================================================
    # POSTING
    # =========================================================================
    
    async def create_entry(self, data: JournalEntryCreate) -> PostingResult:
        """
        Validate and post (or queue for approval) a journal entry in its own
        unit of work.
        
        Business-rule failures come back as a REJECTED or DUPLICATE result.
        Infrastructure errors propagate and nothing is committed.
        """
        try:
            async with self.uow.atomic():
                entry, request, notes = await self._create_entry(data)
        except DuplicateEntryException as e:
            return self._duplicate_result(e.existing_id, data.idempotency_key)
        except IntegrityError:
            if not data.idempotency_key or self.uow.in_transaction:
                raise
            # Lost a race on the idempotency key
            existing = await self.get_entry_by_idempotency_key(data.idempotency_key)
            if existing is None:
                raise
            return self._duplicate_result(existing.id, data.idempotency_key)
        except AppException as e:
            if e.status_code >= 500:
                raise
            logger.warning(f"Journal entry rejected ({e.code.value}): {e.message}")
            return PostingResult(
                success=False,
                outcome=PostingOutcome.REJECTED,
                error_code=e.code.value,
                message=e.message,
                details=e.details,
            )
        
        details = {"budget_notes": notes} if notes else {}
        if request is not None:
            return PostingResult(
                success=True,
                outcome=PostingOutcome.PENDING_APPROVAL,
                entry_id=entry.id,
                entry_ref=entry.entry_ref,
                approval_request_id=request.id,
                message=f"Journal entry created successfully. Awaiting approval (Ref: {entry.entry_ref})",
                details=details,
            )
        return PostingResult(
            success=True,
            outcome=PostingOutcome.POSTED,
            entry_id=entry.id,
            entry_ref=entry.entry_ref,
            message=f"Journal entry posted successfully (Ref: {entry.entry_ref})",
            details=details,
        )
    
    async def create_entry_sync(self, data: JournalEntryCreate) -> JournalEntry:
        """
        Post a journal entry inside the caller's open unit of work.
        
        Raises the domain exception on any violation; the enclosing
        ``atomic()`` block then rolls back every write it made.
        """
        async with self.uow.atomic():
            entry, _, _ = await self._create_entry(data)
        return entry
    
    async def _create_entry(
        self,
        data: JournalEntryCreate,
    ) -> Tuple[JournalEntry, Optional[ApprovalRequest], List[str]]:
        if data.idempotency_key:
            existing = await self.get_entry_by_idempotency_key(data.idempotency_key)
            if existing:
                raise DuplicateEntryException("JournalEntry", "idempotency_key", data.idempotency_key, existing.id)
        
        total_debit, total_credit = await self._validate_lines(data)
        
        # Period gate
        check = await self.periods.assert_transaction_allowed(data.entry_date)
        
        # Budget gate
        notes = []
        if data.enforce_budget:
            notes = await self._check_budgets(data, check.fiscal_year)
        
        # Approval gate
        workflow = await self.approvals.get_workflow(data.entry_type.value)
        level = self.approvals.determine_level(workflow, total_debit) if workflow else 0
        needs_approval = data.requires_approval or level > 0
        if needs_approval and workflow is None:
            raise BusinessRuleException(
                f"Entry requires approval but no approval workflow is configured for {data.entry_type.value}",
                rule="WORKFLOW_CONFIGURED",
                details={"transaction_type": data.entry_type.value},
            )
        
        entry = self._build_entry(
            entry_type=data.entry_type,
            entry_date=data.entry_date,
            description=data.description,
            lines=[
                (line.account_code, line.debit_amount, line.credit_amount, line.description)
                for line in data.lines
            ],
            created_by=data.created_by,
            posted=not needs_approval,
            student_id=data.student_id,
            staff_id=data.staff_id,
            term_id=data.term_id,
            department=data.department,
            source_ref=data.source_ref,
            idempotency_key=data.idempotency_key,
        )
        self.db.add(entry)
        await self.db.flush()
        
        request = None
        if needs_approval:
            request = await self.approvals.submit(
                data.entry_type.value,
                ENTRY_RESOURCE,
                entry.id,
                total_debit,
                data.created_by,
                description=data.description,
                min_level=1 if data.requires_approval else 0,
            )
        else:
            await self._apply_balances(entry)
        
        await self.audit.log_audit(
            data.created_by, "CREATE", "journal_entries", entry.id,
            new_values={
                "entry_ref": entry.entry_ref,
                "entry_type": entry.entry_type.value,
                "entry_date": entry.entry_date,
                "amount": total_debit,
                "is_posted": entry.is_posted,
                "approval_status": entry.approval_status.value,
            },
        )
        
        state = "pending approval" if needs_approval else "posted"
        logger.info(f"Journal entry {entry.entry_ref} {state}: {data.entry_type.value} {total_debit}")
        return entry, request, notes
    
    async def _validate_lines(self, data: JournalEntryCreate) -> Tuple[int, int]:
        """Line shape, account existence and the debit = credit invariant."""
        if len(data.lines) < 2:
            raise InvalidLineException("A journal entry needs at least two lines")
        
        for number, line in enumerate(data.lines, 1):
            if (line.debit_amount > 0) == (line.credit_amount > 0):
                raise InvalidLineException(
                    f"Line {number} must have exactly one of debit or credit greater than zero",
                    line_number=number,
                )
        
        codes = {line.account_code for line in data.lines}
        result = await self.db.execute(select(Account).where(Account.code.in_(codes)))
        accounts = {account.code: account for account in result.scalars().all()}
        for line in data.lines:
            account = accounts.get(line.account_code)
            if account is None:
                raise UnknownAccountException(line.account_code)
            if not account.is_active:
                raise UnknownAccountException(line.account_code, inactive=True)
        
        total_debit = sum(line.debit_amount for line in data.lines)
        total_credit = sum(line.credit_amount for line in data.lines)
        if total_debit != total_credit:
            raise UnbalancedEntryException(total_debit, total_credit)
        return total_debit, total_credit
    
    async def _check_budgets(self, data: JournalEntryCreate, fiscal_year: int) -> List[str]:
        """Check every debited account; returns notice/warning messages."""
        debits: Dict[str, int] = defaultdict(int)
        for line in data.lines:
            if line.debit_amount > 0:
                debits[line.account_code] += line.debit_amount
        
        notes = []
        for account_code, amount in debits.items():
            result = await self.budgets.validate_transaction(
                account_code, amount, fiscal_year, data.department,
            )
            if not result.is_allowed:
                if result.budget_status is None:
                    raise BusinessRuleException(
                        result.message,
                        rule="BUDGET_CHECK",
                        code=ErrorCode.BUDGET_CHECK_FAILED,
                        details={"account_code": account_code},
                    )
                raise BudgetExceededException(
                    account_code,
                    result.budget_status.allocated,
                    result.budget_status.spent,
                    amount,
                    message=result.message,
                )
            if result.message.startswith(("Warning:", "Notice:")):
                logger.warning(result.message)
                notes.append(result.message)
        return notes
    
    def _build_entry(
        self,
        entry_type: JournalEntryType,
        entry_date: date,
        description: str,
        lines: List[Tuple[str, int, int, Optional[str]]],
        created_by: int,
        posted: bool,
        **fields,
    ) -> JournalEntry:
        total = sum(debit for _, debit, _, _ in lines)
        now = datetime.utcnow()
        return JournalEntry(
            entry_ref=self._generate_entry_ref(entry_type, entry_date),
            entry_date=entry_date,
            entry_type=entry_type,
            description=description,
            total_debit=total,
            total_credit=sum(credit for _, _, credit, _ in lines),
            is_posted=posted,
            posted_at=now if posted else None,
            is_voided=False,
            requires_approval=not posted,
            approval_status=EntryApprovalStatus.APPROVED if posted else EntryApprovalStatus.PENDING,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            lines=[
                JournalEntryLine(
                    line_number=number,
                    account_code=account_code,
                    debit_amount=debit,
                    credit_amount=credit,
                    description=line_description,
                )
                for number, (account_code, debit, credit, line_description) in enumerate(lines, 1)
            ],
            **fields,
        )
    
    def _generate_entry_ref(self, entry_type: JournalEntryType, entry_date: date) -> str:
        prefix = ENTRY_REF_PREFIXES.get(entry_type, entry_type.value[:self.settings.entry_ref_prefix_length])
        return f"{prefix}-{entry_date:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"
    
    async def _apply_balances(self, entry: JournalEntry) -> None:
        """Move account running balances by the entry's lines, atomically per account."""
        deltas: Dict[str, Tuple[int, int]] = {}
        for line in entry.lines:
            debit, credit = deltas.get(line.account_code, (0, 0))
            deltas[line.account_code] = (debit + line.debit_amount, credit + line.credit_amount)
        
        result = await self.db.execute(
            select(Account.code, Account.normal_balance).where(Account.code.in_(deltas.keys()))
        )
        for code, normal_balance in result.all():
            debit, credit = deltas[code]
            await self.db.execute(
                update(Account)
                .where(Account.code == code)
                .values(current_balance=Account.current_balance + _signed(normal_balance, debit, credit))
            )
    
    def _duplicate_result(self, existing_id, idempotency_key: Optional[str]) -> PostingResult:
        logger.info(f"Duplicate journal entry for idempotency key {idempotency_key}")
        return PostingResult(
            success=False,
            outcome=PostingOutcome.DUPLICATE,
            entry_id=existing_id,
            error_code=ErrorCode.DUPLICATE_ENTRY.value,
            message=f"A journal entry with idempotency key '{idempotency_key}' already exists",
            details={"idempotency_key": idempotency_key},
        )
    
    # =========================================================================
    # APPROVAL HANDLERS
    # =========================================================================
    
    async def _on_entry_approved(self, request: ApprovalRequest, actor_id: int) -> None:
        """Post a pending entry once its approval completes."""
        entry = await self.get_entry(request.reference_id)
        if entry.is_posted:
            return
        await self.periods.assert_transaction_allowed(entry.entry_date)
        
        entry.is_posted = True
        entry.posted_at = datetime.utcnow()
        entry.approval_status = EntryApprovalStatus.APPROVED
        await self.db.flush()
        await self._apply_balances(entry)
        
        await self.audit.log_audit(
            actor_id, "POST", "journal_entries", entry.id,
            old_values={"is_posted": False, "approval_status": EntryApprovalStatus.PENDING.value},
            new_values={"is_posted": True, "approval_status": EntryApprovalStatus.APPROVED.value},
        )
        logger.info(f"Journal entry {entry.entry_ref} posted after approval {request.id}")
    
    async def _on_entry_declined(self, request: ApprovalRequest, actor_id: int) -> None:
        entry = await self.get_entry(request.reference_id)
        if entry.is_posted:
            return
        entry.approval_status = EntryApprovalStatus.REJECTED
        await self.db.flush()
        logger.info(f"Journal entry {entry.entry_ref} rejected ({request.status.value})")
    
    async def _on_void_approved(self, request: ApprovalRequest, actor_id: int) -> None:
        """Carry out an approved void on behalf of its requester."""
        entry = await self.get_entry(request.reference_id)
        self._check_voidable(entry)
        await self._perform_void(
            entry,
            request.description or "Approved void",
            voided_by=request.requested_by,
            approval_request_id=request.id,
        )
    
    # =========================================================================
    # VOIDING
    # =========================================================================
    
    async def void_entry(self, entry_id: uuid.UUID, reason: str, actor_id: int) -> VoidResult:
        """
        Void a posted entry by posting its mirror image.
        
        When the void approval gate applies, only an approval request is
        opened and the entry stays posted until that request is approved.
        """
        try:
            if not reason or not reason.strip():
                raise ValidationException("A reason is required to void an entry", field="reason")
            reason = reason.strip()
            
            async with self.uow.atomic():
                entry = await self.get_entry(entry_id)
                self._check_voidable(entry)
                
                request = await self._void_approval_gate(entry, reason, actor_id)
                if request is not None:
                    return VoidResult(
                        success=True,
                        requires_approval=True,
                        approval_request_id=request.id,
                        message=(
                            f"Void of {entry.entry_ref} requires approval "
                            f"(request {request.id}, level {request.approval_level})"
                        ),
                    )
                
                reversal, void_audit = await self._perform_void(entry, reason, voided_by=actor_id)
        except AppException as e:
            if e.status_code >= 500:
                raise
            logger.warning(f"Void of journal entry {entry_id} refused ({e.code.value}): {e.message}")
            return VoidResult(success=False, error_code=e.code.value, message=e.message)
        
        return VoidResult(
            success=True,
            reversal_entry_id=reversal.id,
            void_audit_id=void_audit.id,
            message=f"Journal entry {entry.entry_ref} voided (reversal {reversal.entry_ref})",
        )
    
    @staticmethod
    def _check_voidable(entry: JournalEntry) -> None:
        if entry.entry_type == JournalEntryType.VOID_REVERSAL:
            raise BusinessRuleException(
                f"{entry.entry_ref} is a void reversal and cannot itself be voided",
                rule="VOID_REVERSAL",
                code=ErrorCode.CANNOT_MODIFY,
            )
        if entry.is_voided:
            raise InvalidStateTransitionException(
                "journal entry", "VOIDED", "void",
                message=f"Journal entry {entry.entry_ref} is already voided",
            )
        if not entry.is_posted:
            raise InvalidStateTransitionException(
                "journal entry", entry.approval_status.value, "void",
                message=f"Journal entry {entry.entry_ref} is not posted",
            )
    
    async def _void_approval_gate(
        self,
        entry: JournalEntry,
        reason: str,
        actor_id: int,
    ) -> Optional[ApprovalRequest]:
        """
        Open (or reuse) a void approval request when the void workflow,
        the entry type or the entry's age calls for one. Returns None when
        the void may proceed directly.
        """
        workflow = await self.approvals.get_workflow(self.settings.void_approval_transaction_type)
        if workflow is None:
            return None
        
        min_level = 0
        if entry.entry_type.value in self.settings.void_approval_entry_types:
            min_level = 1
        age_limit = self.settings.void_approval_min_age_days
        if age_limit > 0 and (self.clock() - entry.entry_date).days > age_limit:
            min_level = 1
        
        level = max(self.approvals.determine_level(workflow, entry.amount), min_level)
        if level == 0:
            return None
        
        existing = await self.approvals.find_open_request(VOID_RESOURCE, entry.id)
        if existing:
            return existing
        
        return await self.approvals.submit(
            self.settings.void_approval_transaction_type,
            VOID_RESOURCE,
            entry.id,
            entry.amount,
            actor_id,
            description=reason,
            min_level=min_level,
        )
    
    async def _perform_void(
        self,
        entry: JournalEntry,
        reason: str,
        voided_by: int,
        approval_request_id: Optional[uuid.UUID] = None,
    ) -> Tuple[JournalEntry, VoidAudit]:
        reversal_date = self.clock()
        await self.periods.assert_transaction_allowed(reversal_date)
        
        reversal = self._build_entry(
            entry_type=JournalEntryType.VOID_REVERSAL,
            entry_date=reversal_date,
            description=f"Void of {entry.entry_ref}: {reason}"[:500],
            lines=[
                (line.account_code, line.credit_amount, line.debit_amount, f"Reversal of line {line.line_number}")
                for line in entry.lines
            ],
            created_by=voided_by,
            posted=True,
            reversal_of_id=entry.id,
            student_id=entry.student_id,
            staff_id=entry.staff_id,
            term_id=entry.term_id,
            department=entry.department,
            source_ref=entry.entry_ref,
        )
        self.db.add(reversal)
        
        now = datetime.utcnow()
        entry.is_voided = True
        entry.voided_reason = reason
        entry.voided_by = voided_by
        entry.voided_at = now
        await self.db.flush()
        await self._apply_balances(reversal)
        
        void_audit = VoidAudit(
            entry_id=entry.id,
            reversal_entry_id=reversal.id,
            entry_type=entry.entry_type,
            original_amount=entry.amount,
            student_id=entry.student_id,
            description=entry.description,
            void_reason=reason,
            voided_by=voided_by,
            voided_at=now,
            approval_request_id=approval_request_id,
        )
        self.db.add(void_audit)
        await self.db.flush()
        
        await self.audit.log_audit(
            voided_by, "VOID", "journal_entries", entry.id,
            old_values={"is_voided": False},
            new_values={
                "is_voided": True,
                "reason": reason,
                "reversal_entry_ref": reversal.entry_ref,
                "approval_request_id": approval_request_id,
            },
        )
        
        logger.info(f"Voided journal entry {entry.entry_ref} with reversal {reversal.entry_ref}")
        return reversal, void_audit
    
    async def get_void_audit(self, void_audit_id: uuid.UUID) -> VoidAudit:
        void_audit = await self.db.get(VoidAudit, void_audit_id)
        if not void_audit:
            raise NotFoundException("VoidAudit", void_audit_id)
        return void_audit
    
    async def get_void_audit_for_entry(self, entry_id: uuid.UUID) -> Optional[VoidAudit]:
        result = await self.db.execute(select(VoidAudit).where(VoidAudit.entry_id == entry_id))
        return result.scalar_one_or_none()
    
    async def record_recovery(
        self,
        void_audit_id: uuid.UUID,
        data: VoidRecoveryCreate,
        actor_id: int,
    ) -> VoidAudit:
        """Record funds recovered after a void. Allowed once per void."""
        async with self.uow.atomic():
            void_audit = await self.get_void_audit(void_audit_id)
            if void_audit.recovered_at is not None:
                raise ConflictException(
                    message="Recovery has already been recorded for this void",
                    resource_type="VoidAudit",
                    code=ErrorCode.ALREADY_PROCESSED,
                )
            
            void_audit.recovered_amount = data.recovered_amount
            void_audit.recovered_method = data.recovered_method
            void_audit.recovered_at = datetime.utcnow()
            void_audit.recovered_by = actor_id
            void_audit.notes = data.notes
            await self.db.flush()
            
            await self.audit.log_audit(
                actor_id, "RECOVER", "void_audit", void_audit.id, new_values=data.model_dump(),
            )
        return void_audit
    
    # =========================================================================
    # QUERIES
    # =========================================================================
    
    async def get_entry(self, entry_id: uuid.UUID) -> JournalEntry:
        result = await self.db.execute(
            select(JournalEntry)
            .where(JournalEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if not entry:
            raise NotFoundException("JournalEntry", entry_id, code=ErrorCode.ENTRY_NOT_FOUND)
        return entry
    
    async def get_entry_by_ref(self, entry_ref: str) -> JournalEntry:
        result = await self.db.execute(
            select(JournalEntry)
            .where(JournalEntry.entry_ref == entry_ref)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if not entry:
            raise NotFoundException(
                "JournalEntry", message=f"Journal entry {entry_ref} not found", code=ErrorCode.ENTRY_NOT_FOUND,
            )
        return entry
    
    async def get_entry_by_idempotency_key(self, idempotency_key: str) -> Optional[JournalEntry]:
        result = await self.db.execute(
            select(JournalEntry).where(JournalEntry.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()
    
    async def list_entries(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        entry_type: Optional[JournalEntryType] = None,
        is_posted: Optional[bool] = None,
        is_voided: Optional[bool] = None,
        student_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[JournalEntry]:
        conditions = []
        if start_date:
            conditions.append(JournalEntry.entry_date >= start_date)
        if end_date:
            conditions.append(JournalEntry.entry_date <= end_date)
        if entry_type:
            conditions.append(JournalEntry.entry_type == entry_type)
        if is_posted is not None:
            conditions.append(JournalEntry.is_posted.is_(is_posted))
        if is_voided is not None:
            conditions.append(JournalEntry.is_voided.is_(is_voided))
        if student_id is not None:
            conditions.append(JournalEntry.student_id == student_id)
        
        query = select(JournalEntry)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(JournalEntry.entry_date.desc(), JournalEntry.created_at.desc())
        result = await self.db.execute(query.offset(skip).limit(limit))
        return list(result.scalars().all())
    
    async def get_account_balance(self, code: str, as_of: Optional[date] = None) -> AccountBalanceResponse:
        """
        Balance from posted lines. Voided entries stay in, so each one nets
        to zero against its reversal.
        """
        account = await self.require_account(code)
        conditions = [
            JournalEntryLine.account_code == code,
            JournalEntry.is_posted.is_(True),
        ]
        if as_of:
            conditions.append(JournalEntry.entry_date <= as_of)
        
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(JournalEntryLine.debit_amount), 0),
                func.coalesce(func.sum(JournalEntryLine.credit_amount), 0),
            )
            .join(JournalEntry, JournalEntry.id == JournalEntryLine.entry_id)
            .where(and_(*conditions))
        )
        debits, credits = result.one()
        return AccountBalanceResponse(
            account_code=account.code,
            account_name=account.name,
            normal_balance=account.normal_balance,
            total_debit=int(debits),
            total_credit=int(credits),
            balance=_signed(account.normal_balance, int(debits), int(credits)),
            as_of=as_of,
        )
    
    async def get_trial_balance(self, as_of: Optional[date] = None) -> TrialBalanceReport:
        conditions = [JournalEntry.is_posted.is_(True)]
        if as_of:
            conditions.append(JournalEntry.entry_date <= as_of)
        
        result = await self.db.execute(
            select(
                Account.code,
                Account.name,
                Account.account_type,
                func.sum(JournalEntryLine.debit_amount),
                func.sum(JournalEntryLine.credit_amount),
            )
            .join(JournalEntryLine, JournalEntryLine.account_code == Account.code)
            .join(JournalEntry, JournalEntry.id == JournalEntryLine.entry_id)
            .where(and_(*conditions))
            .group_by(Account.code, Account.name, Account.account_type)
            .order_by(Account.code)
        )
        
        lines = []
        for code, name, account_type, debits, credits in result.all():
            net = int(debits) - int(credits)
            lines.append(TrialBalanceLine(
                account_code=code,
                account_name=name,
                account_type=account_type,
                debit_balance=net if net > 0 else 0,
                credit_balance=-net if net < 0 else 0,
            ))
        
        total_debit = sum(line.debit_balance for line in lines)
        total_credit = sum(line.credit_balance for line in lines)
        return TrialBalanceReport(
            as_of=as_of,
            lines=lines,
            total_debit=total_debit,
            total_credit=total_credit,
            is_balanced=total_debit == total_credit,
        )
