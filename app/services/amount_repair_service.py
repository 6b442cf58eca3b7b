"""
School Ledger - Amount Repair Service

Data repair for journal entries whose amounts were written 100x too large
(whole units stored as if they were cents, then multiplied again).

This is an operator tool: it rewrites posted lines with bulk UPDATE
statements, which bypass the ledger's immutability guards, and it is never
called from the posting path. Every repair is audited.
"""

import logging
from typing import Dict, List, Optional, Sequence, Set

from sqlalchemy import select, func, and_, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import unit_of_work
from app.models.accounting import Account, JournalEntry, JournalEntryLine, JournalEntryType, NormalBalance
from app.schemas.repair import EntryRepair, RepairReport, ScaledLineCandidate
from app.services.audit_service import AuditService
from app.services.period_lock_service import PeriodLockService

logger = logging.getLogger(__name__)

SCALE = 100


class AmountRepairService:
    """Finds and fixes journal entries stored at 100x their real amount."""
    
    def __init__(self, db: AsyncSession, audit: AuditService = None):
        self.db = db
        self.uow = unit_of_work(db)
        self.audit = audit or AuditService(db)
    
    async def find_candidates(self, min_amount: int) -> List[ScaledLineCandidate]:
        """
        Lines at or above ``min_amount`` whose amount is a whole multiple of
        100. Only a hint: an operator decides which entries are really scaled.
        """
        amount = JournalEntryLine.debit_amount + JournalEntryLine.credit_amount
        result = await self.db.execute(
            select(JournalEntryLine, JournalEntry.entry_ref)
            .join(JournalEntry, JournalEntry.id == JournalEntryLine.entry_id)
            .where(and_(amount >= min_amount, amount % SCALE == 0))
            .order_by(JournalEntry.entry_date, JournalEntry.entry_ref, JournalEntryLine.line_number)
        )
        return [
            ScaledLineCandidate(
                entry_id=line.entry_id,
                entry_ref=entry_ref,
                line_number=line.line_number,
                account_code=line.account_code,
                debit_amount=line.debit_amount,
                credit_amount=line.credit_amount,
            )
            for line, entry_ref in result.all()
        ]
    
    async def repair(
        self,
        entry_refs: Sequence[str],
        actor_id: int = None,
        dry_run: bool = True,
        allow_locked_periods: bool = False,
    ) -> RepairReport:
        """
        Divide every line of the listed entries by 100 and recompute the
        running balance of each touched account.
        
        A ref listed more than once is handled once. Entries are skipped whole
        when any line is not divisible by 100, when they are voided or a void
        reversal (the pair already nets to zero), or when their date falls in a
        LOCKED or CLOSED period unless ``allow_locked_periods`` is set. With
        ``dry_run`` nothing is written.
        """
        repairs = []
        touched: Set[str] = set()
        periods = PeriodLockService(self.db, audit=self.audit)
        
        async with self.uow.atomic():
            for entry_ref in dict.fromkeys(entry_refs):
                entry = await self.db.scalar(
                    select(JournalEntry)
                    .where(JournalEntry.entry_ref == entry_ref)
                    .execution_options(populate_existing=True)
                )
                skipped_reason = await self._skip_reason(entry, periods, allow_locked_periods)
                if skipped_reason:
                    repairs.append(EntryRepair(
                        entry_ref=entry_ref,
                        repaired=False,
                        old_total=entry.total_debit if entry is not None else None,
                        skipped_reason=skipped_reason,
                    ))
                    continue
                
                old_total = entry.total_debit
                repairs.append(EntryRepair(
                    entry_ref=entry_ref,
                    repaired=True,
                    old_total=old_total,
                    new_total=old_total // SCALE,
                ))
                touched.update(line.account_code for line in entry.lines)
                if dry_run:
                    continue
                
                await self.db.execute(
                    update(JournalEntryLine)
                    .where(JournalEntryLine.entry_id == entry.id)
                    .values(
                        debit_amount=JournalEntryLine.debit_amount // SCALE,
                        credit_amount=JournalEntryLine.credit_amount // SCALE,
                    )
                    .execution_options(synchronize_session=False)
                )
                await self.db.execute(
                    update(JournalEntry)
                    .where(JournalEntry.id == entry.id)
                    .values(total_debit=old_total // SCALE, total_credit=old_total // SCALE)
                    .execution_options(synchronize_session=False)
                )
                await self.audit.log_audit(
                    actor_id, "REPAIR_SCALE", "journal_entries", entry.id,
                    old_values={"total": old_total},
                    new_values={"total": old_total // SCALE, "divisor": SCALE},
                )
                logger.info(f"Repaired scaled entry {entry_ref}: {old_total} -> {old_total // SCALE}")
            
            if not dry_run and touched:
                await self._recalculate_balances(touched)
        
        self.db.expire_all()
        return RepairReport(dry_run=dry_run, entries=repairs, accounts_recalculated=sorted(touched))
    
    async def _skip_reason(
        self, entry: JournalEntry, periods: PeriodLockService, allow_locked_periods: bool,
    ) -> Optional[str]:
        if entry is None:
            return "not found"
        if entry.reversal_of_id is not None or entry.entry_type == JournalEntryType.VOID_REVERSAL:
            return "void reversal; the original and its reversal already cancel out"
        if entry.is_voided:
            return "voided entry; repairing it would unbalance its reversal"
        
        indivisible = [
            line.line_number for line in entry.lines
            if line.debit_amount % SCALE or line.credit_amount % SCALE
        ]
        if indivisible:
            return f"lines {indivisible} are not multiples of {SCALE}"
        
        if not allow_locked_periods:
            check = await periods.is_transaction_allowed(entry.entry_date)
            if not check.allowed:
                return check.message
        return None
    
    async def _recalculate_balances(self, account_codes: Set[str]) -> Dict[str, int]:
        """Rebuild ``current_balance`` from posted lines for the given accounts."""
        result = await self.db.execute(
            select(
                JournalEntryLine.account_code,
                func.coalesce(func.sum(JournalEntryLine.debit_amount), 0),
                func.coalesce(func.sum(JournalEntryLine.credit_amount), 0),
            )
            .join(JournalEntry, JournalEntry.id == JournalEntryLine.entry_id)
            .where(and_(JournalEntryLine.account_code.in_(account_codes), JournalEntry.is_posted.is_(True)))
            .group_by(JournalEntryLine.account_code)
        )
        totals = {code: (int(debits), int(credits)) for code, debits, credits in result.all()}
        
        accounts = await self.db.execute(select(Account.code, Account.normal_balance).where(Account.code.in_(account_codes)))
        balances = {}
        for code, normal_balance in accounts.all():
            debits, credits = totals.get(code, (0, 0))
            balance = debits - credits if normal_balance == NormalBalance.DEBIT else credits - debits
            await self.db.execute(
                update(Account)
                .where(Account.code == code)
                .values(current_balance=balance)
                .execution_options(synchronize_session=False)
            )
            balances[code] = balance
        return balances
