"""
School Ledger - Period Lock Service

OPEN -> LOCKED -> CLOSED lifecycle for financial periods, plus the
date gate every financial write must pass before it persists.

Transitions:
    lock    OPEN   -> LOCKED
    unlock  LOCKED -> OPEN    (reason required)
    close   LOCKED -> CLOSED  (terminal)

Each transition appends a PeriodLockAudit row in the same unit of work.
"""

import logging
import uuid
from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import unit_of_work
from app.models.accounting import (
    FinancialPeriod,
    FinancialPeriodStatus,
    PeriodLockAction,
    PeriodLockAudit,
)
from app.schemas.period import FinancialPeriodCreate, TransactionDateCheck
from app.services.audit_service import AuditService
from app.utils.error_handling import (
    ConflictException,
    ErrorCode,
    InvalidStateTransitionException,
    NotFoundException,
    PeriodClosedException,
    ValidationException,
)

logger = logging.getLogger(__name__)


# (allowed source statuses, target status) per action
TRANSITIONS = {
    PeriodLockAction.LOCK: ((FinancialPeriodStatus.OPEN,), FinancialPeriodStatus.LOCKED),
    PeriodLockAction.UNLOCK: ((FinancialPeriodStatus.LOCKED,), FinancialPeriodStatus.OPEN),
    PeriodLockAction.CLOSE: ((FinancialPeriodStatus.LOCKED,), FinancialPeriodStatus.CLOSED),
}


class PeriodLockService:
    """Service for financial period lifecycle and the posting date gate."""
    
    def __init__(self, db: AsyncSession, audit: Optional[AuditService] = None):
        self.db = db
        self.uow = unit_of_work(db)
        self.audit = audit or AuditService(db)
    
    # ===========================================
    # PERIODS
    # ===========================================
    
    async def create_period(self, data: FinancialPeriodCreate, actor_id: int) -> FinancialPeriod:
        """Create an OPEN period. Overlapping date ranges are rejected."""
        async with self.uow.atomic():
            result = await self.db.execute(
                select(FinancialPeriod)
                .where(
                    and_(
                        FinancialPeriod.start_date <= data.end_date,
                        FinancialPeriod.end_date >= data.start_date,
                    )
                )
                .limit(1)
            )
            existing = result.scalar_one_or_none()
            if existing:
                raise ConflictException(
                    message=(
                        f"Period {data.start_date} to {data.end_date} overlaps "
                        f"existing period {existing.name}"
                    ),
                    resource_type="FinancialPeriod",
                    code=ErrorCode.PERIOD_OVERLAP,
                    details={"existing_period_id": str(existing.id)},
                )
            
            period = FinancialPeriod(
                name=data.name,
                fiscal_year=data.fiscal_year,
                start_date=data.start_date,
                end_date=data.end_date,
                status=FinancialPeriodStatus.OPEN,
            )
            self.db.add(period)
            await self.db.flush()
            
            await self.audit.log_audit(
                actor_id, "CREATE", "financial_periods", period.id,
                new_values=data.model_dump(),
            )
        
        logger.info(f"Created financial period {period.name} ({period.start_date} - {period.end_date})")
        return period
    
    async def get_period(self, period_id: uuid.UUID) -> FinancialPeriod:
        period = await self.db.get(FinancialPeriod, period_id)
        if not period:
            raise NotFoundException("FinancialPeriod", period_id, code=ErrorCode.PERIOD_NOT_FOUND)
        return period
    
    async def get_period_for_date(self, on_date: date) -> Optional[FinancialPeriod]:
        """Get the period covering a date, if any."""
        result = await self.db.execute(
            select(FinancialPeriod)
            .where(
                and_(
                    FinancialPeriod.start_date <= on_date,
                    FinancialPeriod.end_date >= on_date,
                )
            )
            .order_by(FinancialPeriod.start_date)
            .limit(1)
        )
        return result.scalar_one_or_none()
    
    async def list_periods(self, fiscal_year: Optional[int] = None) -> List[FinancialPeriod]:
        query = select(FinancialPeriod)
        if fiscal_year is not None:
            query = query.where(FinancialPeriod.fiscal_year == fiscal_year)
        result = await self.db.execute(query.order_by(FinancialPeriod.start_date))
        return list(result.scalars().all())
    
    async def get_fiscal_year_bounds(self, fiscal_year: int) -> Optional[Tuple[date, date]]:
        """First and last day covered by the configured periods of a fiscal year."""
        result = await self.db.execute(
            select(func.min(FinancialPeriod.start_date), func.max(FinancialPeriod.end_date))
            .where(FinancialPeriod.fiscal_year == fiscal_year)
        )
        start, end = result.one()
        if start is None or end is None:
            return None
        return start, end
    
    # ===========================================
    # DATE GATE
    # ===========================================
    
    async def is_transaction_allowed(self, on_date: date) -> TransactionDateCheck:
        """
        Check whether a financial write dated ``on_date`` may persist.
        
        Not allowed when no period covers the date or the covering period
        is LOCKED or CLOSED.
        """
        period = await self.get_period_for_date(on_date)
        if period is None:
            return TransactionDateCheck(
                allowed=False,
                message="No financial period found for this date",
            )
        
        check = TransactionDateCheck(
            allowed=period.status == FinancialPeriodStatus.OPEN,
            period_id=period.id,
            period_name=period.name,
            period_status=period.status,
            fiscal_year=period.fiscal_year,
        )
        if not check.allowed:
            check.message = f"Cannot post transactions to {period.status.value} period: {period.name}"
        return check
    
    async def assert_transaction_allowed(self, on_date: date) -> TransactionDateCheck:
        """Raise PeriodClosedException unless ``on_date`` falls in an OPEN period."""
        check = await self.is_transaction_allowed(on_date)
        if not check.allowed:
            raise PeriodClosedException(
                check.message,
                period_name=check.period_name,
                period_status=check.period_status.value if check.period_status else None,
            )
        return check
    
    # ===========================================
    # STATE MACHINE
    # ===========================================
    
    async def lock(self, period_id: uuid.UUID, actor_id: int, reason: Optional[str] = None) -> FinancialPeriod:
        """OPEN -> LOCKED."""
        return await self._transition(period_id, actor_id, PeriodLockAction.LOCK, reason)
    
    async def unlock(self, period_id: uuid.UUID, actor_id: int, reason: str) -> FinancialPeriod:
        """LOCKED -> OPEN. A reason is mandatory."""
        if not reason or not reason.strip():
            raise ValidationException("A reason is required to unlock a period", field="reason")
        return await self._transition(period_id, actor_id, PeriodLockAction.UNLOCK, reason.strip())
    
    async def close(self, period_id: uuid.UUID, actor_id: int, reason: Optional[str] = None) -> FinancialPeriod:
        """LOCKED -> CLOSED. There is no way back."""
        return await self._transition(period_id, actor_id, PeriodLockAction.CLOSE, reason)
    
    async def _transition(
        self,
        period_id: uuid.UUID,
        actor_id: int,
        action: PeriodLockAction,
        reason: Optional[str],
    ) -> FinancialPeriod:
        allowed_from, new_status = TRANSITIONS[action]
        
        async with self.uow.atomic():
            period = await self.get_period(period_id)
            previous_status = period.status
            
            if previous_status not in allowed_from:
                raise InvalidStateTransitionException(
                    "financial period",
                    previous_status.value,
                    action.value.lower(),
                    message=(
                        f"Cannot {action.value.lower()} period {period.name}: "
                        f"it is {previous_status.value}"
                    ),
                )
            
            now = datetime.utcnow()
            period.status = new_status
            if action == PeriodLockAction.LOCK:
                period.locked_by = actor_id
                period.locked_at = now
            elif action == PeriodLockAction.UNLOCK:
                period.locked_by = None
                period.locked_at = None
            else:
                period.closed_by = actor_id
                period.closed_at = now
            
            self.db.add(PeriodLockAudit(
                period_id=period.id,
                sequence=await self._next_sequence(period.id),
                action=action,
                previous_status=previous_status,
                new_status=new_status,
                performed_by=actor_id,
                reason=reason,
            ))
            await self.db.flush()
            
            await self.audit.log_audit(
                actor_id, action.value, "financial_periods", period.id,
                old_values={"status": previous_status.value},
                new_values={"status": new_status.value, "reason": reason},
            )
        
        logger.info(
            f"Period {period.name} {previous_status.value} -> {new_status.value} by actor {actor_id}"
        )
        return period
    
    async def _next_sequence(self, period_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(PeriodLockAudit).where(PeriodLockAudit.period_id == period_id)
        )
        return result.scalar_one() + 1
    
    async def get_audit_trail(self, period_id: uuid.UUID) -> List[PeriodLockAudit]:
        """Full lock history of a period, oldest first."""
        await self.get_period(period_id)
        result = await self.db.execute(
            select(PeriodLockAudit)
            .where(PeriodLockAudit.period_id == period_id)
            .order_by(PeriodLockAudit.sequence)
        )
        return list(result.scalars().all())
