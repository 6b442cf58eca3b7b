"""
School Ledger - Financial Periods Router

API endpoints for the period lock state machine and the posting date gate.
"""

import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import Actor, get_current_actor, require_role
from app.schemas.period import (
    FinancialPeriodCreate,
    FinancialPeriodResponse,
    PeriodLockAuditResponse,
    PeriodTransitionRequest,
    PeriodUnlockRequest,
    TransactionDateCheck,
)
from app.services.period_lock_service import PeriodLockService


router = APIRouter(prefix="/api/v1/periods", tags=["Financial Periods"])


@router.get("", response_model=List[FinancialPeriodResponse])
async def list_periods(
    fiscal_year: Optional[int] = Query(None, description="Filter by fiscal year"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = PeriodLockService(db)
    return await service.list_periods(fiscal_year=fiscal_year)


@router.post("", response_model=FinancialPeriodResponse, status_code=status.HTTP_201_CREATED)
async def create_period(
    data: FinancialPeriodCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(settings.period_admin_roles)),
):
    service = PeriodLockService(db)
    return await service.create_period(data, actor.id)


@router.get("/check-date", response_model=TransactionDateCheck)
async def check_transaction_date(
    on_date: date = Query(..., alias="date", description="Transaction date"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Whether a financial write dated ``date`` would pass the period gate."""
    service = PeriodLockService(db)
    return await service.is_transaction_allowed(on_date)


@router.get("/{period_id}", response_model=FinancialPeriodResponse)
async def get_period(
    period_id: uuid.UUID = Path(..., description="Period ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = PeriodLockService(db)
    return await service.get_period(period_id)


@router.post("/{period_id}/lock", response_model=FinancialPeriodResponse)
async def lock_period(
    data: PeriodTransitionRequest,
    period_id: uuid.UUID = Path(..., description="Period ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(settings.period_admin_roles)),
):
    service = PeriodLockService(db)
    return await service.lock(period_id, actor.id, data.reason)


@router.post("/{period_id}/unlock", response_model=FinancialPeriodResponse)
async def unlock_period(
    data: PeriodUnlockRequest,
    period_id: uuid.UUID = Path(..., description="Period ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(settings.period_admin_roles)),
):
    service = PeriodLockService(db)
    return await service.unlock(period_id, actor.id, data.reason)


@router.post("/{period_id}/close", response_model=FinancialPeriodResponse)
async def close_period(
    data: PeriodTransitionRequest,
    period_id: uuid.UUID = Path(..., description="Period ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(settings.period_admin_roles)),
):
    """Close a LOCKED period for good."""
    service = PeriodLockService(db)
    return await service.close(period_id, actor.id, data.reason)


@router.get("/{period_id}/audit-trail", response_model=List[PeriodLockAuditResponse])
async def get_period_audit_trail(
    period_id: uuid.UUID = Path(..., description="Period ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = PeriodLockService(db)
    return await service.get_audit_trail(period_id)
