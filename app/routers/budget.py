"""
School Ledger - Budget Router

API endpoints for budget allocations, the pre-posting budget check, and
budget reports.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.dependencies import Actor, get_current_actor, require_role
from app.schemas.budget import (
    BudgetAlert,
    BudgetAllocationCreate,
    BudgetAllocationResponse,
    BudgetUtilization,
    BudgetValidationRequest,
    BudgetValidationResult,
    BudgetVarianceReport,
)
from app.services.budget_service import BudgetEnforcementService


router = APIRouter(prefix="/api/v1/budget", tags=["Budget"])


@router.get("/allocations", response_model=List[BudgetUtilization])
async def list_allocations(
    fiscal_year: int = Query(..., description="Fiscal year"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Active allocations with their current utilization."""
    service = BudgetEnforcementService(db)
    return await service.list_allocations(fiscal_year)


@router.put("/allocations", response_model=BudgetAllocationResponse)
async def set_allocation(
    data: BudgetAllocationCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(settings.finance_admin_roles)),
):
    service = BudgetEnforcementService(db)
    return await service.set_allocation(data, actor.id)


@router.post("/allocations/{allocation_id}/deactivate", response_model=BudgetAllocationResponse)
async def deactivate_allocation(
    allocation_id: uuid.UUID = Path(..., description="Allocation ID"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_role(settings.finance_admin_roles)),
):
    service = BudgetEnforcementService(db)
    return await service.deactivate_allocation(allocation_id, actor.id)


@router.post("/validate", response_model=BudgetValidationResult)
async def validate_transaction(
    data: BudgetValidationRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = BudgetEnforcementService(db)
    return await service.validate_transaction(
        data.account_code, data.amount, data.fiscal_year, data.department,
    )


@router.get("/variance", response_model=BudgetVarianceReport)
async def get_variance_report(
    fiscal_year: int = Query(..., description="Fiscal year"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = BudgetEnforcementService(db)
    return await service.variance_report(fiscal_year)


@router.get("/alerts", response_model=List[BudgetAlert])
async def get_alerts(
    fiscal_year: int = Query(..., description="Fiscal year"),
    threshold: Optional[int] = Query(None, ge=0, le=100, description="Minimum utilization percent"),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    service = BudgetEnforcementService(db)
    return await service.get_alerts(fiscal_year, threshold=threshold)
