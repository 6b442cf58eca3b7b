"""
School Ledger - Budget Allocation Model
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, Integer, String, Text, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import AuditMixin, BaseModel


class BudgetAllocation(BaseModel, AuditMixin):
    """
    Budget for one account in one fiscal year.
    
    ``department`` NULL means organization-wide. It is its own partition:
    an organization-wide budget does not absorb department spend and a
    department budget does not inherit the organization-wide one.
    """
    
    __tablename__ = "budget_allocations"
    
    account_code: Mapped[str] = mapped_column(
        String(20),
        ForeignKey("accounts.code", ondelete="RESTRICT"),
        nullable=False,
    )
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    allocated_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    __table_args__ = (
        CheckConstraint("allocated_amount >= 0", name="non_negative_allocation"),
        Index("ix_budget_allocations_lookup", "account_code", "fiscal_year"),
    )
    
    def __repr__(self) -> str:
        return f"<BudgetAllocation(account={self.account_code}, year={self.fiscal_year}, dept={self.department})>"


# One active allocation per (account, year, department); COALESCE keeps
# NULL departments in a single bucket instead of letting them repeat.
Index(
    "uq_budget_allocations_active_scope",
    BudgetAllocation.account_code,
    BudgetAllocation.fiscal_year,
    func.coalesce(BudgetAllocation.department, ""),
    unique=True,
    sqlite_where=BudgetAllocation.is_active.is_(True),
    postgresql_where=BudgetAllocation.is_active.is_(True),
)
