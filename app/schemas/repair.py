"""
School Ledger - Amount Repair Schemas
"""

from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel


class ScaledLineCandidate(BaseModel):
    entry_id: UUID
    entry_ref: str
    line_number: int
    account_code: str
    debit_amount: int
    credit_amount: int


class EntryRepair(BaseModel):
    entry_ref: str
    repaired: bool
    old_total: Optional[int] = None
    new_total: Optional[int] = None
    skipped_reason: Optional[str] = None


class RepairReport(BaseModel):
    dry_run: bool
    entries: List[EntryRepair]
    accounts_recalculated: List[str] = []
    
    @property
    def repaired_count(self) -> int:
        return sum(1 for entry in self.entries if entry.repaired)
