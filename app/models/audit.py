"""
School Ledger - Audit Log Model

Generic audit sink for every state-changing ledger operation.
This table should have no UPDATE or DELETE permissions.
"""

from typing import Any, Dict, Optional

from sqlalchemy import Integer, JSON, String, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import AppendOnlyModel


class AuditLog(AppendOnlyModel):
    """Immutable audit log for tracking all data changes."""
    
    __tablename__ = "audit_logs"
    
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    table_name: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(64), nullable=False)
    old_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    new_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    
    __table_args__ = (
        Index("ix_audit_logs_record", "table_name", "record_id"),
    )
