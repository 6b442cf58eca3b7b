"""
School Ledger - Audit Trail Service

Best-effort audit logging for every state-changing ledger operation.

Writes go through a SAVEPOINT inside the caller's transaction: the audit row
commits or rolls back together with the business change, and a failure to
write it never aborts that change.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Service for managing audit trail and compliance logging."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def log_audit(
        self,
        actor_id: Optional[int],
        action: str,
        table_name: str,
        record_id: Any,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        """
        Log an audit action.
        
        Args:
            actor_id: ID of the actor who performed the action
            action: Action name (CREATE, VOID, LOCK, APPROVE_L1, ...)
            table_name: Table of the affected record
            record_id: ID of the affected record
            old_values: Previous values (for updates)
            new_values: New values (for creates/updates)
        
        Returns:
            The audit row, or None when it could not be written.
        """
        try:
            async with self.db.begin_nested():
                return await self._write(actor_id, action, table_name, record_id, old_values, new_values)
        except Exception as e:
            logger.warning(
                f"Audit log write failed for {table_name}/{record_id} ({action}): {e}",
                exc_info=True,
            )
            return None
    
    async def _write(
        self,
        actor_id: Optional[int],
        action: str,
        table_name: str,
        record_id: Any,
        old_values: Optional[Dict[str, Any]],
        new_values: Optional[Dict[str, Any]],
    ) -> AuditLog:
        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            table_name=table_name,
            record_id=str(record_id),
            old_values=jsonable_encoder(old_values) if old_values is not None else None,
            new_values=jsonable_encoder(new_values) if new_values is not None else None,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry
    
    async def get_record_history(self, table_name: str, record_id: Any) -> List[AuditLog]:
        """Get audit history for one record, oldest first."""
        result = await self.db.execute(
            select(AuditLog)
            .where(and_(AuditLog.table_name == table_name, AuditLog.record_id == str(record_id)))
            .order_by(AuditLog.created_at)
        )
        return list(result.scalars().all())
