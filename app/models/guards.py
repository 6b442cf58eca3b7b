"""
School Ledger - Immutability Guards

ORM flush hooks that refuse edits the ledger never allows:
- audit trails (period lock audit, approval history, audit log) are append-only
- journal entry lines never change once written
- posted journal entries only change their void columns
- void audit rows only change their recovery columns

These guard ORM flushes. Bulk ``update()`` statements bypass them and are
only used for derived balances and the explicit data-repair tool.
"""

from sqlalchemy import event, inspect

from app.models.accounting import JournalEntry, JournalEntryLine, VoidAudit
from app.models.base import AppendOnlyModel
from app.utils.error_handling import ImmutableRecordException


# Columns a posted entry may still change (voiding)
VOID_COLUMNS = frozenset({
    "is_voided", "voided_reason", "voided_by", "voided_at", "updated_at",
})


def _changed_attributes(target) -> set:
    state = inspect(target)
    return {attr.key for attr in state.attrs if attr.history.has_changes()}


def _refuse(mapper, connection, target):
    raise ImmutableRecordException(type(target).__name__)


@event.listens_for(AppendOnlyModel, "before_update", propagate=True)
def _append_only_update(mapper, connection, target):
    _refuse(mapper, connection, target)


@event.listens_for(AppendOnlyModel, "before_delete", propagate=True)
def _append_only_delete(mapper, connection, target):
    _refuse(mapper, connection, target)


@event.listens_for(JournalEntryLine, "before_update")
def _line_update(mapper, connection, target):
    _refuse(mapper, connection, target)


@event.listens_for(JournalEntryLine, "before_delete")
def _line_delete(mapper, connection, target):
    _refuse(mapper, connection, target)


def _was_posted(target: JournalEntry) -> bool:
    history = inspect(target).attrs.is_posted.history
    if history.deleted:
        return bool(history.deleted[0])
    return bool(target.is_posted)


@event.listens_for(JournalEntry, "before_update")
def _entry_update(mapper, connection, target):
    if not _was_posted(target):
        return
    changed = _changed_attributes(target) - VOID_COLUMNS - {"lines"}
    if changed:
        raise ImmutableRecordException(
            "JournalEntry",
            message=f"Posted journal entry {target.entry_ref} cannot change: {', '.join(sorted(changed))}",
        )


@event.listens_for(JournalEntry, "before_delete")
def _entry_delete(mapper, connection, target):
    raise ImmutableRecordException("JournalEntry", message="Journal entries are voided, never deleted")


@event.listens_for(VoidAudit, "before_update")
def _void_audit_update(mapper, connection, target):
    changed = _changed_attributes(target) - VoidAudit.RECOVERY_COLUMNS
    if changed:
        raise ImmutableRecordException(
            "VoidAudit",
            message=f"Only recovery details of a void audit can change, not: {', '.join(sorted(changed))}",
        )


@event.listens_for(VoidAudit, "before_delete")
def _void_audit_delete(mapper, connection, target):
    _refuse(mapper, connection, target)
