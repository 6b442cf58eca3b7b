"""
School Ledger - Immutability and Audit Trail Tests
"""

import pytest

from app.models.accounting import JournalEntryLine
from app.services.audit_service import AuditService
from app.schemas.accounting import PostingOutcome
from app.utils.error_handling import ImmutableRecordException
from tests.conftest import BURSAR_ID, CLERK_ID


async def _posted_entry(accounting, make_entry, amount=10_000):
    result = await accounting.create_entry(make_entry([("5100", amount, 0), ("1010", 0, amount)]))
    assert result.success, result.message
    return await accounting.get_entry(result.entry_id)


class TestLedgerImmutability:
    """Posted data can only change through voids."""

    @pytest.mark.asyncio
    async def test_posted_entry_fields_frozen(self, accounting, db_session, make_entry):
        entry = await _posted_entry(accounting, make_entry)
        entry.description = "Edited after posting"

        with pytest.raises(ImmutableRecordException):
            await db_session.flush()
        await db_session.rollback()

    @pytest.mark.asyncio
    async def test_lines_frozen(self, accounting, db_session, make_entry):
        entry = await _posted_entry(accounting, make_entry)
        line: JournalEntryLine = entry.lines[0]
        line.debit_amount = 1

        with pytest.raises(ImmutableRecordException):
            await db_session.flush()
        await db_session.rollback()

    @pytest.mark.asyncio
    async def test_entries_never_deleted(self, accounting, db_session, make_entry):
        entry = await _posted_entry(accounting, make_entry)
        await db_session.delete(entry)

        with pytest.raises(ImmutableRecordException):
            await db_session.flush()
        await db_session.rollback()

    @pytest.mark.asyncio
    async def test_void_audit_only_accepts_recovery(self, accounting, db_session, make_entry):
        entry = await _posted_entry(accounting, make_entry)
        result = await accounting.void_entry(entry.id, "Duplicate", actor_id=BURSAR_ID)
        void_audit = await accounting.get_void_audit(result.void_audit_id)

        void_audit.void_reason = "Something else"
        with pytest.raises(ImmutableRecordException):
            await db_session.flush()
        await db_session.rollback()


class TestAuditTrail:
    """Tests for the best-effort audit log."""

    @pytest.mark.asyncio
    async def test_posting_and_void_audited(self, accounting, make_entry):
        entry = await _posted_entry(accounting, make_entry)
        entry_id = entry.id
        await accounting.void_entry(entry_id, "Duplicate", actor_id=BURSAR_ID)

        history = await AuditService(accounting.db).get_record_history("journal_entries", entry_id)
        assert [row.action for row in history] == ["CREATE", "VOID"]
        assert history[0].actor_id == CLERK_ID
        assert history[0].new_values["amount"] == 10_000
        assert history[1].actor_id == BURSAR_ID
        assert history[1].new_values["reason"] == "Duplicate"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_block_posting(self, accounting, make_entry, monkeypatch, caplog):
        async def broken(*args, **kwargs):
            raise RuntimeError("audit table unavailable")

        monkeypatch.setattr(accounting.audit, "_write", broken)

        result = await accounting.create_entry(make_entry([("5100", 7_000, 0), ("1010", 0, 7_000)]))
        assert result.outcome == PostingOutcome.POSTED
        assert (await accounting.get_entry(result.entry_id)).is_posted is True
        assert "Audit log write failed" in caplog.text

    @pytest.mark.asyncio
    async def test_audit_rows_append_only(self, accounting, db_session, make_entry):
        entry = await _posted_entry(accounting, make_entry)
        row = (await AuditService(db_session).get_record_history("journal_entries", entry.id))[0]

        row.action = "TAMPERED"
        with pytest.raises(ImmutableRecordException):
            await db_session.flush()
        await db_session.rollback()
