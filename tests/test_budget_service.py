"""
School Ledger - Budget Enforcement Tests

Comprehensive tests for budget functionality:
- Allocation upsert and scope (department, NULL department)
- Spend aggregation
- Blocking, warning and notice thresholds
- Fail-closed validation
- Variance and alerts
- Enforcement during posting
"""

from datetime import date

import pytest

from app.models.accounting import JournalEntryType
from app.schemas.accounting import PostingOutcome
from app.schemas.budget import (
    AlertSeverity,
    BudgetAllocationCreate,
    BudgetCheckLevel,
    VarianceStatus,
)
from app.utils.error_handling import ErrorCode, NotFoundException
from tests.conftest import BURSAR_ID


async def _allocate(accounting, account_code, amount, department=None, fiscal_year=2026):
    return await accounting.budgets.set_allocation(
        BudgetAllocationCreate(
            account_code=account_code,
            fiscal_year=fiscal_year,
            department=department,
            allocated_amount=amount,
        ),
        actor_id=BURSAR_ID,
    )


async def _spend(accounting, make_entry, account_code, amount, department=None, **fields):
    result = await accounting.create_entry(make_entry(
        [(account_code, amount, 0), ("1020", 0, amount)],
        department=department,
        **fields,
    ))
    assert result.success, result.message
    return result


class TestAllocations:
    """Tests for budget allocations."""

    @pytest.mark.asyncio
    async def test_set_allocation_upserts(self, accounting):
        first = await _allocate(accounting, "5100", 500_000)
        second = await _allocate(accounting, "5100", 750_000)

        assert second.id == first.id
        assert second.allocated_amount == 750_000
        assert len(await accounting.budgets.list_allocations(2026)) == 1

    @pytest.mark.asyncio
    async def test_department_scopes_are_separate(self, accounting):
        await _allocate(accounting, "5400", 100_000)
        await _allocate(accounting, "5400", 40_000, department="Science")

        school_wide = await accounting.budgets.get_allocation("5400", 2026)
        science = await accounting.budgets.get_allocation("5400", 2026, "Science")
        assert school_wide.allocated_amount == 100_000
        assert science.allocated_amount == 40_000
        assert await accounting.budgets.get_allocation("5400", 2026, "Arts") is None

    @pytest.mark.asyncio
    async def test_blank_department_means_school_wide(self, accounting):
        allocation = await _allocate(accounting, "5400", 100_000, department="   ")
        assert allocation.department is None

    @pytest.mark.asyncio
    async def test_unknown_account(self, accounting):
        with pytest.raises(NotFoundException):
            await _allocate(accounting, "9999", 1_000)

    @pytest.mark.asyncio
    async def test_deactivated_allocation_stops_enforcing(self, accounting):
        allocation = await _allocate(accounting, "5100", 1_000)
        await accounting.budgets.deactivate_allocation(allocation.id, actor_id=BURSAR_ID)

        result = await accounting.budgets.validate_transaction("5100", 5_000, 2026)
        assert result.level == BudgetCheckLevel.NO_BUDGET
        assert result.is_allowed is True


class TestSpend:
    """Tests for calculate_spent."""

    @pytest.mark.asyncio
    async def test_spend_counts_posted_entries_in_scope(self, accounting, make_entry):
        await _spend(accounting, make_entry, "5100", 30_000)
        await _spend(accounting, make_entry, "5100", 12_000, department="Boarding")
        await _spend(accounting, make_entry, "5100", 8_000, entry_date=date(2026, 7, 1))

        assert await accounting.budgets.calculate_spent("5100", 2026) == 38_000
        assert await accounting.budgets.calculate_spent("5100", 2026, "Boarding") == 12_000
        assert await accounting.budgets.calculate_spent("5100", 2027) == 0

    @pytest.mark.asyncio
    async def test_voided_spend_is_excluded(self, accounting, make_entry):
        kept = await _spend(accounting, make_entry, "5100", 30_000)
        voided = await _spend(accounting, make_entry, "5100", 20_000)
        await accounting.void_entry(voided.entry_id, "Duplicate invoice", actor_id=BURSAR_ID)

        assert kept.success
        assert await accounting.budgets.calculate_spent("5100", 2026) == 30_000

    @pytest.mark.asyncio
    async def test_credit_normal_account_spend_is_credit_side(self, accounting, make_entry):
        await accounting.create_entry(make_entry(
            [("1100", 90_000, 0), ("4010", 0, 90_000)], entry_type=JournalEntryType.FEE_INVOICE,
        ))
        assert await accounting.budgets.calculate_spent("4010", 2026) == 90_000

    @pytest.mark.asyncio
    async def test_fiscal_year_bounds_follow_periods(self, accounting):
        assert await accounting.budgets.get_fiscal_year_bounds(2026) == (date(2026, 1, 1), date(2026, 12, 31))
        assert await accounting.budgets.get_fiscal_year_bounds(2031) == (date(2031, 1, 1), date(2031, 12, 31))


class TestValidateTransaction:
    """Tests for the pre-posting budget check."""

    @pytest.mark.asyncio
    async def test_overrun_blocked_with_amount(self, accounting, make_entry):
        await _allocate(accounting, "5100", 500_000)
        await _spend(accounting, make_entry, "5100", 480_000)

        result = await accounting.budgets.validate_transaction("5100", 30_000, 2026)

        assert result.is_allowed is False
        assert result.level == BudgetCheckLevel.BLOCKED
        assert result.overrun_amount == 10_000
        assert result.budget_status.allocated == 500_000
        assert result.budget_status.spent == 480_000
        assert result.budget_status.remaining == 20_000
        assert result.budget_status.utilization_percentage == 96.0
        assert result.budget_status.utilization_after_transaction == 102.0
        assert "Overrun: KES 100.00" in result.message

    @pytest.mark.asyncio
    async def test_exact_allocation_allowed(self, accounting, make_entry):
        await _allocate(accounting, "5100", 500_000)
        await _spend(accounting, make_entry, "5100", 480_000)

        result = await accounting.budgets.validate_transaction("5100", 20_000, 2026)
        assert result.is_allowed is True

    @pytest.mark.asyncio
    async def test_no_budget_allows(self, accounting):
        result = await accounting.budgets.validate_transaction("5200", 9_999_999, 2026)
        assert result.is_allowed is True
        assert result.level == BudgetCheckLevel.NO_BUDGET
        assert result.budget_status is None

    @pytest.mark.asyncio
    async def test_notice_when_crossing_80(self, accounting):
        await _allocate(accounting, "5100", 100_000)
        result = await accounting.budgets.validate_transaction("5100", 85_000, 2026)
        assert result.is_allowed is True
        assert result.level == BudgetCheckLevel.NOTICE
        assert result.message.startswith("Notice:")

    @pytest.mark.asyncio
    async def test_warning_when_crossing_90(self, accounting):
        await _allocate(accounting, "5100", 100_000)
        result = await accounting.budgets.validate_transaction("5100", 95_000, 2026)
        assert result.level == BudgetCheckLevel.WARNING
        assert result.message.startswith("Warning:")

    @pytest.mark.asyncio
    async def test_no_repeat_notice_once_past_threshold(self, accounting, make_entry):
        await _allocate(accounting, "5100", 100_000)
        await _spend(accounting, make_entry, "5100", 82_000)

        result = await accounting.budgets.validate_transaction("5100", 1_000, 2026)
        assert result.level == BudgetCheckLevel.OK

    @pytest.mark.asyncio
    async def test_department_budget_ignores_school_wide_spend(self, accounting, make_entry):
        await _allocate(accounting, "5400", 50_000, department="Science")
        await _spend(accounting, make_entry, "5400", 45_000)

        science = await accounting.budgets.validate_transaction("5400", 40_000, 2026, "Science")
        assert science.is_allowed is True
        assert science.budget_status.spent == 0

        school_wide = await accounting.budgets.validate_transaction("5400", 40_000, 2026)
        assert school_wide.level == BudgetCheckLevel.NO_BUDGET

    @pytest.mark.asyncio
    async def test_fails_closed(self, accounting, monkeypatch):
        await _allocate(accounting, "5100", 100_000)

        async def broken(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(accounting.budgets, "calculate_spent", broken)

        result = await accounting.budgets.validate_transaction("5100", 1_000, 2026)
        assert result.is_allowed is False
        assert result.level == BudgetCheckLevel.BLOCKED
        assert "ledger unavailable" in result.message
        assert "Transaction blocked until budget checks recover" in result.message


class TestEnforcementOnPosting:
    """Tests for enforce_budget on create_entry."""

    @pytest.mark.asyncio
    async def test_overrun_rejects_posting(self, accounting, make_entry):
        await _allocate(accounting, "5100", 500_000)
        await _spend(accounting, make_entry, "5100", 480_000)

        result = await accounting.create_entry(make_entry(
            [("5100", 30_000, 0), ("1020", 0, 30_000)], enforce_budget=True,
        ))
        assert result.outcome == PostingOutcome.REJECTED
        assert result.error_code == ErrorCode.BUDGET_EXCEEDED.value
        assert result.details["overrun_amount"] == 10_000
        assert await accounting.budgets.calculate_spent("5100", 2026) == 480_000

    @pytest.mark.asyncio
    async def test_notice_carried_on_result(self, accounting, make_entry):
        await _allocate(accounting, "5100", 100_000)

        result = await accounting.create_entry(make_entry(
            [("5100", 85_000, 0), ("1020", 0, 85_000)], enforce_budget=True,
        ))
        assert result.outcome == PostingOutcome.POSTED
        assert result.details["budget_notes"][0].startswith("Notice:")

    @pytest.mark.asyncio
    async def test_not_enforced_by_default(self, accounting, make_entry):
        await _allocate(accounting, "5100", 1_000)
        result = await accounting.create_entry(make_entry([("5100", 30_000, 0), ("1020", 0, 30_000)]))
        assert result.outcome == PostingOutcome.POSTED

    @pytest.mark.asyncio
    async def test_check_failure_rejects_posting(self, accounting, make_entry, monkeypatch):
        await _allocate(accounting, "5100", 100_000)

        async def broken(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(accounting.budgets, "calculate_spent", broken)

        result = await accounting.create_entry(make_entry(
            [("5100", 1_000, 0), ("1020", 0, 1_000)], enforce_budget=True,
        ))
        assert result.outcome == PostingOutcome.REJECTED
        assert result.error_code == ErrorCode.BUDGET_CHECK_FAILED.value
        assert await accounting.list_entries() == []


class TestReports:
    """Tests for variance and alerts."""

    @pytest.mark.asyncio
    async def test_variance_report(self, accounting, make_entry):
        await _allocate(accounting, "5100", 100_000)
        await _allocate(accounting, "5200", 100_000)
        await _allocate(accounting, "5300", 100_000)
        await _spend(accounting, make_entry, "5100", 120_000)
        await _spend(accounting, make_entry, "5200", 96_000)
        await _spend(accounting, make_entry, "5300", 40_000)

        report = await accounting.budgets.variance_report(2026)
        statuses = {line.account_code: line.status for line in report.lines}
        assert statuses == {
            "5100": VarianceStatus.OVER_BUDGET,
            "5200": VarianceStatus.ON_BUDGET,
            "5300": VarianceStatus.UNDER_BUDGET,
        }
        assert report.total_budgeted == 300_000
        assert report.total_actual == 256_000
        assert report.total_variance == 44_000

    @pytest.mark.asyncio
    async def test_alerts(self, accounting, make_entry):
        await _allocate(accounting, "5100", 100_000)
        await _allocate(accounting, "5200", 100_000)
        await _allocate(accounting, "5300", 100_000)
        await _allocate(accounting, "5310", 100_000)
        await _spend(accounting, make_entry, "5100", 100_000)
        await _spend(accounting, make_entry, "5200", 92_000)
        await _spend(accounting, make_entry, "5300", 81_000)
        await _spend(accounting, make_entry, "5310", 10_000)

        alerts = {alert.account_code: alert.severity for alert in await accounting.budgets.get_alerts(2026)}
        assert alerts == {
            "5100": AlertSeverity.EXCEEDED,
            "5200": AlertSeverity.CRITICAL,
            "5300": AlertSeverity.WARNING,
        }
