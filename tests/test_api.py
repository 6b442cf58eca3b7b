"""
School Ledger - API Endpoint Tests

Tests for the HTTP surface: actor headers, role gates, result bodies
and the error response format.
"""

import uuid

import pytest


ACCOUNTING = "/api/v1/accounting"
PERIODS = "/api/v1/periods"
APPROVALS = "/api/v1/approvals"
BUDGET = "/api/v1/budget"


def _entry_body(debit_account="5100", credit_account="1010", amount=12_000, **fields):
    body = {
        "entry_date": "2026-03-10",
        "entry_type": "EXPENSE",
        "description": "Chalk and exercise books",
        "lines": [
            {"account_code": debit_account, "debit_amount": amount, "credit_amount": 0},
            {"account_code": credit_account, "debit_amount": 0, "credit_amount": amount},
        ],
    }
    body.update(fields)
    return body


async def _period_named(client, name):
    response = await client.get(PERIODS, params={"fiscal_year": 2026})
    assert response.status_code == 200
    return next(period for period in response.json() if period["name"] == name)


class TestBasics:
    """Health and actor resolution."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_missing_actor_is_unauthorized(self, client):
        response = await client.get(f"{ACCOUNTING}/accounts", headers={"X-Actor-Id": ""})
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_list_accounts(self, client):
        response = await client.get(f"{ACCOUNTING}/accounts")
        assert response.status_code == 200
        codes = {account["code"] for account in response.json()}
        assert {"1010", "1100", "4010", "5100"} <= codes


class TestJournalEntryEndpoints:
    """Posting through the API."""

    @pytest.mark.asyncio
    async def test_post_entry(self, client):
        response = await client.post(f"{ACCOUNTING}/journal-entries", json=_entry_body())
        assert response.status_code == 200
        result = response.json()
        assert result["success"] is True
        assert result["outcome"] == "POSTED"

        entry = (await client.get(f"{ACCOUNTING}/journal-entries/{result['entry_id']}")).json()
        assert entry["created_by"] == 101
        assert entry["total_debit"] == 12_000
        assert [line["line_number"] for line in entry["lines"]] == [1, 2]

        balance = (await client.get(f"{ACCOUNTING}/accounts/5100/balance")).json()
        assert balance["balance"] == 12_000

    @pytest.mark.asyncio
    async def test_unbalanced_entry_reported_in_body(self, client):
        body = _entry_body()
        body["lines"][1]["credit_amount"] = 11_000

        response = await client.post(f"{ACCOUNTING}/journal-entries", json=body)
        assert response.status_code == 200
        result = response.json()
        assert result["success"] is False
        assert result["outcome"] == "REJECTED"
        assert result["error_code"] == "UNBALANCED_ENTRY"

    @pytest.mark.asyncio
    async def test_fractional_amount_is_validation_error(self, client):
        body = _entry_body()
        body["lines"][0]["debit_amount"] = 120.5

        response = await client.post(f"{ACCOUNTING}/journal-entries", json=body)
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert "timestamp" in detail
        assert detail["details"]["errors"]

    @pytest.mark.asyncio
    async def test_actor_cannot_be_spoofed_in_body(self, client):
        response = await client.post(f"{ACCOUNTING}/journal-entries", json=_entry_body(created_by=999))
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_entry_is_not_found(self, client):
        response = await client.get(f"{ACCOUNTING}/journal-entries/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "ENTRY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_void_unknown_entry(self, client):
        response = await client.post(
            f"{ACCOUNTING}/journal-entries/{uuid.uuid4()}/void", json={"reason": "Typo"},
        )
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error_code"] == "ENTRY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_trial_balance(self, client):
        await client.post(f"{ACCOUNTING}/journal-entries", json=_entry_body())
        await client.post(f"{ACCOUNTING}/journal-entries", json=_entry_body("1020", "4010", 40_000))

        report = (await client.get(f"{ACCOUNTING}/reports/trial-balance")).json()
        assert report["is_balanced"] is True
        assert report["total_debit"] == report["total_credit"] == 52_000


class TestPostingHelperEndpoints:
    """Fee and payroll helpers."""

    @pytest.mark.asyncio
    async def test_fee_payment_and_duplicate(self, client):
        body = {
            "student_id": 42,
            "amount": 15_000,
            "payment_method": "MPESA",
            "payment_reference": "QFT3XK9",
            "payment_date": "2026-03-02",
        }
        first = (await client.post(f"{ACCOUNTING}/fee-payments", json=body)).json()
        second = (await client.post(f"{ACCOUNTING}/fee-payments", json=body)).json()

        assert first["outcome"] == "POSTED"
        assert second["outcome"] == "DUPLICATE"
        assert second["entry_id"] == first["entry_id"]

    @pytest.mark.asyncio
    async def test_payroll_created(self, client, as_bursar):
        body = {
            "period_label": "2026-03",
            "payment_date": "2026-03-28",
            "lines": [
                {"staff_id": 1, "category": "TEACHING", "gross_salary": 100_000, "paye": 10_000},
            ],
        }
        response = await client.post(f"{ACCOUNTING}/payroll", json=body, headers=as_bursar)
        assert response.status_code == 201
        entry = response.json()
        assert entry["entry_type"] == "SALARY"
        assert entry["created_by"] == 201
        assert entry["total_debit"] == entry["total_credit"]

        again = await client.post(f"{ACCOUNTING}/payroll", json=body, headers=as_bursar)
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "DUPLICATE_ENTRY"


class TestPeriodEndpoints:
    """Period transitions are role-gated."""

    @pytest.mark.asyncio
    async def test_clerk_cannot_lock(self, client):
        march = await _period_named(client, "March 2026")
        response = await client.post(f"{PERIODS}/{march['id']}/lock", json={})
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_lock_blocks_posting_until_unlocked(self, client, as_bursar):
        march = await _period_named(client, "March 2026")

        locked = await client.post(
            f"{PERIODS}/{march['id']}/lock", json={"reason": "Month end"}, headers=as_bursar,
        )
        assert locked.status_code == 200
        assert locked.json()["status"] == "LOCKED"
        assert locked.json()["locked_by"] == 201

        check = (await client.get(f"{PERIODS}/check-date", params={"date": "2026-03-10"})).json()
        assert check["allowed"] is False
        assert check["period_status"] == "LOCKED"

        rejected = (await client.post(f"{ACCOUNTING}/journal-entries", json=_entry_body())).json()
        assert rejected["error_code"] == "PERIOD_CLOSED"

        unlocked = await client.post(
            f"{PERIODS}/{march['id']}/unlock", json={"reason": "Late invoice"}, headers=as_bursar,
        )
        assert unlocked.status_code == 200
        assert unlocked.json()["status"] == "OPEN"

        trail = (await client.get(f"{PERIODS}/{march['id']}/audit-trail")).json()
        assert [row["action"] for row in trail] == ["LOCK", "UNLOCK"]

    @pytest.mark.asyncio
    async def test_unlock_requires_reason(self, client, as_bursar):
        march = await _period_named(client, "March 2026")
        await client.post(f"{PERIODS}/{march['id']}/lock", json={}, headers=as_bursar)

        response = await client.post(f"{PERIODS}/{march['id']}/unlock", json={}, headers=as_bursar)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_close_open_period_is_invalid_transition(self, client, as_principal):
        march = await _period_named(client, "March 2026")
        response = await client.post(f"{PERIODS}/{march['id']}/close", json={}, headers=as_principal)
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "INVALID_STATE_TRANSITION"


class TestApprovalEndpoints:
    """Approval flow for a gated entry."""

    @pytest.mark.asyncio
    async def test_clerk_cannot_configure_workflow(self, client):
        response = await client.put(f"{APPROVALS}/workflows", json={
            "transaction_type": "EXPENSE",
            "level_1_threshold": 1,
            "level_1_role": "CLERK",
            "level_2_threshold": 2,
            "level_2_role": "CLERK",
        })
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "FORBIDDEN"

        workflows = (await client.get(f"{APPROVALS}/workflows")).json()
        assert workflows == []

    @pytest.mark.asyncio
    async def test_entry_pending_then_approved(self, client, as_bursar, as_principal):
        workflow = await client.put(f"{APPROVALS}/workflows", json={
            "transaction_type": "EXPENSE",
            "level_1_threshold": 10_000,
            "level_1_role": "BURSAR",
            "level_2_threshold": 1_000_000,
            "level_2_role": "PRINCIPAL",
        }, headers=as_principal)
        assert workflow.status_code == 200

        result = (await client.post(f"{ACCOUNTING}/journal-entries", json=_entry_body(amount=50_000))).json()
        assert result["outcome"] == "PENDING_APPROVAL"
        request_id = result["approval_request_id"]

        pending = (await client.get(f"{APPROVALS}/pending", headers=as_bursar)).json()
        assert [request["id"] for request in pending] == [request_id]

        approved = await client.post(
            f"{APPROVALS}/requests/{request_id}/approve-level-1", json={"notes": "OK"}, headers=as_bursar,
        )
        assert approved.status_code == 200
        assert approved.json()["status"] == "APPROVED"

        entry = (await client.get(f"{ACCOUNTING}/journal-entries/{result['entry_id']}")).json()
        assert entry["is_posted"] is True
        assert entry["approval_status"] == "APPROVED"

        history = (await client.get(f"{APPROVALS}/requests/{request_id}/history")).json()
        assert [row["action"] for row in history] == ["SUBMITTED", "APPROVED_LEVEL_1"]

    @pytest.mark.asyncio
    async def test_requester_cannot_approve(self, client, as_principal):
        await client.put(f"{APPROVALS}/workflows", json={
            "transaction_type": "EXPENSE",
            "level_1_threshold": 10_000,
            "level_1_role": "CLERK",
            "level_2_threshold": 1_000_000,
            "level_2_role": "PRINCIPAL",
        }, headers=as_principal)
        result = (await client.post(f"{ACCOUNTING}/journal-entries", json=_entry_body(amount=50_000))).json()

        response = await client.post(
            f"{APPROVALS}/requests/{result['approval_request_id']}/approve-level-1", json={},
        )
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "APPROVAL_DENIED"


class TestBudgetEndpoints:
    """Allocations and pre-checks."""

    @pytest.mark.asyncio
    async def test_allocation_and_validate(self, client, as_bursar):
        allocation = await client.put(f"{BUDGET}/allocations", json={
            "account_code": "5100", "fiscal_year": 2026, "allocated_amount": 500_000,
        }, headers=as_bursar)
        assert allocation.status_code == 200

        await client.post(f"{ACCOUNTING}/journal-entries", json=_entry_body(amount=480_000))

        check = (await client.post(f"{BUDGET}/validate", json={
            "account_code": "5100", "amount": 30_000, "fiscal_year": 2026,
        })).json()
        assert check["is_allowed"] is False
        assert check["level"] == "BLOCKED"
        assert check["overrun_amount"] == 10_000

        utilization = (await client.get(f"{BUDGET}/allocations", params={"fiscal_year": 2026})).json()
        assert utilization[0]["spent"] == 480_000
        assert utilization[0]["remaining"] == 20_000

    @pytest.mark.asyncio
    async def test_clerk_cannot_change_allocations(self, client, as_bursar):
        body = {"account_code": "5100", "fiscal_year": 2026, "allocated_amount": 500_000}

        response = await client.put(f"{BUDGET}/allocations", json=body)
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "FORBIDDEN"

        allocation = (await client.put(f"{BUDGET}/allocations", json=body, headers=as_bursar)).json()
        response = await client.post(f"{BUDGET}/allocations/{allocation['id']}/deactivate")
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "FORBIDDEN"

        utilization = (await client.get(f"{BUDGET}/allocations", params={"fiscal_year": 2026})).json()
        assert utilization[0]["allocated_amount"] == 500_000
        assert utilization[0]["is_active"] is True
