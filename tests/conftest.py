"""
School Ledger - Test Configuration

Pytest fixtures and configuration.

Each test gets its own SQLite file so committed units of work from one test
never leak into the next.
"""

import calendar
from datetime import date
from typing import AsyncGenerator, Callable, List

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.database import Database, get_db
from app.models.accounting import FinancialPeriod, JournalEntryType
from app.schemas.accounting import JournalEntryCreate, JournalEntryLineCreate
from app.schemas.approval import ApprovalWorkflowCreate
from app.schemas.period import FinancialPeriodCreate
from app.services.accounting_service import AccountingService
from app.services.period_lock_service import PeriodLockService
from main import app


# Actors used across the suite
CLERK_ID = 101
BURSAR_ID = 201
PRINCIPAL_ID = 301

# "Today" for every service built by the fixtures
TODAY = date(2026, 3, 20)


@pytest_asyncio.fixture(scope="function")
async def database(tmp_path) -> AsyncGenerator[Database, None]:
    """A fresh file-backed SQLite database with all tables created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}").connect()
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.session() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    return Settings(_env_file=None)


@pytest_asyncio.fixture
async def seeded_accounts(db_session: AsyncSession):
    """The default school chart of accounts."""
    service = AccountingService(db_session)
    return await service.seed_chart_of_accounts(actor_id=PRINCIPAL_ID)


@pytest_asyncio.fixture
async def periods(db_session: AsyncSession) -> List[FinancialPeriod]:
    """Twelve OPEN monthly periods for fiscal year 2026."""
    service = PeriodLockService(db_session)
    created = []
    for month in range(1, 13):
        last_day = calendar.monthrange(2026, month)[1]
        created.append(await service.create_period(
            FinancialPeriodCreate(
                name=f"{calendar.month_name[month]} 2026",
                fiscal_year=2026,
                start_date=date(2026, month, 1),
                end_date=date(2026, month, last_day),
            ),
            actor_id=PRINCIPAL_ID,
        ))
    return created


@pytest_asyncio.fixture
async def accounting(db_session, seeded_accounts, periods, test_settings) -> AccountingService:
    """Posting engine over a seeded ledger with open 2026 periods."""
    return AccountingService(db_session, clock=lambda: TODAY, config=test_settings)


@pytest.fixture
def make_entry() -> Callable[..., JournalEntryCreate]:
    """
    Build a JournalEntryCreate from ``(account_code, debit, credit)`` tuples.
    """
    def _make(
        lines,
        entry_date: date = date(2026, 3, 10),
        entry_type: JournalEntryType = JournalEntryType.EXPENSE,
        created_by: int = CLERK_ID,
        description: str = "Test entry",
        **fields,
    ) -> JournalEntryCreate:
        return JournalEntryCreate(
            entry_date=entry_date,
            entry_type=entry_type,
            description=description,
            created_by=created_by,
            lines=[
                JournalEntryLineCreate(account_code=code, debit_amount=debit, credit_amount=credit)
                for code, debit, credit in lines
            ],
            **fields,
        )

    return _make


@pytest.fixture
def workflow_data() -> Callable[..., ApprovalWorkflowCreate]:
    def _make(transaction_type: str, level_1: int = 100_000, level_2: int = 1_000_000, **fields):
        return ApprovalWorkflowCreate(
            transaction_type=transaction_type,
            level_1_threshold=level_1,
            level_1_role=fields.pop("level_1_role", "BURSAR"),
            level_2_threshold=level_2,
            level_2_role=fields.pop("level_2_role", "PRINCIPAL"),
            **fields,
        )

    return _make


@pytest_asyncio.fixture(scope="function")
async def client(database: Database, seeded_accounts, periods) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with database.session() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Actor-Id": str(CLERK_ID), "X-Actor-Role": "CLERK"},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


def actor_headers(actor_id: int, role: str) -> dict:
    return {"X-Actor-Id": str(actor_id), "X-Actor-Role": role}


@pytest.fixture
def as_bursar() -> dict:
    return actor_headers(BURSAR_ID, "BURSAR")


@pytest.fixture
def as_principal() -> dict:
    return actor_headers(PRINCIPAL_ID, "PRINCIPAL")
