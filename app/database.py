"""
School Ledger - Database Configuration

This module handles database connection setup using SQLAlchemy 2.0 async.

The storage handle is an explicitly constructed ``Database`` object: it is
opened at application startup, handed to whoever needs sessions, and disposed
at shutdown. Services never import an engine; they receive an ``AsyncSession``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


# Naming convention for constraints (helps with migrations)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    metadata = MetaData(naming_convention=convention)


def _configure_sqlite(engine: AsyncEngine) -> None:
    """
    Make SQLite transactions behave.

    The sqlite3/aiosqlite drivers defer BEGIN until the first DML statement,
    which breaks SAVEPOINT and leaves reads outside the transaction. We turn
    the driver's handling off and emit BEGIN ourselves.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    """Owns the async engine and session factory for one database URL."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(settings.database_url_async, echo=settings.database_echo)

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_connected(self) -> bool:
        return self.engine is not None

    def connect(self) -> "Database":
        """Create the engine and session factory. Safe to call twice."""
        if self.engine is not None:
            return self
        
        options: dict[str, Any] = {"echo": self.echo}
        if not self.is_sqlite:
            options.update(pool_pre_ping=True, pool_size=5, max_overflow=10)
        
        self.engine = create_async_engine(self.url, **options)
        if self.is_sqlite:
            _configure_sqlite(self.engine)
        
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info(f"Database engine created for {self.engine.url.render_as_string(hide_password=True)}")
        return self

    def session(self) -> AsyncSession:
        if self.session_maker is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self.session_maker()

    async def create_all(self) -> None:
        """
        Create all tables.
        Use this for development/testing only.
        """
        # Import models so every table is registered on the metadata
        import app.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        import app.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        """Close database connections."""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.session_maker = None


# =============================================================================
# UNIT OF WORK
# =============================================================================

class UnitOfWork:
    """
    Re-entrant transaction scope over one ``AsyncSession``.

    The outermost ``atomic()`` block commits on success and rolls back on any
    exception. Blocks opened inside it join the same transaction instead of
    starting a new one, so services can be composed freely: whichever caller
    opened the first block decides when everything commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @asynccontextmanager
    async def atomic(self) -> AsyncGenerator[AsyncSession, None]:
        if self._depth > 0:
            self._depth += 1
            try:
                yield self.session
            finally:
                self._depth -= 1
            return
        
        self._depth = 1
        try:
            yield self.session
            await self.session.commit()
        except BaseException:
            await self.session.rollback()
            raise
        finally:
            self._depth = 0


def unit_of_work(session: AsyncSession) -> UnitOfWork:
    """Return the unit of work bound to ``session``, creating it once."""
    uow = session.info.get("unit_of_work")
    if uow is None:
        uow = UnitOfWork(session)
        session.info["unit_of_work"] = uow
    return uow


# =============================================================================
# FASTAPI DEPENDENCY
# =============================================================================

async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database session.
    Use with FastAPI's Depends().
    """
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session
