"""Database connection and session management for the settlement ledger.

Up to `max_concurrent_settlements` tasks write settlement transitions at
once. On SQLite every connection is switched to WAL with a busy timeout so
concurrent writers wait for the lock instead of failing with
"database is locked".
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from voip_relayer.config import Settings, get_settings
from voip_relayer.ledger.models import Base

logger = logging.getLogger(__name__)

# Global engine and session factory
_engine = None
_session_factory = None


class LedgerDisabledError(RuntimeError):
    """Raised when the ledger is used while LEDGER_ENABLED is false."""

    pass


def ledger_url(settings: Settings) -> str:
    """Async driver URL for the configured database."""
    db_url = settings.database_url
    # Convert sqlite:/// to sqlite+aiosqlite:/// if needed
    if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
        db_url = db_url.replace("sqlite:///", "sqlite+aiosqlite:///")
    return db_url


def _is_sqlite_file(db_url: str) -> bool:
    return db_url.startswith("sqlite+aiosqlite:///") and ":memory:" not in db_url


def _configure_sqlite(engine: AsyncEngine, busy_timeout: float) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout * 1000)}")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


def get_engine():
    """Get or create the database engine.

    Raises:
        LedgerDisabledError: If the ledger is turned off in the settings.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        if not settings.ledger_enabled:
            raise LedgerDisabledError("Settlement ledger is disabled (LEDGER_ENABLED=false)")

        db_url = ledger_url(settings)
        connect_args = {}
        if db_url.startswith("sqlite+aiosqlite://"):
            connect_args["timeout"] = settings.database_busy_timeout
        if _is_sqlite_file(db_url):
            Path(db_url.split(":///", 1)[1]).parent.mkdir(parents=True, exist_ok=True)

        _engine = create_async_engine(
            db_url,
            echo=settings.debug and not settings.is_production,
            connect_args=connect_args,
        )
        if _is_sqlite_file(db_url):
            _configure_sqlite(_engine, settings.database_busy_timeout)
        logger.debug(f"Ledger engine created for {settings._redact_url(db_url)}")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """One ledger transaction: commits on success, rolls back on error."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the ledger tables if they do not exist."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
