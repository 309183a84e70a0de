"""
Database infrastructure for the Verdict service.

One async engine per process. PostgreSQL (psycopg) in production; SQLite
(aiosqlite) for local runs and tests, with foreign keys switched on so the
outcome -> insight reference is enforced there too.

Every write the resolution engine makes goes through get_session(): the
status flip and the outcome insert share one transaction.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
import structlog

logger = structlog.get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 15


class Base(DeclarativeBase):
    """Declarative base shared by the Verdict tables."""


_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None

_DRIVERS = {
    "postgresql://": "postgresql+psycopg://",
    "postgres://": "postgresql+psycopg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def async_url(url: str) -> str:
    """Map a plain database URL onto the async driver Verdict uses."""
    if url.startswith(("postgresql+psycopg://", "sqlite+aiosqlite://")):
        return url
    for plain, driver in _DRIVERS.items():
        if url.startswith(plain):
            return driver + url[len(plain):]
    raise ValueError(f"Unsupported database URL scheme: {url.split('://', 1)[0]}")


def _redact(url: str) -> str:
    return url.rsplit("@", 1)[-1]


def _enable_sqlite_foreign_keys(dbapi_connection, _record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


async def init_database(database_url: str) -> None:
    """Create the engine and session factory. Safe to call again after close."""
    global _engine, _sessions

    url = async_url(database_url)
    is_sqlite = url.startswith("sqlite")

    options: Dict[str, Any] = {"echo": False, "pool_pre_ping": not is_sqlite}
    if is_sqlite:
        options["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
    else:
        options.update(pool_size=10, max_overflow=5, pool_recycle=1800)

    _engine = create_async_engine(url, **options)
    if is_sqlite:
        event.listen(_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    _sessions = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    logger.info("database_initialized", url=_redact(database_url), dialect=_engine.dialect.name)


async def close_database() -> None:
    global _engine, _sessions

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")


def is_initialized() -> bool:
    return _sessions is not None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized; call init_database() first")
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit when the block exits cleanly, roll back otherwise."""
    if _sessions is None:
        raise RuntimeError("Database not initialized; call init_database() first")
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """Create the Verdict tables directly (tests and --create-tables); migrations do this in production."""
    import verdict.db.models  # noqa: F401  registers the tables on Base.metadata

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_created", tables=sorted(Base.metadata.tables))
