"""
Async engine and session scope for the outreach store.

Driver mapping:
  postgresql:// | postgres://   → postgresql+asyncpg://   (extra: postgres)
  mysql:// | mysql+pymysql://   → mysql+aiomysql://       (extra: mysql)
  sqlite://                     → sqlite+aiosqlite://

SQLite connections run in WAL mode with a busy timeout, so concurrent
claimers queue on the write lock instead of failing with "database is locked".

Usage:
    await init_db("sqlite:///./outreach.db")   # once at startup
    async with get_session() as db:            # one transaction
        await db.execute(...)
    await close_db()                           # at shutdown
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

_SERVER_POOL = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_SQLITE_BUSY_TIMEOUT_MS = 30_000

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def async_database_url(db_url: str) -> str:
    """Swap a plain database URL onto its async driver. Async URLs pass through."""
    for prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    return db_url


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


def _apply_sqlite_pragmas(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def _build_engine(url: str) -> AsyncEngine:
    echo = get_settings().debug
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo, connect_args={"check_same_thread": False})
        event.listen(engine.sync_engine, "connect", _apply_sqlite_pragmas)
        return engine
    return create_async_engine(url, echo=echo, **_SERVER_POOL)


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Process-wide engine. ``db_url`` only matters for the first call after close_db()."""
    global _engine
    if _engine is None:
        url = async_database_url(db_url or get_settings().database.url)
        _engine = _build_engine(url)
        logger.info("database_engine_created", dialect=_engine.dialect.name, url=_redact(url))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """One unit of work: commit on clean exit, roll back on any exception."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    """Create any missing tables."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
