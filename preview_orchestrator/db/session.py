"""Async database access for the session store.

The engine is built lazily from ``settings.database`` on first use, so
importing this module never touches the database.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

# Registers PreviewSession with SQLModel.metadata
import preview_orchestrator.models  # noqa: F401
from preview_orchestrator.config import get_settings

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_factory: sessionmaker | None = None

# Seconds a SQLite writer waits for the file lock (API and sweep share it)
SQLITE_BUSY_TIMEOUT = 30


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first call."""
    global _engine
    if _engine is not None:
        return _engine

    db_config = get_settings().database
    connect_args = {"timeout": SQLITE_BUSY_TIMEOUT} if _is_sqlite(db_config.url) else {}
    _engine = create_async_engine(
        db_config.url,
        echo=db_config.echo,
        connect_args=connect_args,
    )

    if _is_sqlite(db_config.url) and ":memory:" not in db_config.url:

        @event.listens_for(_engine.sync_engine, "connect")
        def _enable_wal(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return _engine


def _get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def init_db() -> None:
    """Create the session store tables if they are missing.

    Existing tables are left as they are; there is no schema migration.
    """
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info(
        "db.initialized",
        url=engine.url.render_as_string(hide_password=True),
        tables=sorted(SQLModel.metadata.tables),
    )


async def close_db() -> None:
    """Dispose of the engine; the next use builds a new one."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("db.closed")


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a session that commits on clean exit and rolls back on error.

    Usage:
        async with get_async_session() as session:
            manager = PreviewManager(..., db_session=session)
    """
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session_dependency() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request."""
    async with get_async_session() as session:
        yield session
