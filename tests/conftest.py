"""Shared fixtures."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import preview_orchestrator.models  # noqa: F401
from preview_orchestrator.concurrency import locks
from preview_orchestrator.config import SessionConfig


@pytest.fixture(autouse=True)
def _reset_workspace_locks():
    """Locks bind to the event loop they are first contended on."""
    locks._workspace_locks.clear()
    yield
    locks._workspace_locks.clear()


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'preview.db'}",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(
        ttl_seconds=1800,
        extend_seconds=1800,
        start_timeout_seconds=5.0,
        sync_timeout_seconds=5.0,
        update_timeout_seconds=5.0,
        ready_timeout_seconds=1.0,
        failure_threshold=3,
    )
