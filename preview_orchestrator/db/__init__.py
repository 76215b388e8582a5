"""Database layer."""

from preview_orchestrator.db.session import (
    close_db,
    get_async_session,
    get_engine,
    get_session_dependency,
    init_db,
)

__all__ = [
    "close_db",
    "get_async_session",
    "get_engine",
    "get_session_dependency",
    "init_db",
]
