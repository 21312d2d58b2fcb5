"""PostgreSQL database module."""

from .client import (
    SessionScope,
    build_session_factory,
    build_session_scope,
    close_db,
    get_async_engine,
    get_db_session,
    init_db,
)

__all__ = [
    "SessionScope",
    "build_session_factory",
    "build_session_scope",
    "close_db",
    "get_async_engine",
    "get_db_session",
    "init_db",
]
