"""Database package with SQLAlchemy models and session helpers."""

from .session import (
    close_db,
    get_engine,
    get_session_factory,
    init_db,
    reset_database_state,
    transaction,
)

__all__ = [
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "reset_database_state",
    "transaction",
]
