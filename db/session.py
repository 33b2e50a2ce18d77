"""Database session and engine management."""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from loguru import logger
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

_ENGINE: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./auctions.db")


def _engine_echo() -> bool:
    return os.getenv("DATABASE_ECHO", "0") in {"1", "true", "True"}


def _busy_timeout_seconds() -> float:
    try:
        return float(os.getenv("DATABASE_BUSY_TIMEOUT", "15"))
    except ValueError:
        return 15.0


def _engine_kwargs(database_url: str) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        # Overlapping conditional writes wait on the file lock instead of failing fast
        return {"connect_args": {"timeout": _busy_timeout_seconds()}}
    return {"pool_pre_ping": True}


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine() -> AsyncEngine:
    global _ENGINE
    if _ENGINE is None:
        database_url = _database_url()
        logger.info("Initializing database engine", url=database_url)
        _ENGINE = create_async_engine(
            database_url,
            echo=_engine_echo(),
            future=True,
            **_engine_kwargs(database_url),
        )
        if _ENGINE.dialect.name == "sqlite":
            event.listen(_ENGINE.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return _ENGINE


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the lazily initialised session factory."""

    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _async_session_factory


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a short-lived session that commits on success and rolls back on error."""

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create database schema if it does not yet exist."""

    engine = get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the database engine and close open connections."""

    global _ENGINE, _async_session_factory
    engine = _ENGINE
    _async_session_factory = None
    if engine is not None:
        await engine.dispose()
        _ENGINE = None


async def reset_database_state() -> None:
    """Utility for tests to reset engine/session."""

    await close_db()
    # Engine and session factory are re-created lazily on next use
    await asyncio.sleep(0)
