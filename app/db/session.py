"""
Database Session Management - Async SQLAlchemy session factory.

Provides separate read and write database connections.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.config import settings
from app.observability.tracing import instrument_sqlalchemy


# Global engine instances
_write_engine: AsyncEngine | None = None
_read_engine: AsyncEngine | None = None

# Session factories
_write_session_factory: async_sessionmaker[AsyncSession] | None = None
_read_session_factory: async_sessionmaker[AsyncSession] | None = None

# Seconds a SQLite writer waits on the database lock before failing
SQLITE_BUSY_TIMEOUT = 30


def engine_options(url: str) -> dict[str, Any]:
    """Engine keyword arguments for a database URL."""
    if url.startswith("sqlite"):
        # One connection per checkout; writers serialize on the file lock.
        return {
            "poolclass": NullPool,
            "connect_args": {"timeout": SQLITE_BUSY_TIMEOUT},
            "echo": settings.log_level == "DEBUG",
        }
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_recycle": settings.database_pool_recycle,
        "echo": settings.log_level == "DEBUG",
    }


def configure_sqlite_engine(engine: AsyncEngine) -> None:
    """
    Make SQLite transactions take the write lock up front.

    pysqlite defers BEGIN until the first DML statement, so two writers can
    deadlock while upgrading their locks. BEGIN IMMEDIATE makes them queue on
    the busy timeout instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_ledger_engine(url: str) -> AsyncEngine:
    """Create an engine for `url`, applying SQLite locking where needed."""
    engine = create_async_engine(url, **engine_options(url))
    if url.startswith("sqlite"):
        configure_sqlite_engine(engine)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the options every ledger session uses."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def get_write_engine() -> AsyncEngine:
    """Get or create the write database engine (primary)."""
    global _write_engine
    if _write_engine is None:
        _write_engine = create_ledger_engine(settings.database_url)
        instrument_sqlalchemy(_write_engine)
    return _write_engine


def get_read_engine() -> AsyncEngine:
    """Get or create the read database engine (replica)."""
    global _read_engine
    if _read_engine is None:
        _read_engine = create_ledger_engine(settings.read_database_url)
        instrument_sqlalchemy(_read_engine)
    return _read_engine


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the write session factory."""
    global _write_session_factory
    if _write_session_factory is None:
        _write_session_factory = create_session_factory(get_write_engine())
    return _write_session_factory


def get_read_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the read session factory."""
    global _read_session_factory
    if _read_session_factory is None:
        _read_session_factory = create_session_factory(get_read_engine())
    return _read_session_factory


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Get an async database session for write operations.

    Usage:
        async with get_write_session() as session:
            await session.execute(...)
            await session.commit()
    """
    factory = get_write_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for write database session.

    Usage:
        @app.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    factory = get_write_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for read database session.

    Usage:
        @app.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_read_db)):
            ...
    """
    factory = get_read_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def close_engines() -> None:
    """Close all database engines (for graceful shutdown)."""
    global _write_engine, _read_engine, _write_session_factory, _read_session_factory

    if _write_engine:
        await _write_engine.dispose()
        _write_engine = None
        _write_session_factory = None

    if _read_engine:
        await _read_engine.dispose()
        _read_engine = None
        _read_session_factory = None
