"""Async SQLAlchemy 2.0 engine + session factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from bron_backend.core.logging import get_logger

logger = get_logger(__name__)


def _install_sqlite_listeners(engine: AsyncEngine, in_memory: bool) -> None:
    """Foreign keys on, WAL for file databases, write lock taken at BEGIN.

    pysqlite defers BEGIN until the first write, so two transactions that
    both read and then write can deadlock on the lock upgrade. Issuing
    BEGIN IMMEDIATE ourselves makes concurrent writers queue on busy_timeout.
    """
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with dialect-specific configuration.

    - PostgreSQL (asyncpg): connection pooling with pre-ping
    - SQLite (aiosqlite): immediate transactions, foreign keys, WAL
    """
    connect_args: dict = {}
    kwargs: dict = {
        "echo": echo,
        "pool_pre_ping": True,
    }

    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    elif database_url.startswith("postgresql"):
        kwargs["pool_size"] = 10
        kwargs["max_overflow"] = 20

    kwargs["connect_args"] = connect_args
    engine = create_async_engine(database_url, **kwargs)

    if is_sqlite:
        in_memory = database_url.rstrip("/").endswith(":memory:") or database_url in (
            "sqlite+aiosqlite://",
            "sqlite+aiosqlite:///",
        )
        _install_sqlite_listeners(engine, in_memory=in_memory)
        logger.debug("SQLite engine configured", data={"in_memory": in_memory})

    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
