"""Database engine and session management.

PostgreSQL (asyncpg) is the production store. SQLite (aiosqlite) is
supported for local development and the test suite; there every
transaction is opened with ``BEGIN IMMEDIATE`` so that concurrent
sessions serialize on the write lock instead of deadlocking.

The engine is created lazily so it binds to the event loop that first
uses it (the API's, the bot's, or a test's).
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from kitakita.config import settings

_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def _engine_options(url: str) -> dict[str, Any]:
    if _is_sqlite(url):
        return {
            "poolclass": NullPool,
            "connect_args": {"timeout": settings.sqlite_busy_timeout_seconds},
        }
    if settings.testing:
        # Pooled connections cannot cross test event loops
        return {"poolclass": NullPool}
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,
        "pool_timeout": 10,
    }


def _enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    """Take the SQLite write lock at BEGIN instead of at the first write."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable pysqlite's own BEGIN handling; emitted below instead
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine() -> AsyncEngine:
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        url = settings.database_url
        _engine = create_async_engine(url, **_engine_options(url))
        if _is_sqlite(url):
            _enable_sqlite_immediate_transactions(_engine)
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the session maker."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_maker


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Session for work outside a request: bot updates, jobs, scripts."""
    async with get_session_maker()() as session:
        yield session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with get_db_session() as session:
        yield session


async def check_database_connection() -> bool:
    """Return True when ``SELECT 1`` succeeds."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except Exception:
        return False


async def close_database() -> None:
    """Dispose the engine and forget the session maker."""
    global _engine, _async_session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None


async def reset_database() -> None:
    """Drop the engine so the next test builds one on its own event loop."""
    await close_database()
