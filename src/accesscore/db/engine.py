"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection pooling,
AsyncSession for per-request database access, dependency injection via FastAPI.

PostgreSQL (asyncpg) is the production store. SQLite (aiosqlite) is used for
tests and local runs; for it we switch on foreign keys and take over BEGIN
from the driver so SAVEPOINTs work. Transactions start with BEGIN IMMEDIATE:
writers queue on the database lock up front instead of failing with
"database is locked" when two read-then-write transactions overlap. The
insert-or-fetch bootstrap in the folder service relies on all three.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from accesscore.config import settings


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine with backend-appropriate pooling."""
    if not database_url.startswith("sqlite"):
        # Connection pool: min 5, max 20 connections.
        return create_async_engine(
            database_url, echo=echo, pool_size=5, max_overflow=15
        )

    kwargs = {}
    if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+aiosqlite://"):
        # One shared connection, otherwise every checkout sees an empty DB.
        kwargs["poolclass"] = StaticPool
    engine = create_async_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30},
        **kwargs,
    )
    _configure_sqlite(engine)
    return engine


def _configure_sqlite(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Driver-level BEGIN is disabled; the "begin" hook below emits it.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory — each request gets its own session.
async_session_factory = build_session_factory(engine)


async def get_db() -> AsyncSession:
    """FastAPI dependency — yields a session per request, auto-closes."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
