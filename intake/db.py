"""SQLAlchemy 2.x async database setup.

The engine (and with it the connection pool) is created once per application
by ``create_app()`` and stored on ``app.state``. Request handlers never touch
it directly; they receive a session through :func:`get_session`.
"""

from __future__ import annotations

from typing import AsyncIterator

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from .config import DatabaseSettings
from .models import Base


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory_sqlite(url: str) -> bool:
    return _is_sqlite(url) and (":memory:" in url or url.rstrip("/").endswith(":"))


def create_engine_from_settings(config: DatabaseSettings) -> AsyncEngine:
    """Build the application engine with a bounded, fixed-size pool.

    Callers beyond ``pool_size + max_overflow`` wait up to ``pool_timeout``
    seconds for a connection instead of failing immediately.
    """
    kwargs: dict = {"echo": config.echo, "future": True}

    if _is_memory_sqlite(config.url):
        kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
    elif not _is_sqlite(config.url):
        kwargs.update(
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_pre_ping=True,
        )

    engine = create_async_engine(config.url, **kwargs)

    if _is_sqlite(config.url):
        # SQLite doesn't enforce FK by default; audit_log relies on ON DELETE CASCADE
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing tables (existing tables are left untouched)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """FastAPI-friendly async session dependency.

    The session (and its pooled connection) is released when the request
    finishes, whichever way the handler exits.

    Usage:
        async def endpoint(session: AsyncSession = Depends(get_session)):
            ...
    """

    session_maker: async_sessionmaker[AsyncSession] = request.app.state.session_maker
    async with session_maker() as session:
        yield session
