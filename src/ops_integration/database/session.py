"""Engine and session lifecycle for the API process and the CLI worker."""

import os
import logging
from typing import Any, AsyncGenerator, Dict, Optional
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from .migrations import run_migrations

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./ops_integration.db"

# Hosted Postgres URLs are usually handed out without an async driver
_ASYNC_DRIVER_PREFIXES = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

# Process-wide engine used by the FastAPI app
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_database_url() -> str:
    """DATABASE_URL with an async driver, or a local SQLite file when unset."""
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        return DEFAULT_DATABASE_URL
    for prefix, replacement in _ASYNC_DRIVER_PREFIXES:
        if db_url.startswith(prefix):
            return replacement + db_url[len(prefix):]
    return db_url


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async engine for the outbox and payment record store.

    SQLite (including ``:memory:``) gets a single shared connection so
    every session sees the same database; other backends get a sized pool.

    Args:
        database_url: Connection URL. Defaults to get_database_url().
        echo: Log every SQL statement.
        pool_size: Pooled connections for server databases.
        max_overflow: Extra connections allowed beyond pool_size.
    """
    url = database_url or get_database_url()

    options: Dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        options.update(connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        options.update(pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)
    return sa_create_async_engine(url, **options)


def _build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Objects stay readable after commit; handlers hand them to notifiers
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


def get_async_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """Factory bound to ``engine``, or the process-wide one set up by init_db().

    Raises:
        RuntimeError: No engine given and init_db() has not run.
    """
    if engine is not None:
        return _build_session_factory(engine)
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def init_db(
    database_url: Optional[str] = None,
    echo: bool = False,
    migrate: bool = True,
) -> AsyncEngine:
    """Open the process-wide engine and, unless ``migrate`` is False, bring the schema up to date."""
    global _engine, _session_factory

    _engine = create_async_engine(database_url, echo=echo)
    _session_factory = _build_session_factory(_engine)
    logger.info(f"Database engine opened ({_engine.url.get_backend_name()})")

    if migrate:
        applied = await run_migrations(_engine)
        if applied:
            logger.info(f"Applied schema patches: {', '.join(applied)}")
    return _engine


async def close_db() -> None:
    """Dispose of the process-wide engine, if one is open."""
    global _engine, _session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database engine closed")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope: commit on success, roll back on any exception.

    Example:
        async with session_scope(factory) as db:
            await OutboxRepository(db).insert("quote.sent", {...})
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one request-scoped session, committed when the handler returns."""
    async with session_scope(get_async_session_factory()) as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the process-wide session factory.

    The dispatcher opens one session per claimed row, so it needs the
    factory rather than a single request-scoped session.
    """
    return get_async_session_factory()
