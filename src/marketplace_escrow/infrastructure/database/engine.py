"""Async database engine and session management.

Provides:
    - build_engine: Create an async engine for a database URL.
    - session_scope: One unit of work; api.deps wraps it per request and
      jobs use it directly.
    - init_db / close_db: Lifecycle hooks for FastAPI's lifespan.

The scope commits on success and rolls back on error. Domain events
recorded during the unit of work reach the notification dispatcher only
after the commit succeeded.

SQLite (development and tests) is opened in autocommit mode at the driver
level and every transaction starts with ``BEGIN IMMEDIATE``: the write lock
is taken up front and concurrent writers wait on the busy timeout instead of
failing mid-transaction. Conditional updates are therefore serialised there
exactly as they are on PostgreSQL.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from marketplace_escrow.config import get_settings
from marketplace_escrow.infrastructure.notifications import discard_events, publish_events
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from marketplace_escrow.config import Settings

logger = get_logger(__name__)

# Module-level singletons (initialized in init_db)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ANN001
        # Let SQLAlchemy, not pysqlite, decide when transactions begin.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """Create an async engine configured for the URL's backend."""
    settings = settings or get_settings()
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=settings.db_echo_sql,
            connect_args={"timeout": settings.sqlite_busy_timeout_seconds},
        )
        _enable_sqlite_immediate_transactions(engine)
    else:
        engine = create_async_engine(
            database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_pre_ping=True,
            echo=settings.db_echo_sql,
        )
    logger.info("database.engine_created", backend=engine.dialect.name)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def _get_engine() -> AsyncEngine:
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_url)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(_get_engine())
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """One unit of work outside FastAPI (scheduler, CLI, tests)."""
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            discard_events(session)
            raise
        await publish_events(session)


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Initialize the database engine and create tables if they don't exist.

    Called during FastAPI's lifespan startup. In production, use Alembic
    migrations instead of create_all.
    """
    from marketplace_escrow.infrastructure.database.orm_models import Base

    engine = engine or _get_engine()
    settings = get_settings()

    if settings.is_development or engine.dialect.name == "sqlite":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def close_db() -> None:
    """Dispose of the database engine. Called during FastAPI's lifespan shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
