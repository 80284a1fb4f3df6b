"""Alembic environment for the marketplace escrow schema.

The URL comes from ``alembic.ini`` when set there, otherwise from
DATABASE_URL via Settings. Online runs go through ``build_engine`` so the
SQLite pragmas and PostgreSQL pool options match the running service; the
partial unique indexes (one active payment per request) are compared on
autogenerate like any other index.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection

from marketplace_escrow.config import get_settings
from marketplace_escrow.infrastructure.database.engine import build_engine
from marketplace_escrow.infrastructure.database.orm_models import Base

config = context.config
settings = get_settings()
target_metadata = Base.metadata

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or settings.database_url


def _configure(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


async def _run_online() -> None:
    engine = build_engine(_database_url(), settings)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_configure)
    finally:
        await engine.dispose()


def run_offline() -> None:
    """Emit SQL to stdout instead of touching a database."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    asyncio.run(_run_online())
