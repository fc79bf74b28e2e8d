"""Alembic environment for the Aegis schema.

The database URL always comes from ``AEGIS_DATABASE_URL`` via
``aegis.config``; the one in alembic.ini is a placeholder for tools that
read the ini file directly.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from aegis.config import settings
from aegis.db import models  # noqa: F401  registers every table on Base.metadata
from aegis.db.engine import Base

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name, disable_existing_loggers=False)

DATABASE_URL = settings.DATABASE_URL
# SQLite cannot ALTER most columns; batch mode rebuilds the table instead
BATCH = DATABASE_URL.startswith("sqlite")


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=Base.metadata,
        render_as_batch=BATCH,
        compare_type=True,
        **kwargs,
    )


def _migrate() -> None:
    with context.begin_transaction():
        context.run_migrations()


def run_offline() -> None:
    """Emit the migration SQL without connecting."""
    _configure(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    _migrate()


def _run_on(connection: Connection) -> None:
    _configure(connection=connection)
    _migrate()


async def run_online() -> None:
    engine = create_async_engine(DATABASE_URL, poolclass=NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_on)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    asyncio.run(run_online())
