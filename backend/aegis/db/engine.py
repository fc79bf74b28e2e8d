"""Database engine, session factory, and base model.

Uses async SQLAlchemy with aiosqlite for local dev and asyncpg for production PostgreSQL.
"""

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from aegis.config import settings

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

_engine_kwargs: dict = dict(
    echo=settings.DEBUG,
    future=True,
)

if _is_sqlite:
    _engine_kwargs["connect_args"] = {"timeout": 30, "check_same_thread": False}
    from sqlalchemy.pool import NullPool
    _engine_kwargs["poolclass"] = NullPool
else:
    _engine_kwargs["pool_size"] = 5
    _engine_kwargs["max_overflow"] = 10
    _engine_kwargs["pool_pre_ping"] = True

engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs)


def configure_sqlite(sync_engine) -> None:
    """WAL, foreign keys and working SAVEPOINTs for SQLite connections.

    The driver's own transaction handling is switched off so that
    SQLAlchemy emits BEGIN itself and nested transactions behave.
    """

    @event.listens_for(sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()
        dbapi_conn.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


if _is_sqlite:
    configure_sqlite(engine.sync_engine)


async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency that yields an async DB session.

    The session is committed when the route returns normally and rolled
    back when it raises, so a route is one unit of work by default.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create missing tables (for dev / first-run). In production use Alembic."""
    from sqlalchemy import inspect as sa_inspect

    from aegis.db import models as _models  # noqa: F401

    async with engine.begin() as conn:
        def _create_missing(sync_conn):
            inspector = sa_inspect(sync_conn)
            existing = set(inspector.get_table_names())
            tables_to_create = [
                t for t in Base.metadata.sorted_tables
                if t.name not in existing
            ]
            Base.metadata.create_all(sync_conn, tables=tables_to_create)

        await conn.run_sync(_create_missing)


async def dispose_db() -> None:
    """Dispose of the engine on shutdown."""
    await engine.dispose()
