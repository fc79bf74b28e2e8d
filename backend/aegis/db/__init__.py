"""Database package."""

from .engine import Base, get_db, init_db, dispose_db, engine, async_session_factory

__all__ = [
    "Base",
    "get_db",
    "init_db",
    "dispose_db",
    "engine",
    "async_session_factory",
]
