"""
Async engine and session plumbing for the remote store database.

The server (and ``scripts/retry_failed.py``) share one process-wide engine
built from ``database_url``. Work on it goes through ``session_scope``,
which commits on a clean exit and rolls back when the body raises. The
device cache opens its own engine (see ``kv.SqlKeyValueStore``).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from secretary.core.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for the ``recordings`` and ``user_profiles`` tables."""


# Process-wide singletons; tests call ``reset_engine`` between apps.
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine(url: str | None = None) -> AsyncEngine:
    """Return the shared engine, building it from *url* (or settings) on first use."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(url or get_settings().database_url, echo=False)
    return _engine


def get_session_factory(
    engine: AsyncEngine | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Return the shared session factory bound to *engine* (or the shared engine)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            engine or get_engine(),
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """One unit of work: commit on success, roll back and re-raise on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the remote store tables that do not exist yet."""
    # Importing the ORM module registers its tables on Base.metadata.
    from secretary.services.storage import models_db  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the shared engine and forget both singletons."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def reset_engine() -> None:
    """Forget the singletons without disposing anything."""
    global _engine, _session_factory
    _engine = None
    _session_factory = None


def ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-based SQLite URL."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
