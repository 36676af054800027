"""
Device key-value persistence behind the Local Cache Store.

``SqlKeyValueStore`` keeps string values in a single SQLite table on its
own engine; ``MemoryKeyValueStore`` is the in-process variant used in tests.
"""

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime

from sqlalchemy import String, Text, delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from secretary.services.storage.database import session_scope

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Async string key-value store."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value for *key*, or ``None``."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store *value* under *key*, replacing any previous value."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete *key* if present."""

    async def close(self) -> None:  # noqa: B027
        """Release resources. Default: no-op."""


class MemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed store for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


class CacheBase(DeclarativeBase):
    """Declarative base for the device cache database (separate from the remote schema)."""


class CacheEntry(CacheBase):
    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))


class SqlKeyValueStore(KeyValueStore):
    """SQLite-backed device store.

    Args:
        url: Async SQLAlchemy URL, e.g. ``sqlite+aiosqlite:///data/device_cache.db``.
        engine: Optional pre-built engine (tests pass an in-memory one).
    """

    def __init__(self, url: str | None = None, engine: AsyncEngine | None = None) -> None:
        if engine is None and url is None:
            raise ValueError("SqlKeyValueStore needs a url or an engine")
        self._engine = engine or create_async_engine(url, echo=False)
        self._owns_engine = engine is None
        self._factory = async_sessionmaker(self._engine, expire_on_commit=False)
        self._ready = False

    async def _ensure_schema(self) -> None:
        if not self._ready:
            async with self._engine.begin() as conn:
                await conn.run_sync(CacheBase.metadata.create_all)
            self._ready = True

    async def get(self, key: str) -> str | None:
        await self._ensure_schema()
        async with session_scope(self._factory) as session:
            result = await session.execute(select(CacheEntry.value).where(CacheEntry.key == key))
            return result.scalar_one_or_none()

    async def set(self, key: str, value: str) -> None:
        await self._ensure_schema()
        async with session_scope(self._factory) as session:
            entry = await session.get(CacheEntry, key)
            if entry is None:
                session.add(CacheEntry(key=key, value=value))
            else:
                entry.value = value
                entry.updated_at = datetime.now(UTC)

    async def remove(self, key: str) -> None:
        await self._ensure_schema()
        async with session_scope(self._factory) as session:
            await session.execute(delete(CacheEntry).where(CacheEntry.key == key))

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()
            logger.debug("Device cache engine disposed")
