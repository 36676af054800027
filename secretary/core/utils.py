"""Shared utility functions for Secretary."""

import asyncio
import re
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences wrapping JSON from LLM responses."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```\w*\n?", "", text)
        text = re.sub(r"\n?```$", "", text)
    return text.strip()


def utc_now() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class KeyedLocks:
    """Registry of one ``asyncio.Lock`` per key.

    Locks are created lazily and dropped again once nobody holds or waits
    on them, so the registry does not grow with every id ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def hold(self, key: str) -> "_KeyedLockContext":
        """Return an async context manager holding the lock for *key*."""
        return _KeyedLockContext(self, key)

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _release_ref(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]


class _KeyedLockContext:
    def __init__(self, registry: KeyedLocks, key: str) -> None:
        self._registry = registry
        self._key = key
        self._lock: asyncio.Lock | None = None

    async def __aenter__(self) -> None:
        self._lock = self._registry._acquire_ref(self._key)
        try:
            await self._lock.acquire()
        except BaseException:
            self._registry._release_ref(self._key)
            raise

    async def __aexit__(self, *exc_info) -> None:
        self._lock.release()
        self._registry._release_ref(self._key)
