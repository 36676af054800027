"""
Local Cache Store: the device's durable copy of a user's recordings.

Each user's recordings live in one JSON document keyed ``recordings:<user>``
together with the time it was written. Deleted ids are kept in a separate
tombstone list so an offline sweep never resurrects them.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta

from pydantic import ValidationError

from secretary.core.models import Provenance, Recording, UserProfile
from secretary.core.utils import Clock, ensure_utc, utc_now
from secretary.services.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)


def _recordings_key(user_id: str) -> str:
    return f"recordings:{user_id}"


def _tombstones_key(user_id: str) -> str:
    return f"tombstones:{user_id}"


def _profile_key(user_id: str) -> str:
    return f"profile:{user_id}"


class LocalCacheStore:
    """Per-user recording cache on top of a ``KeyValueStore``.

    Args:
        store: Underlying key-value persistence.
        ttl_seconds: Age after which remote-only entries are dropped on load.
            Entries with a local copy are always kept. ``0`` disables expiry.
        clock: Time source (injected in tests).
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: float = 86_400.0,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    # ------------------------------------------------------------------
    # Recordings
    # ------------------------------------------------------------------

    async def _read(self, user_id: str) -> tuple[datetime | None, list[Recording]]:
        raw = await self._store.get(_recordings_key(user_id))
        if raw is None:
            return None, []
        try:
            document = json.loads(raw)
            cached_at = ensure_utc(datetime.fromisoformat(document["cached_at"]))
            recordings = [Recording.model_validate(item) for item in document["recordings"]]
        except (ValueError, KeyError, TypeError, ValidationError) as exc:
            logger.warning("Discarding unreadable recording cache for %s: %s", user_id, exc)
            return None, []
        return cached_at, recordings

    async def _write(self, user_id: str, recordings: list[Recording]) -> None:
        document = {
            "cached_at": self._clock().isoformat(),
            "recordings": [r.model_dump(mode="json") for r in recordings],
        }
        await self._store.set(_recordings_key(user_id), json.dumps(document))

    async def load(self, user_id: str) -> list[Recording]:
        """Return the cached recordings for *user_id* (possibly empty).

        Expired remote-only entries are dropped from the stored document too,
        so a later write does not make them fresh again.
        """
        async with self._lock(user_id):
            cached_at, recordings = await self._read(user_id)
            if cached_at is None or not self._ttl:
                return recordings
            if self._clock() - cached_at <= self._ttl:
                return recordings
            kept = [r for r in recordings if r.provenance != Provenance.remote]
            if len(kept) != len(recordings):
                logger.info(
                    "Cache for %s expired; dropped %d remote-only entries",
                    user_id,
                    len(recordings) - len(kept),
                )
                await self._write(user_id, kept)
            return kept

    async def save(self, user_id: str, recordings: list[Recording]) -> None:
        """Replace the cached recordings for *user_id*."""
        async with self._lock(user_id):
            await self._write(user_id, recordings)

    async def get(self, user_id: str, recording_id: str) -> Recording | None:
        for recording in await self.load(user_id):
            if recording.id == recording_id:
                return recording
        return None

    async def upsert(self, user_id: str, recording: Recording) -> None:
        """Insert or replace one recording, keeping the other entries."""
        async with self._lock(user_id):
            _, recordings = await self._read(user_id)
            for index, existing in enumerate(recordings):
                if existing.id == recording.id:
                    recordings[index] = recording
                    break
            else:
                recordings.append(recording)
            await self._write(user_id, recordings)

    async def remove(self, user_id: str, recording_id: str) -> None:
        async with self._lock(user_id):
            _, recordings = await self._read(user_id)
            remaining = [r for r in recordings if r.id != recording_id]
            if len(remaining) != len(recordings):
                await self._write(user_id, remaining)

    async def clear(self, user_id: str) -> None:
        """Forget everything cached for *user_id*."""
        async with self._lock(user_id):
            await self._store.remove(_recordings_key(user_id))
            await self._store.remove(_tombstones_key(user_id))
            await self._store.remove(_profile_key(user_id))

    # ------------------------------------------------------------------
    # Tombstones
    # ------------------------------------------------------------------

    async def tombstones(self, user_id: str) -> set[str]:
        raw = await self._store.get(_tombstones_key(user_id))
        if raw is None:
            return set()
        try:
            return set(json.loads(raw))
        except (ValueError, TypeError) as exc:
            logger.warning("Discarding unreadable tombstones for %s: %s", user_id, exc)
            return set()

    async def add_tombstone(self, user_id: str, recording_id: str) -> None:
        """Mark *recording_id* as deleted by the user."""
        async with self._lock(user_id):
            ids = await self.tombstones(user_id)
            ids.add(recording_id)
            await self._store.set(_tombstones_key(user_id), json.dumps(sorted(ids)))

    # ------------------------------------------------------------------
    # User profile
    # ------------------------------------------------------------------

    async def load_profile(self, user_id: str) -> UserProfile | None:
        raw = await self._store.get(_profile_key(user_id))
        if raw is None:
            return None
        try:
            return UserProfile.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Discarding unreadable profile cache for %s: %s", user_id, exc)
            return None

    async def save_profile(self, profile: UserProfile) -> None:
        await self._store.set(_profile_key(profile.user_id), profile.model_dump_json())
