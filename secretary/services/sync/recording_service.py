"""
Recording Service: the device's merged, ordered view of a user's recordings.

Combines the Local Cache Store with the remote set on start-up, then keeps
the view current from three inputs: pushed or polled remote changes (via
the Change Propagation Layer) and local captures (via the Offline Enqueue
Path). Every change to the view is written back to the cache and announced
to listeners.

Merge rules when both a local and a remote copy exist:
    - pipeline fields come from the remote copy only if its
      ``last_state_change_at`` is strictly newer (live feed updates also
      win ties);
    - text fields take the remote value unless it is null, so a non-null
      transcript or title is never cleared;
    - device-only fields (``local_audio_path``, capture metadata) stay local;
    - the result is marked ``provenance = both``.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from secretary.core.config import Settings, get_settings
from secretary.core.exceptions import ConnectivityError
from secretary.core.models import (
    ChangeSource,
    ChangeType,
    Provenance,
    Recording,
    RecordingChange,
    RecordingEvent,
    RecordingEventType,
    RemoteRecording,
)
from secretary.core.utils import KeyedLocks
from secretary.services.remote.base import RemoteStore
from secretary.services.storage.cache import LocalCacheStore
from secretary.services.sync.propagation import ChangePropagationLayer

logger = logging.getLogger(__name__)

RecordingListener = Callable[[RecordingEvent], Awaitable[None]]

PIPELINE_FIELDS = (
    "state",
    "state_step",
    "last_error",
    "retry_count",
    "next_eligible_retry_at",
    "upload_progress_percent",
    "last_state_change_at",
)
TEXT_FIELDS = (
    "audio_location",
    "transcript",
    "corrected_transcript",
    "title",
    "transcription_job_id",
)


def _remote_is_newer(local: Recording, remote: Recording, remote_wins_ties: bool) -> bool:
    if remote.last_state_change_at is None:
        return False
    if local.last_state_change_at is None:
        return True
    if remote.last_state_change_at == local.last_state_change_at:
        return remote_wins_ties
    return remote.last_state_change_at > local.last_state_change_at


def merge_recordings(local: Recording, remote: Recording, remote_wins_ties: bool = False) -> Recording:
    """Combine the local and remote copies of one recording."""
    updates: dict = {"provenance": Provenance.both}
    if _remote_is_newer(local, remote, remote_wins_ties):
        for name in PIPELINE_FIELDS:
            updates[name] = getattr(remote, name)
    for name in TEXT_FIELDS:
        value = getattr(remote, name)
        if value is not None:
            updates[name] = value
    return local.model_copy(update=updates)


def _sort_key(recording: Recording) -> tuple:
    return (recording.captured_at, recording.id)


class RecordingService:
    """Merged recording list for one user with change notifications.

    Args:
        store: Remote store client for the user.
        cache: Device cache.
        locks: Per-recording locks shared with the Offline Enqueue Path.
        settings: Timeouts and propagation configuration.
        enable_propagation: Start the push/poll layer after ``initialize``.
    """

    def __init__(
        self,
        store: RemoteStore,
        cache: LocalCacheStore,
        locks: KeyedLocks | None = None,
        settings: Settings | None = None,
        enable_propagation: bool = True,
    ) -> None:
        self._store = store
        self._cache = cache
        self._locks = locks or KeyedLocks()
        self._settings = settings or get_settings()
        self._items: dict[str, Recording] = {}
        self._order: list[str] = []
        self._tombstones: set[str] = set()
        self._listeners: list[RecordingListener] = []
        self._initialized = False
        self.propagation: ChangePropagationLayer | None = (
            ChangePropagationLayer(store, self.apply_change, self._settings)
            if enable_propagation
            else None
        )

    @property
    def user_id(self) -> str:
        return self._store.user_id

    @property
    def recordings(self) -> list[Recording]:
        """Snapshot of the view, newest capture first."""
        return [self._items[recording_id] for recording_id in self._order]

    def get(self, recording_id: str) -> Recording | None:
        return self._items.get(recording_id)

    def subscribe(self, listener: RecordingListener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _emit(self, event: RecordingEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Recording listener failed on %s event", event.type)

    def _reorder(self) -> None:
        self._order = [
            r.id for r in sorted(self._items.values(), key=_sort_key, reverse=True)
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _fetch_remote(self) -> list[RemoteRecording] | None:
        try:
            return await asyncio.wait_for(
                self._store.list_recordings(), timeout=self._settings.remote_timeout_seconds
            )
        except (ConnectivityError, TimeoutError) as exc:
            logger.warning("Remote recordings unavailable, using cache only: %s", exc)
            return None

    async def _retry_remote_delete(self, recording_id: str) -> None:
        try:
            await asyncio.wait_for(
                self._store.delete_recording(recording_id),
                timeout=self._settings.remote_timeout_seconds,
            )
            logger.info("Pending remote delete of %s applied", recording_id)
        except ConnectivityError as exc:
            logger.warning("Pending remote delete of %s failed: %s", recording_id, exc.detail)
        except TimeoutError:
            logger.warning("Pending remote delete of %s timed out", recording_id)

    async def _load_cache(self) -> None:
        """Add cached recordings the view does not hold yet.

        Entries already in the view were written through ``apply_change``
        and are at least as fresh as their cached copy.
        """
        deleted = []
        for recording in await self._cache.load(self.user_id):
            if recording.id in self._tombstones:
                deleted.append(recording.id)
                continue
            self._items.setdefault(recording.id, recording)
        self._reorder()
        for recording_id in deleted:
            await self._cache.remove(self.user_id, recording_id)

    async def _merge_remote_set(
        self, remote: list[RemoteRecording], remote_wins_ties: bool, known: set[str]
    ) -> None:
        """Fold the full remote set into the view, one id at a time.

        Every id is merged under its lock against the live view, so a
        capture or pushed change that lands meanwhile is merged rather than
        overwritten. Synced copies in *known* (the ids held before the fetch
        started) that the remote set lacks were deleted remotely and are
        dropped.
        """
        rows = [row for row in remote if row.user_id == self.user_id]
        for row in rows:
            if row.id in self._tombstones:
                await self._retry_remote_delete(row.id)

        remote_ids = set()
        for row in rows:
            async with self._locks.hold(row.id):
                if row.id in self._tombstones:
                    continue
                remote_ids.add(row.id)
                incoming = Recording.from_remote(row)
                existing = self._items.get(row.id)
                merged = (
                    merge_recordings(existing, incoming, remote_wins_ties)
                    if existing is not None
                    else incoming
                )
                if merged == existing:
                    continue
                self._items[row.id] = merged
                if existing is None:
                    self._reorder()
                await self._cache.upsert(self.user_id, merged)

        for recording_id in known - remote_ids:
            async with self._locks.hold(recording_id):
                current = self._items.get(recording_id)
                if current is not None and current.provenance != Provenance.local:
                    await self._remove(recording_id)

    async def initialize(self, user_id: str | None = None) -> list[Recording]:
        """Load the cache, merge the remote set when reachable and start propagation.

        Emits one ``initial`` event with the full ordered list. Recordings
        captured while the remote fetch is in flight stay in the view and
        in the cache.

        Raises:
            ValueError: If *user_id* differs from the store's user.
        """
        if user_id is not None and user_id != self.user_id:
            raise ValueError(f"Store acts for {self.user_id}, not {user_id}")
        self._tombstones |= await self._cache.tombstones(self.user_id)
        known = set(self._items) | {r.id for r in await self._cache.load(self.user_id)}

        remote = await self._fetch_remote()
        await self._load_cache()
        if remote is not None:
            await self._merge_remote_set(remote, remote_wins_ties=False, known=known)

        self._initialized = True
        logger.info(
            "Recording service initialized for %s: %d recordings (%s)",
            self.user_id,
            len(self._items),
            "merged with remote" if remote is not None else "cache only",
        )
        await self._emit(RecordingEvent(type=RecordingEventType.initial, recordings=self.recordings))
        if self.propagation is not None:
            self.propagation.start()
        return self.recordings

    async def refresh(self) -> list[Recording]:
        """Re-merge the full remote set into the view and re-announce it."""
        known = set(self._items)
        remote = await self._fetch_remote()
        if remote is None:
            return self.recordings
        await self._merge_remote_set(remote, remote_wins_ties=True, known=known)
        await self._emit(RecordingEvent(type=RecordingEventType.initial, recordings=self.recordings))
        return self.recordings

    async def close(self) -> None:
        """Stop propagation and drop listeners."""
        if self.propagation is not None:
            await self.propagation.stop()
        self._listeners.clear()
        self._initialized = False

    # ------------------------------------------------------------------
    # Changes
    # ------------------------------------------------------------------

    async def apply_change(self, change: RecordingChange) -> None:
        """Fold one change into the view (entry point for propagation and enqueue)."""
        if change.change_type is ChangeType.delete:
            async with self._locks.hold(change.recording_id):
                removed = await self._remove(change.recording_id)
            if removed:
                await self._emit_delete(change.recording_id)
            return

        async with self._locks.hold(change.recording_id):
            incoming = change.recording
            if incoming is None or incoming.user_id != self.user_id:
                return
            if incoming.id in self._tombstones:
                logger.debug("Ignoring change for deleted recording %s", incoming.id)
                return

            existing = self._items.get(incoming.id)
            if change.source is ChangeSource.local or existing is None:
                merged = incoming
            else:
                merged = merge_recordings(existing, incoming, remote_wins_ties=True)
            if merged == existing:
                return

            self._items[merged.id] = merged
            await self._cache.upsert(self.user_id, merged)
            if existing is None:
                self._reorder()
                event_type = RecordingEventType.add
            else:
                event_type = RecordingEventType.update
        await self._emit(RecordingEvent(type=event_type, recording_id=merged.id, recording=merged))

    async def _remove(self, recording_id: str) -> bool:
        if recording_id not in self._items:
            return False
        del self._items[recording_id]
        self._order.remove(recording_id)
        await self._cache.remove(self.user_id, recording_id)
        return True

    async def _emit_delete(self, recording_id: str) -> None:
        await self._emit(RecordingEvent(type=RecordingEventType.delete, recording_id=recording_id))

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def retry_recording(self, recording_id: str) -> bool:
        """Manually retry a failed recording.

        Returns:
            ``False`` if the authority rejected the reset.

        Raises:
            ConnectivityError: If the remote store is unreachable.
        """
        accepted = await self._store.reset_processing_state(recording_id)
        if not accepted:
            logger.warning("Manual retry of %s rejected", recording_id)
            return False
        row = await self._store.get_recording(recording_id)
        if row is not None:
            await self.apply_change(
                RecordingChange(
                    change_type=ChangeType.update,
                    recording_id=recording_id,
                    recording=Recording.from_remote(row),
                    source=ChangeSource.push,
                )
            )
        logger.info("Recording %s queued for manual retry", recording_id)
        return True

    async def delete_recording(self, recording_id: str) -> bool:
        """Delete a recording everywhere.

        The id is tombstoned first so neither the offline sweep nor a
        later remote fetch brings it back. The remote delete is retried on
        the next initialize/refresh if the store is unreachable now.

        Returns:
            ``True`` if the recording was known locally or remotely.
        """
        async with self._locks.hold(recording_id):
            recording = self._items.get(recording_id)
            self._tombstones.add(recording_id)
            await self._cache.add_tombstone(self.user_id, recording_id)
            removed = await self._remove(recording_id)
        if removed:
            await self._emit_delete(recording_id)

        if recording is not None and recording.local_audio_path:
            Path(recording.local_audio_path).unlink(missing_ok=True)

        try:
            deleted_remotely = await self._store.delete_recording(recording_id)
        except ConnectivityError as exc:
            logger.warning("Remote delete of %s deferred: %s", recording_id, exc.detail)
            deleted_remotely = False
        logger.info("Recording %s deleted", recording_id)
        return recording is not None or deleted_remotely
