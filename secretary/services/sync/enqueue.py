"""
Offline Enqueue Path: capture recordings locally first, sync them later.

A captured recording is always written to the Local Cache Store before
anything touches the network. When online, a best-effort remote insert
follows; whatever did not make it is inserted by ``sweep()``, which runs
on connectivity regain and before every queue tick.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime

from secretary.core.exceptions import ConnectivityError, DuplicateRecordingError, SecretaryError
from secretary.core.models import (
    ChangeSource,
    ChangeType,
    ProcessingState,
    Provenance,
    Recording,
    RecordingChange,
    SweepResult,
)
from secretary.core.utils import Clock, KeyedLocks, utc_now
from secretary.services.remote.base import RemoteStore
from secretary.services.storage.cache import LocalCacheStore

logger = logging.getLogger(__name__)

ChangeListener = Callable[[RecordingChange], Awaitable[None]]


class OfflineEnqueuePath:
    """Local-first capture and remote catch-up for one user.

    Args:
        store: Remote store client.
        cache: Device cache.
        locks: Per-recording locks shared with the Recording Service.
        is_online: Callable reporting device connectivity.
        remote_timeout: Bound on each remote insert, in seconds.
        clock: Time source (injected in tests).
    """

    def __init__(
        self,
        store: RemoteStore,
        cache: LocalCacheStore,
        locks: KeyedLocks | None = None,
        is_online: Callable[[], bool] | None = None,
        remote_timeout: float = 15.0,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._cache = cache
        self._locks = locks or KeyedLocks()
        self._is_online = is_online or (lambda: True)
        self._remote_timeout = remote_timeout
        self._clock = clock
        self._listeners: list[ChangeListener] = []
        self._sweep_lock = asyncio.Lock()

    @property
    def user_id(self) -> str:
        return self._store.user_id

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a callback for locally produced changes."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def _notify(self, change_type: ChangeType, recording: Recording) -> None:
        change = RecordingChange(
            change_type=change_type,
            recording_id=recording.id,
            recording=recording,
            source=ChangeSource.local,
        )
        for listener in list(self._listeners):
            try:
                await listener(change)
            except Exception:
                logger.exception("Enqueue listener failed for %s", recording.id)

    async def _insert_remote(self, recording: Recording) -> bool:
        """Insert *recording* remotely. ``True`` if it now exists remotely.

        Raises:
            ConnectivityError: If the store is unreachable or the call times out.
        """
        try:
            await asyncio.wait_for(
                self._store.insert_recording(recording.to_remote()),
                timeout=self._remote_timeout,
            )
        except DuplicateRecordingError:
            logger.debug("Recording %s already present remotely", recording.id)
            return False
        except TimeoutError as exc:
            raise ConnectivityError("Remote insert timed out") from exc
        return True

    async def _mark_synced(self, recording_id: str) -> Recording | None:
        async with self._locks.hold(recording_id):
            current = await self._cache.get(self.user_id, recording_id)
            if current is None:
                return None
            synced = current.model_copy(update={"provenance": Provenance.both})
            await self._cache.upsert(self.user_id, synced)
            return synced

    async def capture(
        self,
        *,
        duration_seconds: float,
        local_audio_path: str | None,
        captured_at: datetime | None = None,
        recording_id: str | None = None,
    ) -> Recording:
        """Register a freshly captured recording.

        The cache write always happens and always happens first. The
        remote insert is skipped while offline and never raises.

        Returns:
            The recording as cached after the attempt (``provenance`` is
            ``both`` when the remote insert succeeded, ``local`` otherwise).
        """
        now = self._clock()
        recording = Recording(
            id=recording_id or str(uuid.uuid4()),
            user_id=self.user_id,
            captured_at=captured_at or now,
            duration_seconds=duration_seconds,
            local_audio_path=local_audio_path,
            state=ProcessingState.recorded,
            state_step=0,
            last_state_change_at=now,
            provenance=Provenance.local,
        )
        async with self._locks.hold(recording.id):
            await self._cache.upsert(self.user_id, recording)
        logger.info("Captured recording %s (%.1fs)", recording.id, duration_seconds)
        await self._notify(ChangeType.add, recording)

        if not self._is_online():
            logger.info("Offline; recording %s queued locally", recording.id)
            return recording
        try:
            await self._insert_remote(recording)
        except SecretaryError as exc:
            logger.warning("Remote insert of %s deferred to sweep: %s", recording.id, exc.detail)
            return recording

        synced = await self._mark_synced(recording.id)
        if synced is None:
            return recording
        await self._notify(ChangeType.update, synced)
        return synced

    async def sweep(self) -> SweepResult:
        """Insert every cached local-only recording remotely.

        "Already present" counts as success. Tombstoned ids are skipped.
        Stops at the first connectivity failure.
        """
        result = SweepResult()
        if not self._is_online():
            return result
        async with self._sweep_lock:
            deleted = await self._cache.tombstones(self.user_id)
            pending = [
                r
                for r in await self._cache.load(self.user_id)
                if r.provenance == Provenance.local and r.id not in deleted
            ]
            result.scanned = len(pending)
            for recording in sorted(pending, key=lambda r: r.captured_at):
                try:
                    inserted = await self._insert_remote(recording)
                except ConnectivityError as exc:
                    result.errors += 1
                    logger.warning("Sweep interrupted: %s", exc.detail)
                    break
                except SecretaryError as exc:
                    result.errors += 1
                    logger.warning("Sweep could not insert %s: %s", recording.id, exc.detail)
                    continue
                if inserted:
                    result.inserted += 1
                else:
                    result.already_present += 1
                synced = await self._mark_synced(recording.id)
                if synced is not None:
                    await self._notify(ChangeType.update, synced)
        if result.scanned:
            logger.info(
                "Sweep for %s: %d scanned, %d inserted, %d already present, %d errors",
                self.user_id,
                result.scanned,
                result.inserted,
                result.already_present,
                result.errors,
            )
        return result
