"""
Sync engine: wires the device-side components together for one user.

    capture -> OfflineEnqueuePath -> LocalCacheStore (+ remote insert)
    QueueDriver -> transition RPC -> remote store -> change feed
    ChangePropagationLayer -> RecordingService -> listeners

A module-level singleton (``start_engine`` / ``stop_engine``) keeps at most
one running engine per process.
"""

import logging
from datetime import datetime

from secretary.core.config import Settings, get_settings
from secretary.core.exceptions import EngineAlreadyRunningError
from secretary.core.models import Recording
from secretary.core.utils import Clock, KeyedLocks, utc_now
from secretary.services.correction.corrector import TranscriptCorrector
from secretary.services.llm import create_llm
from secretary.services.processing.queue import QueueDriver
from secretary.services.processing.state_machine import BackoffPolicy
from secretary.services.remote import RemoteStore, create_remote_store
from secretary.services.remote.backend import RemoteBackend
from secretary.services.settings.user_settings import UserSettingsService
from secretary.services.storage.cache import LocalCacheStore
from secretary.services.storage.database import (
    ensure_sqlite_dir,
    get_engine,
    get_session_factory,
    init_db,
)
from secretary.services.storage.kv import KeyValueStore, SqlKeyValueStore
from secretary.services.storage.objects import BaseObjectStore, HttpObjectStore, LocalObjectStore
from secretary.services.sync.connectivity import ConnectivityMonitor
from secretary.services.sync.enqueue import OfflineEnqueuePath
from secretary.services.sync.recording_service import RecordingService
from secretary.services.transcription import create_stt
from secretary.services.transcription.pipeline import TranscriptionPipeline
from secretary.services.webhook.client import WebhookClient

logger = logging.getLogger(__name__)


class SyncEngine:
    """All device-side services for one signed-in user.

    Args:
        store: Remote store client for the user.
        cache: Device cache.
        object_store: Audio object storage.
        pipeline: Transcription + correction pipeline.
        webhooks: Webhook delivery client.
        settings: Application settings.
        clock: Time source shared by every component.
        connectivity: Optional pre-built monitor (tests drive it by hand).
        enable_propagation: Run the push/poll change propagation layer.
    """

    def __init__(
        self,
        store: RemoteStore,
        cache: LocalCacheStore,
        object_store: BaseObjectStore,
        pipeline: TranscriptionPipeline,
        webhooks: WebhookClient,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        connectivity: ConnectivityMonitor | None = None,
        enable_propagation: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.cache = cache
        self._object_store = object_store
        self._webhooks = webhooks
        self._kv: KeyValueStore | None = None
        locks = KeyedLocks()

        self.connectivity = connectivity or ConnectivityMonitor(
            probe=store.ping,
            interval=self.settings.connectivity_probe_seconds,
            probe_timeout=self.settings.remote_timeout_seconds,
        )
        self.user_settings = UserSettingsService(store, cache, self.settings.webhook_url)
        self.enqueue = OfflineEnqueuePath(
            store,
            cache,
            locks=locks,
            is_online=lambda: self.connectivity.is_online,
            remote_timeout=self.settings.remote_timeout_seconds,
            clock=clock,
        )
        self.service = RecordingService(
            store,
            cache,
            locks=locks,
            settings=self.settings,
            enable_propagation=enable_propagation,
        )
        self.queue = QueueDriver(
            store,
            cache,
            object_store,
            pipeline,
            webhooks,
            self.user_settings,
            settings=self.settings,
            is_online=lambda: self.connectivity.is_online,
            before_tick=self.enqueue.sweep,
            clock=clock,
        )
        self.enqueue.add_listener(self.service.apply_change)
        self.connectivity.add_listener(self._on_connectivity_change)
        self._started = False

    @property
    def user_id(self) -> str:
        return self.store.user_id

    @property
    def recordings(self) -> list[Recording]:
        return self.service.recordings

    async def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        result = await self.enqueue.sweep()
        logger.info("Back online: swept %d recordings", result.inserted + result.already_present)
        self.queue.trigger()

    async def start(self) -> None:
        """Initialize the recording view, then start the queue and the probe."""
        if self._started:
            return
        await self.service.initialize(self.user_id)
        self.queue.start()
        self.connectivity.start()
        self._started = True
        logger.info("Sync engine started for %s", self.user_id)

    async def stop(self) -> None:
        """Stop every background task and release connections."""
        await self.queue.stop()
        await self.service.close()
        await self.connectivity.stop()
        await self._webhooks.close()
        close_objects = getattr(self._object_store, "close", None)
        if close_objects is not None:
            await close_objects()
        await self.store.close()
        if self._kv is not None:
            await self._kv.close()
        self._started = False
        logger.info("Sync engine stopped for %s", self.user_id)

    async def capture(
        self,
        duration_seconds: float,
        local_audio_path: str | None,
        captured_at: datetime | None = None,
        recording_id: str | None = None,
    ) -> Recording:
        """Register a new recording and nudge the queue when online."""
        recording = await self.enqueue.capture(
            duration_seconds=duration_seconds,
            local_audio_path=local_audio_path,
            captured_at=captured_at,
            recording_id=recording_id,
        )
        if self.connectivity.is_online:
            self.queue.trigger()
        return recording

    async def retry(self, recording_id: str) -> bool:
        """Manual retry of a failed recording."""
        accepted = await self.service.retry_recording(recording_id)
        if accepted:
            self.queue.trigger()
        return accepted

    async def delete(self, recording_id: str) -> bool:
        return await self.service.delete_recording(recording_id)


async def build_engine(
    settings: Settings | None = None,
    user_id: str | None = None,
    backend: RemoteBackend | None = None,
) -> SyncEngine:
    """Construct a ``SyncEngine`` from settings.

    Args:
        settings: Application settings (defaults to ``get_settings()``).
        user_id: User to act for (defaults to ``settings.user_id``).
        backend: Shared backend for ``remote_mode="sql"``; built from
            ``database_url`` when omitted.

    Raises:
        ValueError: If no user id is configured or the mode is unknown.
    """
    settings = settings or get_settings()
    user_id = user_id or settings.user_id
    if not user_id:
        raise ValueError("A user id is required to start the sync engine")

    ensure_sqlite_dir(settings.cache_database_url)
    kv = SqlKeyValueStore(settings.cache_database_url)
    cache = LocalCacheStore(kv, ttl_seconds=settings.cache_ttl_seconds)

    if settings.remote_mode == "sql":
        if backend is None:
            ensure_sqlite_dir(settings.database_url)
            engine = get_engine(settings.database_url)
            await init_db(engine)
            backend = RemoteBackend(
                get_session_factory(engine),
                policy=BackoffPolicy(settings.retry_base_seconds, settings.retry_cap_seconds),
            )
        store = create_remote_store("sql", user_id, backend=backend)
        object_store: BaseObjectStore = LocalObjectStore(
            settings.storage_dir, settings.storage_public_url
        )
    else:
        store = create_remote_store(
            settings.remote_mode,
            user_id,
            base_url=settings.remote_base_url,
            api_key=settings.remote_api_key,
            timeout=settings.remote_timeout_seconds,
        )
        object_store = HttpObjectStore(
            settings.remote_base_url,
            api_key=settings.remote_api_key,
            timeout=settings.upload_timeout_seconds,
        )

    pipeline = TranscriptionPipeline(
        create_stt(settings.stt_provider),
        TranscriptCorrector(create_llm(settings.llm_provider)),
    )
    engine = SyncEngine(
        store,
        cache,
        object_store,
        pipeline,
        WebhookClient(timeout=settings.webhook_timeout_seconds),
        settings=settings,
    )
    engine._kv = kv
    return engine


# ---------------------------------------------------------------------------
# Module-level singleton management
# ---------------------------------------------------------------------------

_active_engine: SyncEngine | None = None


async def start_engine(
    user_id: str | None = None,
    settings: Settings | None = None,
    engine: SyncEngine | None = None,
) -> SyncEngine:
    """Build (unless given) and start the process-wide engine.

    Raises:
        EngineAlreadyRunningError: If an engine is already running.
    """
    global _active_engine
    if _active_engine is not None:
        raise EngineAlreadyRunningError(_active_engine.user_id)
    engine = engine or await build_engine(settings, user_id)
    await engine.start()
    _active_engine = engine
    return engine


async def stop_engine() -> None:
    """Stop the active engine, if any."""
    global _active_engine
    if _active_engine is None:
        return
    engine = _active_engine
    _active_engine = None
    await engine.stop()


def get_active_engine() -> SyncEngine | None:
    """Return the currently running engine, or None."""
    return _active_engine


async def cleanup() -> None:
    """Force-stop the active engine (called during shutdown)."""
    await stop_engine()
