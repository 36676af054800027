"""
Queue Driver: periodically advances eligible recordings through the pipeline.

Each tick selects up to ``queue_batch_size`` recordings that are waiting in
an eligible state (and whose backoff has elapsed), oldest capture first,
and runs the matching stage:

    recorded | upload_failed          -> upload
    uploaded | transcribe_failed      -> transcription + correction
    transcribed | webhook_failed      -> webhook delivery

Every state change goes through the remote transition RPC. A stage
failure becomes a failure transition carrying the stage error; the
authority schedules the retry.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from secretary.core.config import Settings, get_settings
from secretary.core.exceptions import (
    ConnectivityError,
    SecretaryError,
    TranscribeError,
    UploadError,
    WebhookError,
)
from secretary.core.models import (
    ProcessingError,
    ProcessingState,
    Recording,
    RemoteRecording,
    WebhookPayload,
)
from secretary.core.utils import Clock, utc_now
from secretary.services.processing.state_machine import FAILURE_FOR
from secretary.services.remote.base import RemoteStore
from secretary.services.settings.user_settings import UserSettingsService
from secretary.services.storage.cache import LocalCacheStore
from secretary.services.storage.objects import AUDIO_CONTENT_TYPE, BaseObjectStore, audio_key
from secretary.services.transcription.pipeline import TranscriptionPipeline
from secretary.services.webhook.client import WebhookClient

logger = logging.getLogger(__name__)

S = ProcessingState

UPLOAD_STATES = frozenset({S.recorded, S.upload_failed, S.uploading})
TRANSCRIBE_STATES = frozenset({S.uploaded, S.transcribe_failed, S.transcribing})
WEBHOOK_STATES = frozenset({S.transcribed, S.webhook_failed, S.webhook_sending})


@dataclass
class TickResult:
    """Summary of one queue tick."""

    skipped: bool = False
    reason: str = ""
    selected: int = 0
    succeeded: int = 0
    failed: int = 0


class StageAborted(Exception):
    """A stage stopped because the authority rejected one of its transitions."""


class QueueDriver:
    """Background loop driving recordings through upload, transcription and webhook.

    Args:
        store: Remote store client for the active user.
        cache: Device cache (source of local audio paths and tombstones).
        object_store: Audio object storage.
        pipeline: Transcription + correction pipeline.
        webhooks: Webhook delivery client.
        user_settings: Webhook URL / dictionary resolver.
        settings: Intervals, batch size, retry budget and timeouts.
        is_online: Callable reporting device connectivity; ticks are skipped
            while it returns ``False``.
        before_tick: Awaitable hook run before each selection (the offline
            enqueue sweep).
        clock: Time source (injected in tests).
    """

    def __init__(
        self,
        store: RemoteStore,
        cache: LocalCacheStore,
        object_store: BaseObjectStore,
        pipeline: TranscriptionPipeline,
        webhooks: WebhookClient,
        user_settings: UserSettingsService,
        settings: Settings | None = None,
        is_online: Callable[[], bool] | None = None,
        before_tick: Callable[[], Awaitable[Any]] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._cache = cache
        self._objects = object_store
        self._pipeline = pipeline
        self._webhooks = webhooks
        self._user_settings = user_settings
        self._settings = settings or get_settings()
        self._is_online = is_online or (lambda: True)
        self._before_tick = before_tick
        self._clock = clock

        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def user_id(self) -> str:
        return self._store.user_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Launch the background tick loop."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        self._stop_event.set()
        self._wake_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Queue driver stopped for %s", self.user_id)

    def trigger(self) -> None:
        """Request an immediate tick (e.g. after connectivity returns)."""
        self._wake_event.set()

    async def _loop(self) -> None:
        interval = self._settings.queue_interval_seconds
        logger.info("Queue driver started for %s (every %.1fs)", self.user_id, interval)
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Queue tick crashed for %s", self.user_id)
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=interval)
            except TimeoutError:
                pass  # Timer fired
            self._wake_event.clear()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickResult:
        """Run one selection + processing pass.

        A tick requested while another is running returns immediately
        with ``skipped=True``.
        """
        if self._tick_lock.locked():
            logger.debug("Queue tick already running; skipped")
            return TickResult(skipped=True, reason="busy")
        async with self._tick_lock:
            if not self._is_online():
                logger.debug("Device offline; queue tick skipped")
                return TickResult(skipped=True, reason="offline")
            if self._before_tick is not None:
                try:
                    await self._before_tick()
                except Exception:
                    logger.exception("Pre-tick hook failed for %s", self.user_id)
            try:
                batch = await self._select()
            except ConnectivityError as exc:
                logger.warning("Queue selection failed: %s", exc.detail)
                return TickResult(skipped=True, reason="unreachable")
            result = TickResult(selected=len(batch))
            if not batch:
                return result
            logger.debug("Queue tick selected %d recordings", len(batch))
            outcomes = await self._process_batch(batch)
            result.succeeded = sum(1 for ok in outcomes if ok)
            result.failed = len(outcomes) - result.succeeded
            return result

    async def _select(self) -> list[RemoteRecording]:
        settings = self._settings
        now = self._clock()
        stalled_before = None
        if settings.stalled_after_seconds > 0:
            stalled_before = now - timedelta(seconds=settings.stalled_after_seconds)
        rows = await self._remote(
            self._store.list_eligible(
                now,
                settings.max_retry_count,
                settings.queue_batch_size,
                stalled_before=stalled_before,
            )
        )
        deleted = await self._cache.tombstones(self.user_id)
        return [row for row in rows if row.id not in deleted]

    async def _process_batch(self, batch: list[RemoteRecording]) -> list[bool]:
        concurrency = max(1, self._settings.queue_concurrency)
        if concurrency == 1:
            return [await self.process(row) for row in batch]

        semaphore = asyncio.Semaphore(concurrency)

        async def _bounded(row: RemoteRecording) -> bool:
            async with semaphore:
                return await self.process(row)

        return list(await asyncio.gather(*(_bounded(row) for row in batch)))

    async def process(self, row: RemoteRecording) -> bool:
        """Dispatch one recording to the stage its state calls for.

        Returns:
            ``True`` if the stage ran to its target state.
        """
        state = row.processing_state
        try:
            if state in UPLOAD_STATES:
                await self._run_stage(row, self._upload, UploadError)
            elif state in TRANSCRIBE_STATES:
                await self._run_stage(row, self._transcribe, TranscribeError)
            elif state in WEBHOOK_STATES:
                await self._run_stage(row, self._send_webhook, WebhookError)
            elif state == S.webhook_sent:
                await self._transition(row.id, S.completed)
            else:
                logger.debug("Recording %s in %s needs no work", row.id, state)
                return False
        except StageAborted as exc:
            logger.warning("Recording %s: %s", row.id, exc)
            return False
        except SecretaryError as exc:
            logger.warning("Recording %s: stage failed in %s: %s", row.id, state, exc.detail)
            return False
        except Exception:
            logger.exception("Unexpected error processing recording %s", row.id)
            return False
        return True

    # ------------------------------------------------------------------
    # Stage plumbing
    # ------------------------------------------------------------------

    async def _remote(self, coro: Awaitable[Any]) -> Any:
        """Await a remote store call bounded by the remote timeout."""
        try:
            return await asyncio.wait_for(coro, timeout=self._settings.remote_timeout_seconds)
        except TimeoutError as exc:
            raise ConnectivityError("Remote store call timed out") from exc

    async def _transition(
        self,
        recording_id: str,
        new_state: ProcessingState,
        error: ProcessingError | None = None,
        progress: int | None = None,
    ) -> None:
        accepted = await self._remote(
            self._store.transition_processing_state(recording_id, new_state, error, progress)
        )
        if not accepted:
            raise StageAborted(f"transition to {new_state} rejected")

    async def _run_stage(
        self,
        row: RemoteRecording,
        stage: Callable[[RemoteRecording, list], Awaitable[None]],
        error_cls: type[SecretaryError],
    ) -> None:
        """Run *stage*, converting any failure after entering the in-flight state.

        The stage appends the in-flight state to ``entered`` once the
        authority accepted it; only then is a failure transition legal.
        """
        entered: list[ProcessingState] = []
        try:
            await stage(row, entered)
        except StageAborted:
            raise
        except Exception as exc:
            if not entered:
                raise
            stage_error = exc if isinstance(exc, error_cls) else _as_stage_error(exc, error_cls)
            failure_state = FAILURE_FOR[entered[-1]]
            logger.warning("Recording %s -> %s: %s", row.id, failure_state, stage_error.detail)
            await self._transition(
                row.id, failure_state, error=ProcessingError.from_exception(stage_error)
            )
            if stage_error is exc:
                raise
            raise stage_error from exc

    async def _enter(self, row: RemoteRecording, state: ProcessingState, entered: list, **kwargs) -> None:
        await self._transition(row.id, state, **kwargs)
        entered.append(state)

    async def _local_audio_path(self, recording_id: str) -> Path | None:
        local = await self._cache.get(self.user_id, recording_id)
        if local is None or not local.local_audio_path:
            return None
        path = Path(local.local_audio_path)
        return path if path.exists() else None

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _upload(self, row: RemoteRecording, entered: list) -> None:
        if row.audio_url:
            logger.info("Recording %s already uploaded", row.id)
            await self._transition(row.id, S.uploaded, progress=100)
            return

        path = await self._local_audio_path(row.id)
        if path is None and row.transcript:
            logger.info("Recording %s has no local audio but has a transcript; completing", row.id)
            await self._transition(row.id, S.completed)
            return

        await self._enter(row, S.uploading, entered, progress=0)
        if path is None:
            raise UploadError("Local recording file not found and no transcript available")
        data = await asyncio.to_thread(path.read_bytes)
        url = await asyncio.wait_for(
            self._objects.put(audio_key(self.user_id, row.id), data, AUDIO_CONTENT_TYPE),
            timeout=self._settings.upload_timeout_seconds,
        )
        await self._remote(self._store.update_recording(row.id, audio_url=url))
        await self._transition(row.id, S.uploaded, progress=100)
        logger.info("Uploaded recording %s (%d bytes)", row.id, len(data))

    async def _transcribe(self, row: RemoteRecording, entered: list) -> None:
        await self._enter(row, S.transcribing, entered)
        path = await self._local_audio_path(row.id)
        if path is not None:
            audio = await asyncio.to_thread(path.read_bytes)
            filename = path.name
        elif row.audio_url:
            audio = await asyncio.wait_for(
                self._objects.get(row.audio_url),
                timeout=self._settings.transcribe_timeout_seconds,
            )
            filename = f"{row.id}.m4a"
        else:
            raise TranscribeError("No audio file available for transcription")

        dictionary = await self._user_settings.dictionary()
        result = await asyncio.wait_for(
            self._pipeline.run(audio, filename, dictionary),
            timeout=self._settings.transcribe_timeout_seconds,
        )
        await self._remote(
            self._store.update_recording(
                row.id,
                transcript=result.transcript,
                corrected_transcript=result.corrected_transcript,
                title=result.title,
            )
        )
        await self._transition(row.id, S.transcribed)
        logger.info("Transcribed recording %s", row.id)

    async def _send_webhook(self, row: RemoteRecording, entered: list) -> None:
        url = await self._user_settings.webhook_url()
        if not url and row.processing_state != S.webhook_sending:
            logger.info("No webhook configured; completing recording %s", row.id)
            await self._transition(row.id, S.completed)
            return

        await self._enter(row, S.webhook_sending, entered)
        if not url:
            raise WebhookError("No webhook endpoint configured")
        payload = WebhookPayload.from_recording(Recording.from_remote(row))
        await asyncio.wait_for(
            self._webhooks.send(url, payload),
            timeout=self._settings.webhook_timeout_seconds,
        )
        await self._transition(row.id, S.webhook_sent)
        await self._transition(row.id, S.completed)
        logger.info("Webhook sent for recording %s", row.id)


def _as_stage_error(exc: BaseException, error_cls: type[SecretaryError]) -> SecretaryError:
    if isinstance(exc, TimeoutError):
        message = "Operation timed out"
    elif isinstance(exc, SecretaryError):
        message = exc.detail
    else:
        message = str(exc) or type(exc).__name__
    return error_cls(message, details={"exception": type(exc).__name__})
