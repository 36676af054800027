"""
Change Propagation Layer: push subscription with a polling fallback.

A single supervisor task owns the mode. It subscribes to the remote change
feed (push); when the subscription fails, times out or drops it starts the
poller and schedules reconnect attempts with growing delays. A successful
reconnect stops the poller before any pushed change is consumed, so the two
channels are never active together. After the last allowed attempt the
layer stays in poll mode until stopped.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from secretary.core.config import Settings, get_settings
from secretary.core.exceptions import ConnectivityError
from secretary.core.models import (
    ChangeSource,
    ChangeType,
    Recording,
    RecordingChange,
    RemoteChange,
    RemoteChangeType,
)
from secretary.services.remote.base import ChangeSubscription, RemoteStore
from secretary.services.sync.polling import SnapshotPoller

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[RecordingChange], Awaitable[None]]

_CHANGE_TYPES = {
    RemoteChangeType.INSERT: ChangeType.add,
    RemoteChangeType.UPDATE: ChangeType.update,
    RemoteChangeType.DELETE: ChangeType.delete,
}


class PropagationMode(StrEnum):
    """Which channel currently delivers remote changes."""

    idle = "idle"
    push = "push"
    poll = "poll"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Delays between push reconnect attempts."""

    first_delay: float = 15.0
    base_delay: float = 10.0
    max_delay: float = 160.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float | None:
        """Seconds to wait before reconnect *attempt* (0-based); ``None`` = give up."""
        if attempt >= self.max_attempts:
            return None
        if attempt == 0:
            return self.first_delay
        return min(self.base_delay * (2**attempt), self.max_delay)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconnectPolicy":
        return cls(
            first_delay=settings.reconnect_first_delay_seconds,
            base_delay=settings.reconnect_base_delay_seconds,
            max_delay=settings.reconnect_max_delay_seconds,
            max_attempts=settings.reconnect_max_attempts,
        )


def normalize_change(change: RemoteChange) -> RecordingChange | None:
    """Map a feed message to a ``RecordingChange`` (``None`` if malformed)."""
    change_type = _CHANGE_TYPES[change.event]
    if change_type is ChangeType.delete:
        if not change.recording_id:
            return None
        return RecordingChange(
            change_type=change_type, recording_id=change.recording_id, source=ChangeSource.push
        )
    if change.new is None:
        return None
    return RecordingChange(
        change_type=change_type,
        recording_id=change.new.id,
        recording=Recording.from_remote(change.new),
        source=ChangeSource.push,
    )


class ChangePropagationLayer:
    """Supervises the push subscription and the polling fallback.

    Args:
        store: Remote store client for the active user.
        on_change: Awaited for every normalised change, from either channel.
        settings: Timeouts, poll cadence and reconnect policy.
    """

    def __init__(
        self,
        store: RemoteStore,
        on_change: ChangeHandler,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._on_change = on_change
        self._settings = settings or get_settings()
        self._policy = ReconnectPolicy.from_settings(self._settings)
        self._poller = SnapshotPoller(
            store,
            self._deliver,
            interval=self._settings.poll_interval_seconds,
            initial_delay=self._settings.poll_initial_delay_seconds,
            fetch_limit=self._settings.poll_fetch_limit,
            reconcile_deletes=self._settings.poll_reconcile_deletes,
            timeout=self._settings.remote_timeout_seconds,
        )
        self._mode = PropagationMode.idle
        self._task: asyncio.Task | None = None
        self.reconnect_attempts = 0

    @property
    def mode(self) -> PropagationMode:
        return self._mode

    @property
    def poller(self) -> SnapshotPoller:
        return self._poller

    def start(self) -> None:
        """Launch the supervisor (push first, poll on failure)."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._supervise())

    async def stop(self) -> None:
        """Cancel the subscription, poll timer and any pending reconnect."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._poller.stop()
        self._set_mode(PropagationMode.idle)

    def _set_mode(self, mode: PropagationMode) -> None:
        if mode != self._mode:
            logger.info("Change propagation: %s -> %s", self._mode, mode)
            self._mode = mode

    async def _deliver(self, change: RecordingChange) -> None:
        try:
            await self._on_change(change)
        except Exception:
            logger.exception("Change handler failed for %s", change.recording_id)

    async def _subscribe(self) -> ChangeSubscription | None:
        try:
            return await asyncio.wait_for(
                self._store.subscribe(), timeout=self._settings.subscribe_timeout_seconds
            )
        except TimeoutError:
            logger.warning("Change feed subscription timed out")
        except ConnectivityError as exc:
            logger.warning("Change feed subscription failed: %s", exc.detail)
        except Exception:
            logger.exception("Change feed subscription failed unexpectedly")
        return None

    async def _consume(self, subscription: ChangeSubscription) -> None:
        """Deliver pushed changes until the subscription drops."""
        try:
            async for message in subscription:
                change = normalize_change(message)
                if change is None:
                    logger.debug("Ignoring malformed change feed message")
                    continue
                await self._deliver(change)
        except ConnectivityError as exc:
            logger.warning("Change feed lost: %s", exc.detail)
        except Exception:
            logger.exception("Change feed failed; falling back to polling")

    async def _close(self, subscription: ChangeSubscription) -> None:
        try:
            await subscription.close()
        except Exception:
            logger.exception("Closing the change feed subscription failed")

    async def _supervise(self) -> None:
        attempt = 0
        while True:
            subscription = await self._subscribe()
            if subscription is not None:
                await self._poller.stop()
                self._set_mode(PropagationMode.push)
                attempt = 0
                self.reconnect_attempts = 0
                try:
                    await self._consume(subscription)
                finally:
                    await self._close(subscription)

            self._set_mode(PropagationMode.poll)
            self._poller.start()
            delay = self._policy.delay(attempt)
            if delay is None:
                logger.warning(
                    "Push reconnect gave up after %d attempts; staying in poll mode", attempt
                )
                return
            attempt += 1
            self.reconnect_attempts = attempt
            logger.info("Push reconnect attempt %d in %.1fs", attempt, delay)
            await asyncio.sleep(delay)
