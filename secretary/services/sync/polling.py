"""
Polling fallback for the change feed.

Fetches the newest recordings on an interval and turns differences from
the previous snapshot into synthetic ``add`` / ``update`` (and optionally
``delete``) changes. Only a fixed projection of each row is compared.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from secretary.core.exceptions import ConnectivityError
from secretary.core.models import (
    ChangeSource,
    ChangeType,
    Recording,
    RecordingChange,
    RemoteRecording,
)
from secretary.services.remote.base import RemoteStore

logger = logging.getLogger(__name__)

Projection = tuple[str, str | None, str | None, int]
ChangeHandler = Callable[[RecordingChange], Awaitable[None]]


def project(row: RemoteRecording) -> Projection:
    """The fields whose change makes a polled row count as updated."""
    return (str(row.processing_state), row.transcript, row.title, row.upload_progress)


def diff_snapshots(
    previous: dict[str, Projection],
    rows: list[RemoteRecording],
    *,
    reconcile_deletes: bool = False,
    truncated: bool = False,
) -> list[RecordingChange]:
    """Compare a fresh fetch with the previous snapshot.

    Args:
        previous: Projection per id from the last poll.
        rows: Rows returned by this poll.
        reconcile_deletes: Emit ``delete`` for ids that disappeared.
        truncated: The fetch hit its limit; disappearance proves nothing
            and no deletes are emitted.

    Returns:
        Changes in fetch order, deletes last.
    """
    changes: list[RecordingChange] = []
    seen: set[str] = set()
    for row in rows:
        seen.add(row.id)
        before = previous.get(row.id)
        if before is not None and before == project(row):
            continue
        changes.append(
            RecordingChange(
                change_type=ChangeType.add if before is None else ChangeType.update,
                recording_id=row.id,
                recording=Recording.from_remote(row),
                source=ChangeSource.poll,
            )
        )
    if reconcile_deletes and not truncated:
        for recording_id in previous.keys() - seen:
            changes.append(
                RecordingChange(
                    change_type=ChangeType.delete,
                    recording_id=recording_id,
                    source=ChangeSource.poll,
                )
            )
    return changes


class SnapshotPoller:
    """Interval poller feeding synthetic changes to a handler.

    Args:
        store: Remote store client.
        on_change: Awaited once per detected change.
        interval: Seconds between polls.
        initial_delay: Seconds before the first poll.
        fetch_limit: Rows fetched per poll (newest first).
        reconcile_deletes: Emit deletes for vanished rows (untruncated fetches only).
        timeout: Bound on each fetch.
    """

    def __init__(
        self,
        store: RemoteStore,
        on_change: ChangeHandler,
        interval: float = 10.0,
        initial_delay: float = 2.0,
        fetch_limit: int = 50,
        reconcile_deletes: bool = False,
        timeout: float = 15.0,
    ) -> None:
        self._store = store
        self._on_change = on_change
        self._interval = interval
        self._initial_delay = initial_delay
        self._fetch_limit = fetch_limit
        self._reconcile_deletes = reconcile_deletes
        self._timeout = timeout
        self._snapshot: dict[str, Projection] = {}
        self._poll_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Polling started (every %.1fs)", self._interval)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Polling stopped")

    async def _loop(self) -> None:
        await asyncio.sleep(self._initial_delay)
        while True:
            await self.poll_once()
            await asyncio.sleep(self._interval)

    async def poll_once(self) -> list[RecordingChange]:
        """Fetch, diff and deliver. Overlapping calls return ``[]``."""
        if self._poll_lock.locked():
            return []
        async with self._poll_lock:
            try:
                rows = await asyncio.wait_for(
                    self._store.list_recordings(limit=self._fetch_limit), timeout=self._timeout
                )
            except (ConnectivityError, TimeoutError) as exc:
                logger.warning("Poll failed: %s", exc)
                return []
            changes = diff_snapshots(
                self._snapshot,
                rows,
                reconcile_deletes=self._reconcile_deletes,
                truncated=len(rows) >= self._fetch_limit,
            )
            self._snapshot = {row.id: project(row) for row in rows}
            if changes:
                logger.debug("Poll detected %d changes", len(changes))
            for change in changes:
                try:
                    await self._on_change(change)
                except Exception:
                    logger.exception("Change handler failed for %s", change.recording_id)
            return changes
