"""
State Transition Authority: the only writer of a recording's pipeline state.

Every accepted transition is one conditional UPDATE guarded by a per-id
``asyncio.Lock``, so two callers racing on one recording cannot both
apply. Rejections (unknown id, foreign owner, illegal edge) return
``False`` and leave the row untouched.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from secretary.core.exceptions import AuthorizationError, InvalidTransitionError
from secretary.core.models import (
    ProcessingError,
    ProcessingState,
    RemoteChange,
    RemoteChangeType,
    RemoteRecording,
)
from secretary.core.utils import Clock, KeyedLocks, utc_now
from secretary.services.processing.state_machine import (
    BackoffPolicy,
    TransitionPlan,
    plan_reset,
    plan_transition,
)
from secretary.services.remote.feed import ChangeFeed
from secretary.services.storage.database import session_scope
from secretary.services.storage.models_db import RecordingRow
from secretary.services.storage.repository import RecordingRepository

logger = logging.getLogger(__name__)


class TransitionAuthority:
    """Validates and applies processing state transitions.

    Args:
        session_factory: Session factory of the remote store database.
        feed: Change feed notified after each committed transition.
        policy: Retry backoff applied on entry into a failure state.
        clock: Time source (injected in tests).
        locks: Per-recording lock registry; shared with other writers of
            the same process when given.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: ChangeFeed | None = None,
        policy: BackoffPolicy | None = None,
        clock: Clock = utc_now,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed
        self.policy = policy or BackoffPolicy()
        self._clock = clock
        self._locks = locks or KeyedLocks()

    async def _load_owned(
        self, repo: RecordingRepository, caller_id: str, recording_id: str
    ) -> RecordingRow | None:
        row = await repo.find_recording(recording_id)
        if row is None:
            logger.warning("Transition rejected: recording %s not found", recording_id)
            return None
        if row.user_id != caller_id:
            error = AuthorizationError(recording_id)
            logger.warning("Transition rejected for caller %s: %s", caller_id, error.detail)
            return None
        return row

    async def _apply(
        self,
        repo: RecordingRepository,
        row: RecordingRow,
        plan: TransitionPlan,
    ) -> RemoteRecording | None:
        updated = await repo.apply_transition(row.id, row.processing_state, plan.values())
        return updated.to_model() if updated is not None else None

    def _publish(self, remote: RemoteRecording) -> None:
        if self._feed is not None:
            self._feed.publish(
                remote.user_id, RemoteChange(event=RemoteChangeType.UPDATE, new=remote)
            )

    async def transition(
        self,
        caller_id: str,
        recording_id: str,
        new_state: ProcessingState,
        error: ProcessingError | None = None,
        progress: int | None = None,
    ) -> bool:
        """Move a recording to *new_state*.

        Args:
            caller_id: User on whose behalf the change is made.
            recording_id: Recording to transition.
            new_state: Target processing state.
            error: Error details recorded when entering a failure state.
            progress: Upload progress (0-100) to store with the change.

        Returns:
            ``True`` if the recording is now in *new_state* (including the
            no-op case where it already was), ``False`` if the change was
            rejected.
        """
        new_state = ProcessingState(new_state)
        async with self._locks.hold(recording_id):
            async with session_scope(self._session_factory) as session:
                repo = RecordingRepository(session)
                row = await self._load_owned(repo, caller_id, recording_id)
                if row is None:
                    return False
                current = ProcessingState(row.processing_state)
                if current == new_state:
                    logger.debug("Recording %s already %s", recording_id, new_state)
                    return True
                try:
                    plan = plan_transition(
                        current,
                        new_state,
                        retry_count=row.retry_count,
                        now=self._clock(),
                        policy=self.policy,
                        current_error=row.to_model().processing_error,
                        error=error,
                        progress=progress,
                    )
                except InvalidTransitionError as exc:
                    logger.warning("Transition rejected for %s: %s", recording_id, exc.detail)
                    return False
                remote = await self._apply(repo, row, plan)
            if remote is None:
                return False
        logger.info("Recording %s: %s -> %s", recording_id, current, new_state)
        self._publish(remote)
        return True

    async def reset_for_retry(self, caller_id: str, recording_id: str) -> bool:
        """Send a failed recording back into the stage that failed.

        Clears the error, zeroes ``retry_count`` and the retry schedule.

        Returns:
            ``False`` if the recording is not owned by *caller_id* or is not
            in a failure state.
        """
        async with self._locks.hold(recording_id):
            async with session_scope(self._session_factory) as session:
                repo = RecordingRepository(session)
                row = await self._load_owned(repo, caller_id, recording_id)
                if row is None:
                    return False
                current = ProcessingState(row.processing_state)
                plan = plan_reset(current, now=self._clock())
                if plan is None:
                    logger.warning(
                        "Manual retry rejected for %s: state %s is not a failure",
                        recording_id,
                        current,
                    )
                    return False
                remote = await self._apply(repo, row, plan)
            if remote is None:
                return False
        logger.info("Recording %s reset for retry: %s -> %s", recording_id, current, plan.state)
        self._publish(remote)
        return True
