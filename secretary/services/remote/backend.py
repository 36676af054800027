"""
Server side of the remote store.

``RemoteBackend`` owns the database session factory, the change feed and
the transition authority. The API routes call it with the caller id taken
from the request; ``SqlRemoteStore`` calls it directly for a single user.
Row visibility is per owner: other users' rows behave as missing.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from secretary.core.exceptions import AuthorizationError, RecordingNotFoundError
from secretary.core.models import (
    ProcessingError,
    ProcessingState,
    RemoteChange,
    RemoteChangeType,
    RemoteRecording,
    UserProfile,
)
from secretary.core.utils import Clock, KeyedLocks, utc_now
from secretary.services.processing.authority import TransitionAuthority
from secretary.services.processing.state_machine import BackoffPolicy
from secretary.services.remote.feed import ChangeFeed, FeedSubscription
from secretary.services.storage.database import session_scope
from secretary.services.storage.repository import RecordingRepository

logger = logging.getLogger(__name__)


class RemoteBackend:
    """Owner-scoped operations on the remote ``recordings`` and ``user_profiles`` tables.

    Args:
        session_factory: Session factory bound to the remote database.
        feed: Change feed to publish committed changes on.
        policy: Backoff policy for the transition authority.
        clock: Time source shared with the authority.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: ChangeFeed | None = None,
        policy: BackoffPolicy | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed()
        self._locks = KeyedLocks()
        self.authority = TransitionAuthority(
            session_factory,
            feed=self.feed,
            policy=policy,
            clock=clock,
            locks=self._locks,
        )

    def _publish(self, user_id: str, change: RemoteChange) -> None:
        delivered = self.feed.publish(user_id, change)
        logger.debug("Published %s for %s to %d subscribers", change.event, user_id, delivered)

    # ------------------------------------------------------------------
    # Recordings
    # ------------------------------------------------------------------

    async def insert_recording(self, caller_id: str, recording: RemoteRecording) -> RemoteRecording:
        """Insert a new recording owned by *caller_id*.

        Raises:
            DuplicateRecordingError: If the id already exists.
        """
        recording = recording.model_copy(update={"user_id": caller_id})
        async with self._locks.hold(recording.id):
            async with session_scope(self._session_factory) as session:
                row = await RecordingRepository(session).create_recording(recording)
                created = row.to_model()
        logger.info("Recording %s inserted for %s", created.id, caller_id)
        self._publish(caller_id, RemoteChange(event=RemoteChangeType.INSERT, new=created))
        return created

    async def get_recording(self, caller_id: str, recording_id: str) -> RemoteRecording | None:
        async with session_scope(self._session_factory) as session:
            row = await RecordingRepository(session).find_recording(recording_id)
            if row is None or row.user_id != caller_id:
                return None
            return row.to_model()

    async def list_recordings(
        self, caller_id: str, limit: int | None = None, offset: int = 0
    ) -> list[RemoteRecording]:
        """Return the caller's recordings, newest first."""
        async with session_scope(self._session_factory) as session:
            rows = await RecordingRepository(session).list_recordings(
                caller_id, limit=limit, offset=offset
            )
            return [row.to_model() for row in rows]

    async def list_eligible(
        self,
        caller_id: str,
        now: datetime,
        max_retry: int,
        limit: int,
        stalled_before: datetime | None = None,
    ) -> list[RemoteRecording]:
        async with session_scope(self._session_factory) as session:
            rows = await RecordingRepository(session).list_eligible(
                caller_id, now, max_retry, limit, stalled_before
            )
            return [row.to_model() for row in rows]

    async def update_recording(self, caller_id: str, recording_id: str, **fields) -> RemoteRecording:
        """Patch non-state fields of one of the caller's recordings.

        Raises:
            RecordingNotFoundError: If the recording does not exist.
            AuthorizationError: If the caller does not own it.
        """
        async with self._locks.hold(recording_id):
            async with session_scope(self._session_factory) as session:
                repo = RecordingRepository(session)
                row = await repo.get_recording(recording_id)
                if row.user_id != caller_id:
                    raise AuthorizationError(recording_id)
                row = await repo.update_recording(recording_id, **fields)
                updated = row.to_model()
        self._publish(caller_id, RemoteChange(event=RemoteChangeType.UPDATE, new=updated))
        return updated

    async def delete_recording(self, caller_id: str, recording_id: str) -> bool:
        """Delete one of the caller's recordings. Returns ``False`` if it was not there.

        Raises:
            AuthorizationError: If the recording belongs to someone else.
        """
        async with self._locks.hold(recording_id):
            async with session_scope(self._session_factory) as session:
                repo = RecordingRepository(session)
                row = await repo.find_recording(recording_id)
                if row is None:
                    return False
                if row.user_id != caller_id:
                    raise AuthorizationError(recording_id)
                await repo.delete_recording(recording_id)
        logger.info("Recording %s deleted by %s", recording_id, caller_id)
        self._publish(caller_id, RemoteChange(event=RemoteChangeType.DELETE, old_id=recording_id))
        return True

    async def require_recording(self, caller_id: str, recording_id: str) -> RemoteRecording:
        recording = await self.get_recording(caller_id, recording_id)
        if recording is None:
            raise RecordingNotFoundError(recording_id)
        return recording

    # ------------------------------------------------------------------
    # Pipeline state
    # ------------------------------------------------------------------

    async def transition_processing_state(
        self,
        caller_id: str,
        recording_id: str,
        new_state: ProcessingState,
        error: ProcessingError | None = None,
        progress: int | None = None,
    ) -> bool:
        return await self.authority.transition(caller_id, recording_id, new_state, error, progress)

    async def reset_processing_state(self, caller_id: str, recording_id: str) -> bool:
        return await self.authority.reset_for_retry(caller_id, recording_id)

    # ------------------------------------------------------------------
    # Change feed & profiles
    # ------------------------------------------------------------------

    def subscribe(self, caller_id: str) -> FeedSubscription:
        return self.feed.subscribe(caller_id)

    async def get_user_profile(self, caller_id: str) -> UserProfile | None:
        async with session_scope(self._session_factory) as session:
            row = await RecordingRepository(session).get_profile(caller_id)
            return row.to_model() if row is not None else None

    async def save_user_profile(
        self, caller_id: str, webhook_url: str | None, dictionary: list[str]
    ) -> UserProfile:
        async with session_scope(self._session_factory) as session:
            row = await RecordingRepository(session).upsert_profile(
                caller_id, webhook_url, dictionary
            )
            return row.to_model()
