"""
CRUD repository for the remote store tables.

``RecordingRepository`` receives an ``AsyncSession`` and provides all
data-access methods.  It calls ``flush()`` rather than ``commit()`` so
that transaction boundaries are controlled by the caller (typically
:func:`session_scope`).

Pipeline state columns are only written through ``apply_transition`` and
``apply_reset``; ``update_recording`` refuses them.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from secretary.core.exceptions import DuplicateRecordingError, RecordingNotFoundError
from secretary.core.models import RemoteRecording
from secretary.services.processing.state_machine import ELIGIBLE_STATES, IN_FLIGHT_STATES
from secretary.services.storage.models_db import RecordingRow, UserProfileRow

logger = logging.getLogger(__name__)

# Columns callers may patch directly. Everything else belongs to the
# transition authority.
PATCHABLE_FIELDS = frozenset(
    {"audio_url", "transcript", "corrected_transcript", "title", "duration", "transcription_job_id"}
)


class RecordingRepository:
    """Data-access layer for ``recordings`` and ``user_profiles``.

    Args:
        session: An active SQLAlchemy ``AsyncSession``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Recordings
    # ------------------------------------------------------------------

    async def create_recording(self, recording: RemoteRecording) -> RecordingRow:
        """Insert a new row in state ``recorded``.

        Raises:
            DuplicateRecordingError: If a row with the same id exists.
        """
        if await self._session.get(RecordingRow, recording.id) is not None:
            raise DuplicateRecordingError(recording.id)
        row = RecordingRow(
            id=recording.id,
            user_id=recording.user_id,
            timestamp=recording.timestamp,
            duration=recording.duration,
            audio_url=recording.audio_url,
            transcript=recording.transcript,
            corrected_transcript=recording.corrected_transcript,
            title=recording.title,
            processing_state="recorded",
            processing_step=0,
            retry_count=0,
            upload_progress=0,
            last_state_change_at=recording.last_state_change_at or recording.timestamp,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def find_recording(self, recording_id: str, refresh: bool = False) -> RecordingRow | None:
        """Return a recording by ID, or ``None``.

        Args:
            refresh: Reload column values even if the row is already in the
                session's identity map.
        """
        return await self._session.get(RecordingRow, recording_id, populate_existing=refresh)

    async def get_recording(self, recording_id: str) -> RecordingRow:
        """Return a recording by ID or raise :class:`RecordingNotFoundError`."""
        row = await self.find_recording(recording_id)
        if row is None:
            raise RecordingNotFoundError(recording_id)
        return row

    async def list_recordings(
        self,
        user_id: str,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[RecordingRow]:
        """Return a user's recordings, newest capture time first."""
        stmt = (
            select(RecordingRow)
            .where(RecordingRow.user_id == user_id)
            .order_by(RecordingRow.timestamp.desc(), RecordingRow.id)
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_eligible(
        self,
        user_id: str,
        now: datetime,
        max_retry: int,
        limit: int,
        stalled_before: datetime | None = None,
    ) -> list[RecordingRow]:
        """Return recordings the queue driver may work on, oldest capture first.

        A row qualifies when its retry budget is not exhausted and either it
        waits in an eligible state whose backoff has elapsed, or (when
        *stalled_before* is given) it has sat in an in-flight state since
        before that instant.
        """
        ready = and_(
            RecordingRow.processing_state.in_([s.value for s in ELIGIBLE_STATES]),
            or_(RecordingRow.next_retry_at.is_(None), RecordingRow.next_retry_at <= now),
        )
        condition = ready
        if stalled_before is not None:
            stalled = and_(
                RecordingRow.processing_state.in_([s.value for s in IN_FLIGHT_STATES]),
                func.coalesce(RecordingRow.last_state_change_at, RecordingRow.updated_at)
                <= stalled_before,
            )
            condition = or_(ready, stalled)
        stmt = (
            select(RecordingRow)
            .where(
                RecordingRow.user_id == user_id,
                RecordingRow.retry_count < max_retry,
                condition,
            )
            .order_by(RecordingRow.timestamp.asc(), RecordingRow.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_recording(self, recording_id: str, **fields) -> RecordingRow:
        """Patch non-state columns of a recording.

        Raises:
            ValueError: If a pipeline state column is included.
            RecordingNotFoundError: If the recording does not exist.
        """
        forbidden = set(fields) - PATCHABLE_FIELDS
        if forbidden:
            raise ValueError(f"Fields not patchable: {sorted(forbidden)}")
        row = await self.get_recording(recording_id)
        for name, value in fields.items():
            setattr(row, name, value)
        await self._session.flush()
        return row

    async def apply_transition(
        self,
        recording_id: str,
        observed_state: str,
        values: dict,
    ) -> RecordingRow | None:
        """Write *values* only if the row is still in *observed_state*.

        Returns:
            The refreshed row, or ``None`` when another writer got there first.
        """
        stmt = (
            update(RecordingRow)
            .where(
                RecordingRow.id == recording_id,
                RecordingRow.processing_state == observed_state,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                "Conditional update lost for %s (expected state %s)", recording_id, observed_state
            )
            return None
        await self._session.flush()
        return await self.find_recording(recording_id, refresh=True)

    async def delete_recording(self, recording_id: str) -> bool:
        """Delete a recording. Returns ``False`` if it did not exist."""
        result = await self._session.execute(
            delete(RecordingRow)
            .where(RecordingRow.id == recording_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # User profiles
    # ------------------------------------------------------------------

    async def get_profile(self, user_id: str) -> UserProfileRow | None:
        return await self._session.get(UserProfileRow, user_id)

    async def upsert_profile(
        self,
        user_id: str,
        webhook_url: str | None,
        dictionary: list[str],
    ) -> UserProfileRow:
        """Create or replace a user's pipeline settings."""
        row = await self.get_profile(user_id)
        if row is None:
            row = UserProfileRow(user_id=user_id)
            self._session.add(row)
        row.webhook_url = webhook_url
        row.dictionary = list(dictionary)
        await self._session.flush()
        return row
