"""
SQLAlchemy ORM models for the remote store.

Tables: ``recordings``, ``user_profiles``.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime, Float, Index, String, Text, TypeDecorator
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from secretary.core.models import ProcessingError, RemoteRecording, UserProfile
from secretary.core.utils import ensure_utc
from secretary.services.storage.database import Base


def _now() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """DateTime stored as naive UTC and returned timezone-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class RecordingRow(Base):
    """One recording as the remote source of truth stores it."""

    __tablename__ = "recordings"
    __table_args__ = (
        Index("ix_recordings_user_state", "user_id", "processing_state"),
        Index("ix_recordings_user_timestamp", "user_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime)
    duration: Mapped[float] = mapped_column(Float, default=0.0)
    audio_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    corrected_transcript: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processing_state: Mapped[str] = mapped_column(String(32), default="recorded")
    processing_step: Mapped[int] = mapped_column(default=0)
    processing_error: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    retry_count: Mapped[int] = mapped_column(default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    upload_progress: Mapped[int] = mapped_column(default=0)
    transcription_job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_state_change_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_now, onupdate=_now)

    def to_model(self) -> RemoteRecording:
        """Convert to the wire representation."""
        return RemoteRecording(
            id=self.id,
            user_id=self.user_id,
            timestamp=self.timestamp,
            duration=self.duration,
            audio_url=self.audio_url,
            transcript=self.transcript,
            corrected_transcript=self.corrected_transcript,
            title=self.title,
            processing_state=self.processing_state,
            processing_step=self.processing_step,
            processing_error=(
                ProcessingError.model_validate(self.processing_error)
                if self.processing_error
                else None
            ),
            retry_count=self.retry_count,
            next_retry_at=self.next_retry_at,
            upload_progress=self.upload_progress,
            transcription_job_id=self.transcription_job_id,
            last_state_change_at=self.last_state_change_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def __repr__(self) -> str:
        return f"<RecordingRow id={self.id!r} state={self.processing_state!r}>"


class UserProfileRow(Base):
    """Per-user webhook endpoint and transcription dictionary."""

    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    webhook_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    dictionary: Mapped[list] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_now, onupdate=_now)

    def to_model(self) -> UserProfile:
        return UserProfile(
            user_id=self.user_id,
            webhook_url=self.webhook_url,
            dictionary=list(self.dictionary or []),
        )

    def __repr__(self) -> str:
        return f"<UserProfileRow user={self.user_id!r}>"
