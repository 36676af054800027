"""
Pydantic v2 models shared by the device engine, the remote store and the API.

Recording / ProcessingState: the pipeline state model
RemoteRecording / RemoteChange: the remote row and change-feed shapes
RecordingChange / RecordingEvent: what the sync layer emits to listeners
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from secretary.core.exceptions import SecretaryError

# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str = "ok"
    version: str = "0.1.0"
    timestamp: datetime


# ---------------------------------------------------------------------------
# Processing state
# ---------------------------------------------------------------------------


class ProcessingState(StrEnum):
    """Pipeline position of a recording."""

    recorded = "recorded"
    uploading = "uploading"
    uploaded = "uploaded"
    upload_failed = "upload_failed"
    transcribing = "transcribing"
    transcribed = "transcribed"
    transcribe_failed = "transcribe_failed"
    webhook_sending = "webhook_sending"
    webhook_sent = "webhook_sent"
    webhook_failed = "webhook_failed"
    completed = "completed"


# Ordinal progress along the happy path. Failure states keep the step of the
# stage that failed.
STATE_STEPS: dict[ProcessingState, int] = {
    ProcessingState.recorded: 0,
    ProcessingState.uploading: 1,
    ProcessingState.upload_failed: 1,
    ProcessingState.uploaded: 2,
    ProcessingState.transcribing: 3,
    ProcessingState.transcribe_failed: 3,
    ProcessingState.transcribed: 4,
    ProcessingState.webhook_sending: 5,
    ProcessingState.webhook_failed: 5,
    ProcessingState.webhook_sent: 6,
    ProcessingState.completed: 7,
}


class Provenance(StrEnum):
    """Where the device's copy of a recording is known to exist."""

    local = "local"
    remote = "remote"
    both = "both"


class ProcessingError(BaseModel):
    """Structured error captured on a failed pipeline stage."""

    model_config = ConfigDict(frozen=True)

    message: str
    code: str
    details: dict[str, Any] | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_exception(cls, exc: Exception, code: str = "UNKNOWN_ERROR") -> "ProcessingError":
        """Build an error record from a raised exception.

        ``SecretaryError`` subclasses carry their own code and details;
        anything else is recorded under *code* with its message.
        """
        if isinstance(exc, SecretaryError):
            return cls(message=exc.detail, code=exc.code, details=exc.details)
        return cls(message=str(exc) or type(exc).__name__, code=code)


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


class RemoteRecording(BaseModel):
    """A row of the remote ``recordings`` table as it travels on the wire."""

    id: str
    user_id: str
    timestamp: datetime
    duration: float = 0.0
    audio_url: str | None = None
    transcript: str | None = None
    corrected_transcript: str | None = None
    title: str | None = None
    processing_state: ProcessingState = ProcessingState.recorded
    processing_step: int = 0
    processing_error: ProcessingError | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None
    upload_progress: int = 0
    transcription_job_id: str | None = None
    last_state_change_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Recording(BaseModel):
    """The device's view of one captured recording.

    Instances are immutable; updates go through ``model_copy(update=...)``.
    ``local_audio_path`` and ``provenance`` never leave the device.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    captured_at: datetime
    duration_seconds: float = 0.0
    audio_location: str | None = None
    local_audio_path: str | None = None
    transcript: str | None = None
    corrected_transcript: str | None = None
    title: str | None = None
    state: ProcessingState = ProcessingState.recorded
    state_step: int = 0
    last_error: ProcessingError | None = None
    retry_count: int = 0
    next_eligible_retry_at: datetime | None = None
    upload_progress_percent: int = Field(default=0, ge=0, le=100)
    transcription_job_id: str | None = None
    last_state_change_at: datetime | None = None
    provenance: Provenance = Provenance.local

    @classmethod
    def from_remote(
        cls,
        row: RemoteRecording,
        provenance: Provenance = Provenance.remote,
    ) -> "Recording":
        """Convert a remote row into the device model."""
        return cls(
            id=row.id,
            user_id=row.user_id,
            captured_at=row.timestamp,
            duration_seconds=row.duration,
            audio_location=row.audio_url,
            transcript=row.transcript,
            corrected_transcript=row.corrected_transcript,
            title=row.title,
            state=row.processing_state,
            state_step=row.processing_step,
            last_error=row.processing_error,
            retry_count=row.retry_count,
            next_eligible_retry_at=row.next_retry_at,
            upload_progress_percent=row.upload_progress,
            transcription_job_id=row.transcription_job_id,
            last_state_change_at=row.last_state_change_at,
            provenance=provenance,
        )

    def to_remote(self) -> RemoteRecording:
        """Convert to the remote row shape (device-only fields dropped)."""
        return RemoteRecording(
            id=self.id,
            user_id=self.user_id,
            timestamp=self.captured_at,
            duration=self.duration_seconds,
            audio_url=self.audio_location,
            transcript=self.transcript,
            corrected_transcript=self.corrected_transcript,
            title=self.title,
            processing_state=self.state,
            processing_step=self.state_step,
            processing_error=self.last_error,
            retry_count=self.retry_count,
            next_retry_at=self.next_eligible_retry_at,
            upload_progress=self.upload_progress_percent,
            transcription_job_id=self.transcription_job_id,
            last_state_change_at=self.last_state_change_at,
        )


class RecordingInsert(BaseModel):
    """POST /api/v1/recordings request body."""

    id: str
    timestamp: datetime
    duration: float = 0.0
    audio_url: str | None = None
    transcript: str | None = None
    corrected_transcript: str | None = None
    title: str | None = None


class RecordingPatch(BaseModel):
    """PATCH /api/v1/recordings/{id} body. Pipeline state is not patchable."""

    audio_url: str | None = None
    transcript: str | None = None
    corrected_transcript: str | None = None
    title: str | None = None
    duration: float | None = None
    transcription_job_id: str | None = None


# ---------------------------------------------------------------------------
# RPC
# ---------------------------------------------------------------------------


class TransitionRequest(BaseModel):
    """POST /api/v1/rpc/transition_processing_state body."""

    recording_id: str
    new_state: ProcessingState
    error: ProcessingError | None = None
    progress: int | None = Field(default=None, ge=0, le=100)


class ResetRequest(BaseModel):
    """POST /api/v1/rpc/reset_processing_state body."""

    recording_id: str


# ---------------------------------------------------------------------------
# Change feed
# ---------------------------------------------------------------------------


class RemoteChangeType(StrEnum):
    """Row-level event kinds published by the remote change feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RemoteChange(BaseModel):
    """One change-feed message: ``new`` is the row after the change, ``old_id`` the deleted id."""

    event: RemoteChangeType
    new: RemoteRecording | None = None
    old_id: str | None = None

    @property
    def recording_id(self) -> str:
        if self.new is not None:
            return self.new.id
        return self.old_id or ""

    def to_message(self) -> dict:
        """Serialise to the websocket wire format."""
        return {
            "type": "change",
            "event": self.event.value,
            "new": self.new.model_dump(mode="json") if self.new else None,
            "old": {"id": self.old_id} if self.old_id else None,
        }

    @classmethod
    def from_message(cls, message: dict) -> "RemoteChange":
        old = message.get("old") or {}
        return cls(
            event=RemoteChangeType(message["event"]),
            new=message.get("new"),
            old_id=old.get("id"),
        )


class ChangeType(StrEnum):
    """Normalised change kinds delivered to the Recording Service."""

    add = "add"
    update = "update"
    delete = "delete"


class ChangeSource(StrEnum):
    """Channel that observed a change."""

    push = "push"
    poll = "poll"
    local = "local"  # Device-side capture or sweep


class RecordingChange(BaseModel):
    """A normalised change emitted by the propagation layer."""

    change_type: ChangeType
    recording_id: str
    recording: Recording | None = None
    source: ChangeSource = ChangeSource.push


class RecordingEventType(StrEnum):
    """Kinds of notifications the Recording Service sends its listeners."""

    initial = "initial"
    add = "add"
    update = "update"
    delete = "delete"


class RecordingEvent(BaseModel):
    """Listener notification: the full list for ``initial``, one recording otherwise."""

    type: RecordingEventType
    recordings: list[Recording] = Field(default_factory=list)
    recording_id: str | None = None
    recording: Recording | None = None


# ---------------------------------------------------------------------------
# Pipeline collaborators
# ---------------------------------------------------------------------------


class CorrectionResult(BaseModel):
    """Output of the transcript corrector."""

    corrected_transcript: str
    title: str


class TranscriptionResult(BaseModel):
    """Raw transcript plus its corrected form and generated title."""

    transcript: str
    corrected_transcript: str
    title: str


class WebhookPayload(BaseModel):
    """JSON body posted to the user's webhook endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    timestamp: datetime
    duration: float
    transcript: str | None = None
    corrected_transcript: str | None = Field(default=None, alias="correctedTranscript")
    audio_url: str | None = Field(default=None, alias="audioUrl")

    @classmethod
    def from_recording(cls, recording: Recording) -> "WebhookPayload":
        return cls(
            id=recording.id,
            timestamp=recording.captured_at,
            duration=recording.duration_seconds,
            transcript=recording.transcript,
            corrected_transcript=recording.corrected_transcript or recording.transcript,
            audio_url=recording.audio_location,
        )


class UserProfile(BaseModel):
    """Per-user pipeline settings stored in ``user_profiles``."""

    user_id: str
    webhook_url: str | None = None
    dictionary: list[str] = Field(default_factory=list)


class UserProfileUpdate(BaseModel):
    """PUT /api/v1/profile body."""

    webhook_url: str | None = None
    dictionary: list[str] = Field(default_factory=list)


class SweepResult(BaseModel):
    """Outcome of one offline-enqueue sweep."""

    scanned: int = 0
    inserted: int = 0
    already_present: int = 0
    errors: int = 0


# ---------------------------------------------------------------------------
# Error
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Standard error envelope returned by the API."""

    detail: str
    code: str
    timestamp: datetime
