"""
Secretary exception hierarchy.

All application-specific exceptions inherit from SecretaryError,
enabling centralized error handling in the API middleware layer and
uniform capture into ``Recording.last_error`` by the queue driver.
"""

from datetime import UTC, datetime
from typing import Any


class SecretaryError(Exception):
    """Base exception for all Secretary errors."""

    def __init__(
        self,
        detail: str = "An unexpected error occurred",
        code: str = "SECRETARY_ERROR",
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.detail = detail
        self.code = code
        self.status_code = status_code
        self.details = details
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    @property
    def message(self) -> str:
        return self.detail


# ---------------------------------------------------------------------------
# Pipeline stage errors (captured into last_error, never raised to the UI)
# ---------------------------------------------------------------------------


class UploadError(SecretaryError):
    """Raised when pushing audio to object storage fails."""

    def __init__(
        self,
        detail: str = "Upload failed",
        code: str = "UPLOAD_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail=detail, code=code, status_code=502, details=details)


class TranscribeError(SecretaryError):
    """Raised when transcription or correction of a recording fails."""

    def __init__(
        self,
        detail: str = "Transcription failed",
        code: str = "TRANSCRIBE_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail=detail, code=code, status_code=502, details=details)


class WebhookError(SecretaryError):
    """Raised when the webhook endpoint rejects or never receives a payload."""

    def __init__(
        self,
        detail: str = "Webhook delivery failed",
        code: str = "WEBHOOK_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail=detail, code=code, status_code=502, details=details)


# ---------------------------------------------------------------------------
# Remote store errors
# ---------------------------------------------------------------------------


class AuthorizationError(SecretaryError):
    """Raised when the caller does not own the recording it tries to mutate."""

    def __init__(self, recording_id: str | None = None) -> None:
        super().__init__(
            detail=f"Not allowed to modify recording: {recording_id}",
            code="NOT_AUTHORIZED",
            status_code=403,
            details={"recording_id": recording_id} if recording_id else None,
        )


class ConnectivityError(SecretaryError):
    """Raised when the remote store cannot be reached (transient)."""

    def __init__(self, detail: str = "Remote store unreachable") -> None:
        super().__init__(detail=detail, code="CONNECTIVITY_ERROR", status_code=503)


class RecordingNotFoundError(SecretaryError):
    """Raised when a recording ID does not exist."""

    def __init__(self, recording_id: str) -> None:
        super().__init__(
            detail=f"Recording not found: {recording_id}",
            code="RECORDING_NOT_FOUND",
            status_code=404,
        )


class DuplicateRecordingError(SecretaryError):
    """Raised when inserting a recording whose ID already exists remotely."""

    def __init__(self, recording_id: str) -> None:
        super().__init__(
            detail=f"Recording already exists: {recording_id}",
            code="RECORDING_EXISTS",
            status_code=409,
        )


class InvalidTransitionError(SecretaryError):
    """Raised when a processing state change is not an edge of the state machine."""

    def __init__(self, current_state: str, attempted_state: str, allowed: list[str]) -> None:
        super().__init__(
            detail=f"Invalid processing state transition: {current_state} -> {attempted_state}",
            code="INVALID_TRANSITION",
            status_code=409,
            details={
                "current_state": current_state,
                "attempted_state": attempted_state,
                "allowed_next_states": allowed,
            },
        )


class EngineAlreadyRunningError(SecretaryError):
    """Raised when starting a sync engine while another one is active."""

    def __init__(self, user_id: str) -> None:
        super().__init__(
            detail=f"A sync engine is already running for {user_id}",
            code="ENGINE_ALREADY_RUNNING",
            status_code=409,
        )
