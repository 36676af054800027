"""
Abstract Remote Store Client.

The device engine talks to the remote source of truth only through this
interface. Implementations: ``SqlRemoteStore`` (direct database access)
and ``HttpRemoteStore`` (API server over HTTP + websocket). All methods
act for one user, fixed at construction.

Transport failures raise ``ConnectivityError``.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from secretary.core.models import (
    ProcessingError,
    ProcessingState,
    RemoteChange,
    RemoteRecording,
    UserProfile,
)


class ChangeSubscription(ABC):
    """An acknowledged change-feed subscription."""

    @abstractmethod
    async def next_change(self) -> RemoteChange:
        """Wait for the next change.

        Raises:
            ConnectivityError: When the subscription is lost or closed.
        """

    @abstractmethod
    async def close(self) -> None:
        """Stop receiving changes."""

    def __aiter__(self):
        return self

    async def __anext__(self) -> RemoteChange:
        return await self.next_change()


class RemoteStore(ABC):
    """Interface every remote store client must implement."""

    @property
    @abstractmethod
    def user_id(self) -> str:
        """The user this client acts for."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise ``ConnectivityError`` unless the store is reachable."""

    @abstractmethod
    async def insert_recording(self, recording: RemoteRecording) -> RemoteRecording:
        """Insert a new recording.

        Raises:
            DuplicateRecordingError: If a recording with the same id exists.
        """

    @abstractmethod
    async def get_recording(self, recording_id: str) -> RemoteRecording | None:
        """Return one recording, or ``None`` if it does not exist."""

    @abstractmethod
    async def list_recordings(self, limit: int | None = None) -> list[RemoteRecording]:
        """Return the user's recordings, newest capture time first."""

    @abstractmethod
    async def list_eligible(
        self,
        now: datetime,
        max_retry: int,
        limit: int,
        stalled_before: datetime | None = None,
    ) -> list[RemoteRecording]:
        """Return recordings ready for the queue driver, oldest capture time first."""

    @abstractmethod
    async def update_recording(self, recording_id: str, **fields) -> RemoteRecording:
        """Patch non-state fields (audio_url, transcript, title, ...)."""

    @abstractmethod
    async def transition_processing_state(
        self,
        recording_id: str,
        new_state: ProcessingState,
        error: ProcessingError | None = None,
        progress: int | None = None,
    ) -> bool:
        """Ask the transition authority to move a recording. ``False`` = rejected."""

    @abstractmethod
    async def reset_processing_state(self, recording_id: str) -> bool:
        """Manual retry of a failed recording. ``False`` = rejected."""

    @abstractmethod
    async def delete_recording(self, recording_id: str) -> bool:
        """Delete a recording. ``False`` if it did not exist."""

    @abstractmethod
    async def subscribe(self) -> ChangeSubscription:
        """Open a change-feed subscription and wait for its acknowledgment.

        Raises:
            ConnectivityError: If the subscription is refused or fails.
        """

    @abstractmethod
    async def get_user_profile(self) -> UserProfile | None:
        """Return the user's pipeline settings, or ``None`` if never saved."""

    @abstractmethod
    async def save_user_profile(self, webhook_url: str | None, dictionary: list[str]) -> UserProfile:
        """Create or replace the user's pipeline settings."""

    async def close(self) -> None:  # noqa: B027
        """Release connections. Default: no-op."""
