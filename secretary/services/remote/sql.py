"""
Remote store client with direct database access.

Used when the device process and the remote database share a host (and by
the test-suite). The transition authority runs in-process.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import OperationalError

from secretary.core.exceptions import ConnectivityError
from secretary.core.models import (
    ProcessingError,
    ProcessingState,
    RemoteChange,
    RemoteRecording,
    UserProfile,
)
from secretary.services.remote.backend import RemoteBackend
from secretary.services.remote.base import ChangeSubscription, RemoteStore
from secretary.services.remote.feed import FeedSubscription

logger = logging.getLogger(__name__)


class SqlChangeSubscription(ChangeSubscription):
    """Subscription backed by an in-process feed queue (acknowledged immediately)."""

    def __init__(self, subscription: FeedSubscription) -> None:
        self._subscription = subscription

    async def next_change(self) -> RemoteChange:
        change = await self._subscription.get()
        if change is None:
            raise ConnectivityError("Change feed subscription closed")
        return change

    async def close(self) -> None:
        self._subscription.close()


class SqlRemoteStore(RemoteStore):
    """``RemoteStore`` over a ``RemoteBackend`` for one user.

    Args:
        backend: Shared server-side backend.
        user_id: The user this client acts for.
    """

    def __init__(self, backend: RemoteBackend, user_id: str) -> None:
        self._backend = backend
        self._user_id = user_id

    @property
    def user_id(self) -> str:
        return self._user_id

    async def ping(self) -> None:
        try:
            await self._backend.list_recordings(self._user_id, limit=1)
        except OperationalError as exc:
            raise ConnectivityError(f"Database unreachable: {exc}") from exc

    async def insert_recording(self, recording: RemoteRecording) -> RemoteRecording:
        return await self._backend.insert_recording(self._user_id, recording)

    async def get_recording(self, recording_id: str) -> RemoteRecording | None:
        return await self._backend.get_recording(self._user_id, recording_id)

    async def list_recordings(self, limit: int | None = None) -> list[RemoteRecording]:
        return await self._backend.list_recordings(self._user_id, limit=limit)

    async def list_eligible(
        self,
        now: datetime,
        max_retry: int,
        limit: int,
        stalled_before: datetime | None = None,
    ) -> list[RemoteRecording]:
        return await self._backend.list_eligible(
            self._user_id, now, max_retry, limit, stalled_before
        )

    async def update_recording(self, recording_id: str, **fields) -> RemoteRecording:
        return await self._backend.update_recording(self._user_id, recording_id, **fields)

    async def transition_processing_state(
        self,
        recording_id: str,
        new_state: ProcessingState,
        error: ProcessingError | None = None,
        progress: int | None = None,
    ) -> bool:
        return await self._backend.transition_processing_state(
            self._user_id, recording_id, new_state, error, progress
        )

    async def reset_processing_state(self, recording_id: str) -> bool:
        return await self._backend.reset_processing_state(self._user_id, recording_id)

    async def delete_recording(self, recording_id: str) -> bool:
        return await self._backend.delete_recording(self._user_id, recording_id)

    async def subscribe(self) -> ChangeSubscription:
        return SqlChangeSubscription(self._backend.subscribe(self._user_id))

    async def get_user_profile(self) -> UserProfile | None:
        return await self._backend.get_user_profile(self._user_id)

    async def save_user_profile(self, webhook_url: str | None, dictionary: list[str]) -> UserProfile:
        return await self._backend.save_user_profile(self._user_id, webhook_url, dictionary)
