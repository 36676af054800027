"""Test helpers shared by unit and integration tests."""

import asyncio
from datetime import UTC, datetime, timedelta

from secretary.core.config import Settings
from secretary.core.exceptions import ConnectivityError
from secretary.core.models import RemoteRecording
from secretary.services.remote.backend import RemoteBackend
from secretary.services.remote.sql import SqlRemoteStore

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
START = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Await until *predicate()* is true; fail after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def make_settings(**overrides) -> Settings:
    """Settings with test-friendly intervals and no .env lookup."""
    values = {
        "user_id": USER_ID,
        "max_retry_count": 3,
        "retry_base_seconds": 60.0,
        "retry_cap_seconds": 1920.0,
        "queue_interval_seconds": 0.05,
        "queue_batch_size": 5,
        "stalled_after_seconds": 600.0,
        "upload_timeout_seconds": 2.0,
        "transcribe_timeout_seconds": 2.0,
        "webhook_timeout_seconds": 2.0,
        "remote_timeout_seconds": 2.0,
        "subscribe_timeout_seconds": 1.0,
        "poll_interval_seconds": 0.05,
        "poll_initial_delay_seconds": 0.0,
        "poll_fetch_limit": 50,
        "reconnect_first_delay_seconds": 0.05,
        "reconnect_base_delay_seconds": 0.02,
        "reconnect_max_delay_seconds": 0.1,
        "reconnect_max_attempts": 5,
        "connectivity_probe_seconds": 0.0,
        "webhook_url": "",
        "remote_api_key": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_remote(recording_id: str = "rec-1", user_id: str = USER_ID, **fields) -> RemoteRecording:
    """Build a wire row with sensible defaults."""
    values = {"id": recording_id, "user_id": user_id, "timestamp": START, "duration": 12.5}
    values.update(fields)
    return RemoteRecording(**values)


class SwitchableStore(SqlRemoteStore):
    """``SqlRemoteStore`` that can be switched off to simulate lost connectivity."""

    def __init__(self, backend: RemoteBackend, user_id: str = USER_ID) -> None:
        super().__init__(backend, user_id)
        self.online = True
        self.subscribe_fails = False

    def _check(self) -> None:
        if not self.online:
            raise ConnectivityError("simulated outage")

    async def ping(self) -> None:
        self._check()
        await super().ping()

    async def insert_recording(self, recording):
        self._check()
        return await super().insert_recording(recording)

    async def get_recording(self, recording_id):
        self._check()
        return await super().get_recording(recording_id)

    async def list_recordings(self, limit=None):
        self._check()
        return await super().list_recordings(limit)

    async def list_eligible(self, now, max_retry, limit, stalled_before=None):
        self._check()
        return await super().list_eligible(now, max_retry, limit, stalled_before)

    async def delete_recording(self, recording_id):
        self._check()
        return await super().delete_recording(recording_id)

    async def reset_processing_state(self, recording_id):
        self._check()
        return await super().reset_processing_state(recording_id)

    async def get_user_profile(self):
        self._check()
        return await super().get_user_profile()

    async def subscribe(self):
        self._check()
        if self.subscribe_fails:
            raise ConnectivityError("simulated subscribe failure")
        return await super().subscribe()

    async def update_recording(self, recording_id, **fields):
        self._check()
        return await super().update_recording(recording_id, **fields)

    async def transition_processing_state(self, recording_id, new_state, error=None, progress=None):
        self._check()
        return await super().transition_processing_state(recording_id, new_state, error, progress)

    async def save_user_profile(self, webhook_url, dictionary):
        self._check()
        return await super().save_user_profile(webhook_url, dictionary)
