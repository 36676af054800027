"""Tests for the RecordingService merged view and its merge rules."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from helpers import OTHER_USER_ID, START, USER_ID, SwitchableStore, make_remote, make_settings

from secretary.core.models import (
    ChangeSource,
    ChangeType,
    ProcessingState,
    Provenance,
    Recording,
    RecordingChange,
    RecordingEventType,
)
from secretary.core.utils import KeyedLocks
from secretary.services.sync.enqueue import OfflineEnqueuePath
from secretary.services.sync.recording_service import RecordingService, merge_recordings

S = ProcessingState
LATER = START + timedelta(minutes=5)


def _local(recording_id: str = "rec-1", minutes: int = 0, **fields) -> Recording:
    values = {
        "id": recording_id,
        "user_id": USER_ID,
        "captured_at": START + timedelta(minutes=minutes),
        "last_state_change_at": START,
        "local_audio_path": f"/device/{recording_id}.m4a",
        "provenance": Provenance.local,
    }
    values.update(fields)
    return Recording(**values)


def _change(recording: Recording, change_type=ChangeType.update, source=ChangeSource.push):
    return RecordingChange(
        change_type=change_type, recording_id=recording.id, recording=recording, source=source
    )


@pytest.fixture
def service(store, cache, settings):
    return RecordingService(store, cache, settings=settings, enable_propagation=False)


@pytest.fixture
def events(service):
    received = []

    async def _listener(event):
        received.append(event)

    service.subscribe(_listener)
    return received


# ---------------------------------------------------------------------------
# Merge rules
# ---------------------------------------------------------------------------


class TestMergeRecordings:
    def test_newer_remote_pipeline_wins(self):
        local = _local(state=S.recorded)
        remote = _local(state=S.uploaded, last_state_change_at=LATER, local_audio_path=None)

        merged = merge_recordings(local, remote)

        assert merged.state == S.uploaded
        assert merged.last_state_change_at == LATER
        assert merged.local_audio_path == "/device/rec-1.m4a"
        assert merged.provenance == Provenance.both

    def test_older_remote_pipeline_loses(self):
        local = _local(state=S.uploading, last_state_change_at=LATER)
        remote = _local(state=S.recorded, last_state_change_at=START)
        assert merge_recordings(local, remote).state == S.uploading

    def test_ties_keep_local_unless_requested(self):
        local = _local(state=S.uploading)
        remote = _local(state=S.uploaded)
        assert merge_recordings(local, remote).state == S.uploading
        assert merge_recordings(local, remote, remote_wins_ties=True).state == S.uploaded

    def test_null_remote_text_never_clears(self):
        local = _local(transcript="hello", title="Greeting")
        remote = _local(transcript=None, title="Better title")

        merged = merge_recordings(local, remote)

        assert merged.transcript == "hello"
        assert merged.title == "Better title"


# ---------------------------------------------------------------------------
# Initialize / refresh
# ---------------------------------------------------------------------------


class TestInitialize:
    async def test_merges_cache_and_remote(self, service, store, cache, events):
        await cache.upsert(USER_ID, _local("local-only", minutes=10))
        await store.insert_recording(make_remote("remote-only", timestamp=START))

        recordings = await service.initialize()

        assert [r.id for r in recordings] == ["local-only", "remote-only"]
        assert events[0].type == RecordingEventType.initial
        assert [r.id for r in events[0].recordings] == ["local-only", "remote-only"]
        assert {r.id for r in await cache.load(USER_ID)} == {"local-only", "remote-only"}

    async def test_shared_recording_marked_both(self, service, store, cache):
        await cache.upsert(USER_ID, _local("rec-1"))
        await store.insert_recording(make_remote("rec-1", title="From server"))

        await service.initialize()

        merged = service.get("rec-1")
        assert merged.provenance == Provenance.both
        assert merged.title == "From server"
        assert merged.local_audio_path == "/device/rec-1.m4a"

    async def test_offline_uses_cache(self, service, store, cache):
        await cache.upsert(USER_ID, _local("rec-1"))
        store.online = False

        recordings = await service.initialize()

        assert [r.id for r in recordings] == ["rec-1"]

    async def test_drops_synced_entries_missing_remotely(self, service, cache):
        await cache.upsert(USER_ID, _local("gone", provenance=Provenance.both))
        await cache.upsert(USER_ID, _local("pending"))

        recordings = await service.initialize()

        assert [r.id for r in recordings] == ["pending"]

    async def test_rejects_other_user(self, service):
        with pytest.raises(ValueError):
            await service.initialize(OTHER_USER_ID)

    async def test_applies_pending_remote_delete(self, service, store, cache):
        await store.insert_recording(make_remote("rec-1"))
        await cache.add_tombstone(USER_ID, "rec-1")

        recordings = await service.initialize()

        assert recordings == []
        assert await store.get_recording("rec-1") is None

    async def test_refresh_picks_up_remote_changes(self, service, store):
        await store.insert_recording(make_remote("rec-1"))
        await service.initialize()
        await store.transition_processing_state("rec-1", S.uploading)

        await service.refresh()

        assert service.get("rec-1").state == S.uploading


# ---------------------------------------------------------------------------
# Changes
# ---------------------------------------------------------------------------


class TestApplyChange:
    async def test_add_update_delete_events(self, service, cache, events):
        await service.initialize()
        recording = _local("rec-1", provenance=Provenance.remote, local_audio_path=None)

        await service.apply_change(_change(recording, ChangeType.add))
        await service.apply_change(
            _change(recording.model_copy(update={"state": S.uploading, "last_state_change_at": LATER}))
        )
        await service.apply_change(
            RecordingChange(change_type=ChangeType.delete, recording_id="rec-1")
        )

        assert [e.type for e in events] == [
            RecordingEventType.initial,
            RecordingEventType.add,
            RecordingEventType.update,
            RecordingEventType.delete,
        ]
        assert events[2].recording.state == S.uploading
        assert await cache.load(USER_ID) == []

    async def test_known_id_add_is_merged(self, service, events):
        await service.initialize()
        await service.apply_change(_change(_local("rec-1"), ChangeType.add, ChangeSource.local))

        remote = _local("rec-1", title="Named", local_audio_path=None, provenance=Provenance.remote)
        await service.apply_change(_change(remote, ChangeType.add))

        assert events[-1].type == RecordingEventType.update
        merged = service.get("rec-1")
        assert merged.title == "Named"
        assert merged.local_audio_path == "/device/rec-1.m4a"

    async def test_identical_update_is_silent(self, service, events):
        await service.initialize()
        recording = _local("rec-1")
        await service.apply_change(_change(recording, ChangeType.add, ChangeSource.local))
        count = len(events)

        await service.apply_change(_change(recording, ChangeType.update, ChangeSource.local))

        assert len(events) == count

    async def test_foreign_user_ignored(self, service):
        await service.initialize()
        foreign = _local("rec-1", user_id=OTHER_USER_ID)
        await service.apply_change(_change(foreign, ChangeType.add))
        assert service.recordings == []

    async def test_tombstoned_id_ignored(self, service, store):
        await service.initialize()
        await service.delete_recording("rec-1")

        await service.apply_change(_change(_local("rec-1"), ChangeType.add))

        assert service.get("rec-1") is None

    async def test_delete_of_unknown_id_is_silent(self, service, events):
        await service.initialize()
        await service.apply_change(RecordingChange(change_type=ChangeType.delete, recording_id="x"))
        assert len(events) == 1

    async def test_newest_first_order(self, service):
        await service.initialize()
        for minutes, recording_id in [(1, "b"), (5, "c"), (0, "a")]:
            await service.apply_change(
                _change(_local(recording_id, minutes=minutes), ChangeType.add, ChangeSource.local)
            )
        assert [r.id for r in service.recordings] == ["c", "b", "a"]

    async def test_listener_failure_isolated(self, service, events):
        service.subscribe(AsyncMock(side_effect=RuntimeError("render failed")))
        await service.initialize()
        assert events[0].type == RecordingEventType.initial

    async def test_unsubscribe(self, service):
        listener = AsyncMock()
        unsubscribe = service.subscribe(listener)
        unsubscribe()
        await service.initialize()
        listener.assert_not_awaited()


# ---------------------------------------------------------------------------
# User actions
# ---------------------------------------------------------------------------


class TestUserActions:
    async def test_delete_everywhere(self, service, store, cache, tmp_path, events):
        audio = tmp_path / "rec-1.m4a"
        audio.write_bytes(b"audio")
        await cache.upsert(USER_ID, _local("rec-1", local_audio_path=str(audio)))
        await store.insert_recording(make_remote("rec-1"))
        await service.initialize()

        assert await service.delete_recording("rec-1") is True

        assert service.get("rec-1") is None
        assert not audio.exists()
        assert await store.get_recording("rec-1") is None
        assert "rec-1" in await cache.tombstones(USER_ID)
        assert events[-1].type == RecordingEventType.delete

    async def test_offline_delete_applied_later(self, service, store, cache):
        await store.insert_recording(make_remote("rec-1"))
        await service.initialize()
        store.online = False

        assert await service.delete_recording("rec-1") is True

        store.online = True
        await service.initialize()
        assert await store.get_recording("rec-1") is None

    async def test_delete_unknown(self, service):
        await service.initialize()
        assert await service.delete_recording("nope") is False

    async def test_retry_failed_recording(self, service, store, events):
        await store.insert_recording(make_remote("rec-1"))
        await store.transition_processing_state("rec-1", S.uploading)
        await store.transition_processing_state("rec-1", S.upload_failed)
        await service.initialize()

        assert await service.retry_recording("rec-1") is True

        recording = service.get("rec-1")
        assert recording.state == S.recorded
        assert recording.retry_count == 0
        assert events[-1].type == RecordingEventType.update

    async def test_retry_rejected_for_non_failure(self, service, store):
        await store.insert_recording(make_remote("rec-1"))
        await service.initialize()
        assert await service.retry_recording("rec-1") is False


# ---------------------------------------------------------------------------
# Local changes during a rebuild
# ---------------------------------------------------------------------------


class GatedStore(SwitchableStore):
    """Store whose ``list_recordings`` waits until the gate opens."""

    def __init__(self, backend) -> None:
        super().__init__(backend)
        self.gate = asyncio.Event()
        self.gate.set()
        self.listing = asyncio.Event()

    async def list_recordings(self, limit=None):
        self.listing.set()
        await self.gate.wait()
        return await super().list_recordings(limit)


class HangingDeleteStore(SwitchableStore):
    async def delete_recording(self, recording_id):
        await asyncio.Event().wait()


@pytest.fixture
def gated_store(backend):
    return GatedStore(backend)


@pytest.fixture
def connection():
    return {"online": False}


@pytest.fixture
def wired(gated_store, cache, settings, connection):
    """Recording service and enqueue path sharing locks, as the engine wires them."""
    locks = KeyedLocks()
    service = RecordingService(gated_store, cache, locks, settings, enable_propagation=False)
    enqueue = OfflineEnqueuePath(
        gated_store, cache, locks=locks, is_online=lambda: connection["online"]
    )
    enqueue.add_listener(service.apply_change)
    return service, enqueue


class TestCaptureDuringRebuild:
    async def test_capture_while_initialize_fetches_is_kept(
        self, wired, gated_store, cache, connection
    ):
        service, enqueue = wired
        gated_store.gate.clear()
        initializing = asyncio.create_task(service.initialize())
        await gated_store.listing.wait()

        await enqueue.capture(
            duration_seconds=4.0, local_audio_path="/device/new.m4a", recording_id="new"
        )
        gated_store.gate.set()
        recordings = await initializing

        assert [r.id for r in recordings] == ["new"]
        assert [r.id for r in await cache.load(USER_ID)] == ["new"]

        connection["online"] = True
        result = await enqueue.sweep()

        assert result.inserted == 1
        assert await gated_store.get_recording("new") is not None

    async def test_capture_while_refresh_fetches_is_kept(
        self, wired, gated_store, cache
    ):
        service, enqueue = wired
        await gated_store.insert_recording(make_remote("remote-1"))
        await service.initialize()

        gated_store.listing.clear()
        gated_store.gate.clear()
        refreshing = asyncio.create_task(service.refresh())
        await gated_store.listing.wait()
        await enqueue.capture(
            duration_seconds=4.0, local_audio_path="/device/new.m4a", recording_id="new"
        )
        gated_store.gate.set()
        await refreshing

        assert {r.id for r in service.recordings} == {"remote-1", "new"}
        cached = {r.id: r for r in await cache.load(USER_ID)}
        assert set(cached) == {"remote-1", "new"}
        assert cached["new"].provenance == Provenance.local

    async def test_change_pushed_while_refresh_fetches_is_kept(self, wired, gated_store):
        service, _ = wired
        await service.initialize()

        gated_store.listing.clear()
        gated_store.gate.clear()
        refreshing = asyncio.create_task(service.refresh())
        await gated_store.listing.wait()
        pushed = _local("pushed", provenance=Provenance.remote, local_audio_path=None)
        await service.apply_change(_change(pushed, ChangeType.add))
        gated_store.gate.set()
        await refreshing

        assert service.get("pushed") is not None

    async def test_hanging_pending_delete_is_bounded(self, backend, cache):
        store = HangingDeleteStore(backend)
        await store.insert_recording(make_remote("rec-1"))
        await cache.add_tombstone(USER_ID, "rec-1")
        service = RecordingService(
            store,
            cache,
            settings=make_settings(remote_timeout_seconds=0.05),
            enable_propagation=False,
        )

        recordings = await asyncio.wait_for(service.initialize(), timeout=2.0)

        assert recordings == []
