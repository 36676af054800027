"""
Integration tests for HttpRemoteStore against the real API app.

REST calls go through ``httpx.ASGITransport``; the websocket subscription
is exercised with a fake connection object.
"""

import json

import httpx
import pytest
from helpers import OTHER_USER_ID, START, USER_ID, make_remote
from websockets.exceptions import ConnectionClosedOK
from websockets.frames import Close

from secretary.core.exceptions import (
    AuthorizationError,
    ConnectivityError,
    DuplicateRecordingError,
    RecordingNotFoundError,
)
from secretary.core.models import ProcessingError, ProcessingState, RemoteChangeType
from secretary.services.remote.http import HttpRemoteStore, WebSocketChangeSubscription

S = ProcessingState


@pytest.fixture
async def http_store(app):
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    store = HttpRemoteStore("http://test", USER_ID, client=client)
    yield store
    await store.close()


# ---------------------------------------------------------------------------
# REST round trips
# ---------------------------------------------------------------------------


class TestRecordings:
    async def test_ping(self, http_store):
        await http_store.ping()

    async def test_insert_get_list(self, http_store):
        created = await http_store.insert_recording(make_remote("rec-1", transcript="hello"))

        assert created.user_id == USER_ID
        assert created.transcript == "hello"
        assert (await http_store.get_recording("rec-1")).timestamp == START
        assert [r.id for r in await http_store.list_recordings()] == ["rec-1"]

    async def test_get_missing_returns_none(self, http_store):
        assert await http_store.get_recording("nope") is None

    async def test_duplicate_insert(self, http_store):
        await http_store.insert_recording(make_remote("rec-1"))

        with pytest.raises(DuplicateRecordingError):
            await http_store.insert_recording(make_remote("rec-1"))

    async def test_update_and_delete(self, http_store):
        await http_store.insert_recording(make_remote("rec-1"))

        updated = await http_store.update_recording("rec-1", title="Standup")
        assert updated.title == "Standup"

        assert await http_store.delete_recording("rec-1") is True
        assert await http_store.delete_recording("rec-1") is False

    async def test_update_missing_raises_not_found(self, http_store):
        with pytest.raises(RecordingNotFoundError):
            await http_store.update_recording("nope", title="x")

    async def test_update_foreign_raises_authorization(self, http_store, backend):
        await backend.insert_recording(OTHER_USER_ID, make_remote("theirs", user_id=OTHER_USER_ID))

        with pytest.raises(AuthorizationError):
            await http_store.update_recording("theirs", title="x")

    async def test_list_eligible(self, http_store):
        await http_store.insert_recording(make_remote("rec-1"))

        eligible = await http_store.list_eligible(START, 3, 5, stalled_before=START)

        assert [r.id for r in eligible] == ["rec-1"]


class TestStateRpcs:
    async def test_transition_with_error_and_reset(self, http_store):
        await http_store.insert_recording(make_remote("rec-1"))
        assert await http_store.transition_processing_state("rec-1", S.uploading, progress=10)

        error = ProcessingError(message="disk full", code="UPLOAD_ERROR")
        assert await http_store.transition_processing_state("rec-1", S.upload_failed, error)

        row = await http_store.get_recording("rec-1")
        assert row.processing_error.code == "UPLOAD_ERROR"
        assert row.retry_count == 1

        assert await http_store.reset_processing_state("rec-1") is True
        assert (await http_store.get_recording("rec-1")).retry_count == 0

    async def test_rejected_transition(self, http_store):
        await http_store.insert_recording(make_remote("rec-1"))

        assert await http_store.transition_processing_state("rec-1", S.webhook_sent) is False


class TestProfile:
    async def test_save_and_get(self, http_store):
        assert await http_store.get_user_profile() is None

        await http_store.save_user_profile("https://hooks.test/a", ["gRPC"])

        profile = await http_store.get_user_profile()
        assert profile.webhook_url == "https://hooks.test/a"
        assert profile.dictionary == ["gRPC"]


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _mock_store(handler) -> HttpRemoteStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://remote.test")
    return HttpRemoteStore("http://remote.test", USER_ID, api_key="secret", client=client)


class TestErrorMapping:
    async def test_connect_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(ConnectivityError):
            await _mock_store(handler).list_recordings()

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        with pytest.raises(ConnectivityError):
            await _mock_store(handler).ping()

    async def test_server_error_is_connectivity(self):
        store = _mock_store(lambda request: httpx.Response(503, json={"detail": "down"}))

        with pytest.raises(ConnectivityError, match="503"):
            await store.list_recordings()

    async def test_unauthorized(self):
        store = _mock_store(lambda request: httpx.Response(401, json={"detail": "Invalid API key"}))

        with pytest.raises(AuthorizationError):
            await store.list_recordings()

    async def test_sends_identity_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["user"] = request.headers["X-User-Id"]
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json=[])

        await _mock_store(handler).list_recordings()

        assert seen == {"user": USER_ID, "auth": "Bearer secret"}

    def test_websocket_url(self):
        assert _mock_store(None)._ws_url() == "ws://remote.test/ws/recordings"
        secure = HttpRemoteStore("https://remote.test/", USER_ID)
        assert secure._ws_url() == "wss://remote.test/ws/recordings"


# ---------------------------------------------------------------------------
# Change feed subscription
# ---------------------------------------------------------------------------


class _FakeConnection:
    """Stands in for a websockets client connection."""

    def __init__(self, messages):
        self._messages = list(messages)
        self.closed = False

    async def recv(self):
        if not self._messages:
            raise ConnectionClosedOK(Close(1000, "bye"), None)
        return self._messages.pop(0)

    async def close(self):
        self.closed = True


class TestWebSocketChangeSubscription:
    async def test_skips_non_change_messages(self):
        row = make_remote("rec-1").model_dump(mode="json")
        connection = _FakeConnection(
            [
                json.dumps({"type": "ping"}),
                json.dumps({"type": "change", "event": "INSERT", "new": row, "old": None}),
                json.dumps({"type": "change", "event": "DELETE", "new": None, "old": {"id": "rec-1"}}),
            ]
        )
        subscription = WebSocketChangeSubscription(connection)

        insert = await subscription.next_change()
        delete = await subscription.next_change()

        assert insert.event == RemoteChangeType.INSERT
        assert insert.new.id == "rec-1"
        assert delete.event == RemoteChangeType.DELETE
        assert delete.recording_id == "rec-1"

    async def test_disconnect_is_connectivity_error(self):
        subscription = WebSocketChangeSubscription(_FakeConnection([]))

        with pytest.raises(ConnectivityError, match="disconnected"):
            await subscription.next_change()

    @pytest.mark.parametrize(
        "raw",
        [
            "{not json",
            json.dumps(["change"]),
            json.dumps({"type": "change", "event": "UPSERT"}),
            json.dumps({"type": "change"}),
            json.dumps({"type": "change", "event": "INSERT", "new": {"id": "rec-1"}}),
        ],
    )
    async def test_malformed_message_is_connectivity_error(self, raw):
        subscription = WebSocketChangeSubscription(_FakeConnection([raw]))

        with pytest.raises(ConnectivityError, match="Malformed"):
            await subscription.next_change()

    async def test_close(self):
        connection = _FakeConnection([])
        await WebSocketChangeSubscription(connection).close()
        assert connection.closed
