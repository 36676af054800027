"""
Remote store client for the Secretary API server.

REST calls go through ``httpx.AsyncClient``; the change feed is a
websocket at ``/ws/recordings``. Transport errors and 5xx responses map to
``ConnectivityError``, other status codes back to the domain exceptions.
"""

import json
import logging
from datetime import datetime

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from secretary.core.exceptions import (
    AuthorizationError,
    ConnectivityError,
    DuplicateRecordingError,
    RecordingNotFoundError,
    SecretaryError,
)
from secretary.core.models import (
    ProcessingError,
    ProcessingState,
    RecordingInsert,
    RemoteChange,
    RemoteRecording,
    UserProfile,
)
from secretary.services.remote.base import ChangeSubscription, RemoteStore

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


class WebSocketChangeSubscription(ChangeSubscription):
    """Change feed over an open, acknowledged websocket connection."""

    def __init__(self, connection) -> None:  # noqa: ANN001
        self._connection = connection

    async def next_change(self) -> RemoteChange:
        while True:
            try:
                raw = await self._connection.recv()
            except ConnectionClosed as exc:
                raise ConnectivityError(f"Change feed disconnected: {exc}") from exc
            try:
                message = json.loads(raw)
                if message.get("type") == "change":
                    return RemoteChange.from_message(message)
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                raise ConnectivityError(f"Malformed change feed message: {exc}") from exc
            logger.debug("Ignoring change feed message of type %s", message.get("type"))

    async def close(self) -> None:
        await self._connection.close()


class HttpRemoteStore(RemoteStore):
    """``RemoteStore`` talking to the API server.

    Args:
        base_url: API server root, e.g. ``http://localhost:8000``.
        user_id: The user this client acts for (sent as ``X-User-Id``).
        api_key: Bearer key when the server requires one.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one
            wired to the ASGI app).
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        api_key: str = "",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._user_id = user_id
        self._headers = {USER_HEADER: user_id}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=timeout)

    @property
    def user_id(self) -> str:
        return self._user_id

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Execute a request, translating failures into domain exceptions.

        Raises:
            ConnectivityError: On transport errors, timeouts and 5xx responses.
            RecordingNotFoundError: On 404 responses for recording paths.
            DuplicateRecordingError: On 409 ``RECORDING_EXISTS``.
            AuthorizationError: On 401/403 responses.
            SecretaryError: On any other error response.
        """
        try:
            response = await self._client.request(method, path, headers=self._headers, **kwargs)
            response.raise_for_status()
            return response
        except httpx.ConnectError as exc:
            raise ConnectivityError(f"Remote store unreachable: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise ConnectivityError(f"Remote store timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise self._map_status(exc.response) from None
        except httpx.HTTPError as exc:
            raise ConnectivityError(f"Network error: {exc}") from exc

    @staticmethod
    def _map_status(response: httpx.Response) -> SecretaryError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = str(body.get("detail") or response.text or response.status_code)
        code = body.get("code", "")
        status = response.status_code
        if status >= 500:
            return ConnectivityError(f"Remote store error {status}: {detail}")
        if status == 404:
            return RecordingNotFoundError(response.request.url.path.rsplit("/", 1)[-1])
        if status == 409 and code == "RECORDING_EXISTS":
            return DuplicateRecordingError(detail.removeprefix("Recording already exists: "))
        if status in (401, 403):
            return AuthorizationError()
        return SecretaryError(detail=detail, code=code or "REMOTE_ERROR", status_code=status)

    # -- health --

    async def ping(self) -> None:
        await self._request("GET", "/health")

    # -- recordings --

    async def insert_recording(self, recording: RemoteRecording) -> RemoteRecording:
        body = RecordingInsert.model_validate(recording.model_dump()).model_dump(mode="json")
        response = await self._request("POST", "/api/v1/recordings", json=body)
        return RemoteRecording.model_validate(response.json())

    async def get_recording(self, recording_id: str) -> RemoteRecording | None:
        try:
            response = await self._request("GET", f"/api/v1/recordings/{recording_id}")
        except RecordingNotFoundError:
            return None
        return RemoteRecording.model_validate(response.json())

    async def list_recordings(self, limit: int | None = None) -> list[RemoteRecording]:
        params = {"limit": limit} if limit is not None else {}
        response = await self._request("GET", "/api/v1/recordings", params=params)
        return [RemoteRecording.model_validate(item) for item in response.json()]

    async def list_eligible(
        self,
        now: datetime,
        max_retry: int,
        limit: int,
        stalled_before: datetime | None = None,
    ) -> list[RemoteRecording]:
        params = {"now": now.isoformat(), "max_retry": max_retry, "limit": limit}
        if stalled_before is not None:
            params["stalled_before"] = stalled_before.isoformat()
        response = await self._request("GET", "/api/v1/recordings/eligible", params=params)
        return [RemoteRecording.model_validate(item) for item in response.json()]

    async def update_recording(self, recording_id: str, **fields) -> RemoteRecording:
        response = await self._request("PATCH", f"/api/v1/recordings/{recording_id}", json=fields)
        return RemoteRecording.model_validate(response.json())

    async def delete_recording(self, recording_id: str) -> bool:
        response = await self._request("DELETE", f"/api/v1/recordings/{recording_id}")
        return bool(response.json().get("deleted"))

    # -- pipeline state RPCs --

    async def transition_processing_state(
        self,
        recording_id: str,
        new_state: ProcessingState,
        error: ProcessingError | None = None,
        progress: int | None = None,
    ) -> bool:
        body = {
            "recording_id": recording_id,
            "new_state": str(new_state),
            "error": error.model_dump(mode="json") if error else None,
            "progress": progress,
        }
        response = await self._request(
            "POST", "/api/v1/rpc/transition_processing_state", json=body
        )
        return bool(response.json())

    async def reset_processing_state(self, recording_id: str) -> bool:
        response = await self._request(
            "POST", "/api/v1/rpc/reset_processing_state", json={"recording_id": recording_id}
        )
        return bool(response.json())

    # -- change feed --

    def _ws_url(self) -> str:
        if self._base_url.startswith("https://"):
            return "wss://" + self._base_url[len("https://") :] + "/ws/recordings"
        return "ws://" + self._base_url.removeprefix("http://") + "/ws/recordings"

    async def subscribe(self) -> ChangeSubscription:
        """Connect to the change feed and wait for the ``subscribed`` message.

        The caller bounds the whole handshake with its subscribe timeout.
        """
        try:
            connection = await websockets.connect(self._ws_url(), additional_headers=self._headers)
        except (OSError, InvalidHandshake) as exc:
            raise ConnectivityError(f"Change feed connection failed: {exc}") from exc
        try:
            message = json.loads(await connection.recv())
        except ConnectionClosed as exc:
            raise ConnectivityError(f"Change feed closed during handshake: {exc}") from exc
        except ValueError as exc:
            await connection.close()
            raise ConnectivityError(f"Malformed change feed handshake: {exc}") from exc
        except BaseException:
            await connection.close()
            raise
        if not isinstance(message, dict) or message.get("type") != "subscribed":
            await connection.close()
            raise ConnectivityError(f"Unexpected change feed handshake: {message!r}")
        logger.info("Change feed subscribed for %s", self._user_id)
        return WebSocketChangeSubscription(connection)

    # -- profile --

    async def get_user_profile(self) -> UserProfile | None:
        response = await self._request("GET", "/api/v1/profile")
        data = response.json()
        return UserProfile.model_validate(data) if data else None

    async def save_user_profile(self, webhook_url: str | None, dictionary: list[str]) -> UserProfile:
        response = await self._request(
            "PUT",
            "/api/v1/profile",
            json={"webhook_url": webhook_url, "dictionary": dictionary},
        )
        return UserProfile.model_validate(response.json())

    async def close(self) -> None:
        await self._client.aclose()
