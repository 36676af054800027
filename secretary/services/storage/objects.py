"""
Audio object storage.

``LocalObjectStore`` keeps objects as files under a directory and is what
the API server exposes at ``/storage``. ``HttpObjectStore`` is the device
side client for that endpoint.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from secretary.core.exceptions import ConnectivityError, SecretaryError

logger = logging.getLogger(__name__)

AUDIO_CONTENT_TYPE = "audio/mp4"


def audio_key(user_id: str, recording_id: str) -> str:
    """Object key for a recording's audio file."""
    return f"{user_id}/{recording_id}.m4a"


class BaseObjectStore(ABC):
    """Abstract blob store addressed by key on write and by URL on read."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = AUDIO_CONTENT_TYPE) -> str:
        """Store *data* under *key* and return its public URL."""

    @abstractmethod
    async def get(self, url: str) -> bytes:
        """Return the bytes behind a URL previously returned by ``put``."""

    @abstractmethod
    async def delete(self, url: str) -> None:
        """Remove the object behind *url* if it exists."""


class LocalObjectStore(BaseObjectStore):
    """Filesystem-backed object store.

    Args:
        root: Directory objects are written under.
        public_url: URL prefix objects are served from.
    """

    def __init__(self, root: str | Path, public_url: str) -> None:
        self._root = Path(root).resolve()
        self._public_url = public_url.rstrip("/")

    def path_for(self, key: str) -> Path:
        """Map *key* to a file under the root.

        Raises:
            ValueError: If the key escapes the root directory.
        """
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root):
            raise ValueError(f"Invalid object key: {key}")
        return path

    def key_for(self, url: str) -> str:
        prefix = f"{self._public_url}/"
        if not url.startswith(prefix):
            raise ValueError(f"URL does not belong to this store: {url}")
        return url[len(prefix) :]

    async def put(self, key: str, data: bytes, content_type: str = AUDIO_CONTENT_TYPE) -> str:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        logger.info("Stored object %s (%d bytes)", key, len(data))
        return f"{self._public_url}/{key}"

    async def get(self, url: str) -> bytes:
        return await asyncio.to_thread(self.path_for(self.key_for(url)).read_bytes)

    async def delete(self, url: str) -> None:
        self.path_for(self.key_for(url)).unlink(missing_ok=True)


class HttpObjectStore(BaseObjectStore):
    """Client for the API server's ``/storage/{key}`` endpoint.

    Args:
        base_url: API server root, e.g. ``http://localhost:8000``.
        api_key: Bearer key when the server requires one.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise ConnectivityError(f"Object storage unreachable: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise SecretaryError(
                detail=f"Object storage returned {exc.response.status_code}",
                code="STORAGE_ERROR",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ConnectivityError(f"Object storage request failed: {exc}") from exc
        return response

    async def put(self, key: str, data: bytes, content_type: str = AUDIO_CONTENT_TYPE) -> str:
        response = await self._request(
            "PUT", f"/storage/{key}", content=data, headers={"Content-Type": content_type}
        )
        return response.json()["url"]

    async def get(self, url: str) -> bytes:
        response = await self._request("GET", url)
        return response.content

    async def delete(self, url: str) -> None:
        await self._request("DELETE", url)

    async def close(self) -> None:
        await self._client.aclose()
