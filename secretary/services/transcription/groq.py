"""
Groq speech-to-text provider.

Posts the audio to Groq's OpenAI-compatible ``/audio/transcriptions``
endpoint with ``httpx``. Transient failures are retried with tenacity.
"""

import logging

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from secretary.core.config import get_settings
from secretary.core.exceptions import TranscribeError
from secretary.services.transcription.base import BaseSTT

logger = logging.getLogger(__name__)


class GroqSTT(BaseSTT):
    """Whisper via the Groq API.

    Args:
        api_key: Groq API key (falls back to settings).
        model: Transcription model, ``whisper-large-v3-turbo`` by default.
        language: ISO language code sent with every request.
        base_url: API root (OpenAI-compatible).
        timeout: Request timeout in seconds.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one).
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        language: str | None = None,
        base_url: str | None = None,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key or settings.groq_api_key
        self._model = model or settings.groq_stt_model
        self._language = language or settings.stt_language
        self._base_url = (base_url or settings.groq_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
        reraise=True,
    )
    async def _call_api(self, audio: bytes, filename: str, language: str) -> str:
        """POST the audio, translating httpx errors to standard exceptions."""
        try:
            response = await self._client.post(
                f"{self._base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                files={"file": (filename, audio, "audio/mp4")},
                data={"model": self._model, "response_format": "json", "language": language},
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("Groq transcription timeout: %s", exc)
            raise TimeoutError(f"Groq transcription timed out: {exc}") from exc
        except httpx.ConnectError as exc:
            logger.warning("Groq connection error: %s", exc)
            raise ConnectionError(f"Failed to connect to Groq: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise TranscribeError(
                f"Transcription failed: {exc.response.text}",
                details={"status_code": exc.response.status_code},
            ) from exc
        return response.json().get("text", "")

    async def transcribe(self, audio: bytes, filename: str = "audio.m4a", **kwargs) -> str:
        if not self._api_key:
            raise TranscribeError("Groq API key not configured")
        language = kwargs.get("language") or self._language
        text = await self._call_api(audio, filename, language)
        logger.debug("Groq transcribed %s: %d chars", filename, len(text))
        return text.strip()
