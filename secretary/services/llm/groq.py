"""
Groq LLM provider implementation.

Calls Groq's OpenAI-compatible ``/chat/completions`` endpoint with
``httpx``. Includes automatic retries for transient errors.
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
from secretary.services.llm.base import BaseLLM

logger = logging.getLogger(__name__)


class GroqLLM(BaseLLM):
    """Groq chat-completions provider with retry logic."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.3,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key or settings.groq_api_key
        self._model = model or settings.groq_llm_model
        self._base_url = (base_url or settings.groq_base_url).rstrip("/")
        self._temperature = temperature
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
        reraise=True,
    )
    async def _call_api(self, body: dict) -> str:
        """Send a chat request, translating httpx errors to standard exceptions."""
        try:
            response = await self._client.post(
                f"{self._base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json=body,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("Groq API timeout: %s", exc)
            raise TimeoutError(f"Groq API request timed out: {exc}") from exc
        except httpx.ConnectError as exc:
            logger.warning("Groq API connection error: %s", exc)
            raise ConnectionError(f"Failed to connect to Groq API: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 429:
                logger.warning("Groq API rate limit hit")
                raise ConnectionError("Groq API rate limit exceeded") from exc
            raise RuntimeError(f"Groq API error: {exc.response.text}") from exc
        return response.json()["choices"][0]["message"]["content"]

    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate a response; ``json_mode=True`` requests a JSON object."""
        messages = []
        system = kwargs.pop("system", None)
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        body: dict = {
            "model": self._model,
            "messages": messages,
            "temperature": kwargs.pop("temperature", self._temperature),
        }
        if kwargs.pop("json_mode", False):
            body["response_format"] = {"type": "json_object"}
        max_tokens = kwargs.pop("max_tokens", None)
        if max_tokens:
            body["max_tokens"] = max_tokens
        return await self._call_api(body)
