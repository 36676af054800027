"""
Claude provider for transcript correction.

Talks to the Messages API through ``anthropic.AsyncAnthropic``. JSON mode
is done by prefilling the assistant turn with ``{`` so the answer starts
inside the object the corrector parses.
"""

import asyncio
import logging

from anthropic import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
    RateLimitError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from secretary.core.config import get_settings
from secretary.services.llm.base import BaseLLM

logger = logging.getLogger(__name__)

JSON_PREFILL = "{"


def _response_text(response) -> str:  # noqa: ANN001
    """Concatenate the text blocks of a Messages API response."""
    return "".join(getattr(block, "text", "") for block in response.content)


class ClaudeLLM(BaseLLM):
    """Claude correction model.

    Args:
        api_key: Anthropic key (falls back to settings).
        model: Model id (falls back to settings).
        max_tokens: Upper bound for the corrected transcript plus title.
        temperature: Sampling temperature; corrections want it low.
        max_concurrent: Requests allowed in flight at once.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        max_tokens: int = 2048,
        temperature: float = 0.2,
        max_concurrent: int = 2,
    ) -> None:
        settings = get_settings()
        self._model = model or settings.claude_model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._client = AsyncAnthropic(api_key=api_key or settings.claude_api_key)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
        reraise=True,
    )
    async def _call_api(self, request: dict) -> str:
        """Run one Messages API request.

        Timeouts become ``TimeoutError``; connection failures and rate
        limits become ``ConnectionError`` (both retried); any other API
        status becomes ``RuntimeError``.
        """
        async with self._semaphore:
            try:
                response = await self._client.messages.create(**request)
            except APITimeoutError as exc:
                logger.warning("Claude request timed out: %s", exc)
                raise TimeoutError(f"Claude request timed out: {exc}") from exc
            except APIConnectionError as exc:
                logger.warning("Claude unreachable: %s", exc)
                raise ConnectionError(f"Failed to connect to Claude: {exc}") from exc
            except RateLimitError as exc:
                logger.warning("Claude rate limited: %s", exc)
                raise ConnectionError(f"Claude rate limit exceeded: {exc}") from exc
            except APIStatusError as exc:
                logger.error("Claude rejected the request: %s", exc)
                raise RuntimeError(f"Claude API error: {exc}") from exc
        if getattr(response, "stop_reason", None) == "max_tokens":
            logger.warning("Claude answer truncated at %d tokens", request["max_tokens"])
        return _response_text(response)

    async def generate(self, prompt: str, **kwargs) -> str:
        json_mode = kwargs.pop("json_mode", False)
        temperature = kwargs.pop("temperature", None)
        messages = [{"role": "user", "content": prompt}]
        if json_mode:
            messages.append({"role": "assistant", "content": JSON_PREFILL})
        request: dict = {
            "model": self._model,
            "max_tokens": kwargs.pop("max_tokens", None) or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
            "messages": messages,
        }
        system = kwargs.pop("system", None)
        if system:
            request["system"] = system
        text = await self._call_api(request)
        return JSON_PREFILL + text if json_mode else text
