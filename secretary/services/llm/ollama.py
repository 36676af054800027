"""
Ollama provider for transcript correction on a self-hosted model.

Uses ``ollama.AsyncClient`` against the configured server. JSON mode maps
to Ollama's ``format="json"`` constrained output.
"""

import logging

from ollama import AsyncClient, ResponseError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from secretary.core.config import get_settings
from secretary.services.llm.base import BaseLLM

logger = logging.getLogger(__name__)


class OllamaLLM(BaseLLM):
    """Local correction model served by Ollama.

    Args:
        base_url: Ollama server URL (falls back to settings).
        model: Model tag, e.g. ``llama3.2``.
        temperature: Default sampling temperature.
        num_ctx: Context window; long transcripts need more than the
            server default.
    """

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        temperature: float = 0.2,
        num_ctx: int = 8192,
    ) -> None:
        settings = get_settings()
        self._host = base_url or settings.ollama_base_url
        self._model = model or settings.ollama_model
        self._temperature = temperature
        self._num_ctx = num_ctx
        self._client = AsyncClient(host=self._host)

    def _options(self, temperature: float | None, max_tokens: int | None) -> dict:
        options = {
            "temperature": self._temperature if temperature is None else temperature,
            "num_ctx": self._num_ctx,
        }
        if max_tokens:
            options["num_predict"] = max_tokens
        return options

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=16),
        retry=retry_if_exception_type((ConnectionError, TimeoutError)),
        reraise=True,
    )
    async def _call_api(self, messages: list[dict[str, str]], options: dict, json_mode: bool) -> str:
        try:
            response = await self._client.chat(
                model=self._model,
                messages=messages,
                format="json" if json_mode else None,
                options=options,
            )
        except ConnectionError as exc:
            logger.warning("Ollama at %s unreachable: %s", self._host, exc)
            raise ConnectionError(f"Failed to connect to Ollama at {self._host}: {exc}") from exc
        except TimeoutError as exc:
            logger.warning("Ollama at %s timed out: %s", self._host, exc)
            raise TimeoutError(f"Ollama request timed out ({self._host}): {exc}") from exc
        except ResponseError as exc:
            # Unknown model, bad options: retrying will not help
            logger.error("Ollama rejected the request (%s): %s", self._model, exc)
            raise RuntimeError(f"Ollama error: {exc}") from exc
        return response.message.content or ""

    async def generate(self, prompt: str, **kwargs) -> str:
        system = kwargs.pop("system", None)
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        options = self._options(kwargs.pop("temperature", None), kwargs.pop("max_tokens", None))
        return await self._call_api(messages, options, kwargs.pop("json_mode", False))
