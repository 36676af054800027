"""
Abstract base class for LLM providers.

All LLM implementations (Groq, Claude, Ollama) must implement this interface,
enabling provider-agnostic transcript correction.
"""

from abc import ABC, abstractmethod


class BaseLLM(ABC):
    """Interface that every LLM provider must implement."""

    @abstractmethod
    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate a free-form text response.

        Args:
            prompt: The user prompt to send to the model.
            **kwargs: Provider-specific options (system, temperature,
                max_tokens, json_mode).

        Returns:
            The model's text response.
        """
