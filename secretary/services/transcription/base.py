"""
Abstract base class for Speech-to-Text providers.

All STT implementations (Groq API, local Whisper) must implement this
interface, enabling provider-agnostic transcription in the queue driver.
"""

from abc import ABC, abstractmethod


class BaseSTT(ABC):
    """Interface that every STT provider must implement."""

    @abstractmethod
    async def transcribe(self, audio: bytes, filename: str = "audio.m4a", **kwargs) -> str:
        """Transcribe an audio file to text.

        Args:
            audio: Encoded audio bytes (m4a/mp4 from the device recorder).
            filename: Name hint used for format detection.
            **kwargs: Provider-specific options (language, etc.).

        Returns:
            The transcript text (may be empty for silence).
        """
