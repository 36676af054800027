"""Whisper STT implementation using faster-whisper.

The WhisperModel is loaded lazily and cached at module level to avoid
repeated initialization overhead. Decoding runs in a worker thread.
"""

import asyncio
import io
import logging

from faster_whisper import WhisperModel

from secretary.core.config import get_settings
from secretary.core.exceptions import TranscribeError
from secretary.services.transcription.base import BaseSTT

logger = logging.getLogger(__name__)

_model_cache: WhisperModel | None = None


class WhisperSTT(BaseSTT):
    """Speech-to-text provider using faster-whisper (CTranslate2).

    Args:
        model_size: Whisper model size (tiny, base, small, medium, large-v3).
        device: Computation device ("cpu" or "cuda").
        compute_type: CTranslate2 compute type ("int8", "float16", etc.).
        language: ISO language code, or None to auto-detect.
    """

    def __init__(
        self,
        model_size: str | None = None,
        device: str = "cpu",
        compute_type: str = "int8",
        language: str | None = None,
    ) -> None:
        settings = get_settings()
        self._model_size = model_size or settings.whisper_model
        self._device = device
        self._compute_type = compute_type
        self._language = language or settings.stt_language or None

    def _get_model(self) -> WhisperModel:
        """Return the cached WhisperModel, loading it on first use."""
        global _model_cache  # noqa: PLW0603
        if _model_cache is None:
            logger.info(
                "Loading Whisper model: %s (device=%s, compute=%s)",
                self._model_size,
                self._device,
                self._compute_type,
            )
            _model_cache = WhisperModel(
                self._model_size,
                device=self._device,
                compute_type=self._compute_type,
            )
        return _model_cache

    def _run_transcription(self, audio: bytes, language: str | None) -> str:
        """Run synchronous transcription (CPU-bound).

        Must be called via asyncio.to_thread(). The segment iterator is
        materialized inside this function to avoid CTranslate2
        thread-safety issues.
        """
        model = self._get_model()
        segments, _info = model.transcribe(
            io.BytesIO(audio),
            language=language,
            beam_size=5,
            vad_filter=True,
        )
        return " ".join(seg.text.strip() for seg in segments if seg.text.strip())

    async def transcribe(self, audio: bytes, filename: str = "audio.m4a", **kwargs) -> str:
        language = kwargs.get("language") or self._language
        try:
            return await asyncio.to_thread(self._run_transcription, audio, language)
        except (RuntimeError, ValueError, OSError) as exc:
            logger.error("Whisper transcription failed for %s: %s", filename, exc)
            raise TranscribeError(f"Local transcription failed: {exc}") from exc
