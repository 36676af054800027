"""
Transcription pipeline: speech-to-text followed by correction.
"""

import logging

from secretary.core.exceptions import TranscribeError
from secretary.core.models import TranscriptionResult
from secretary.services.correction.corrector import TranscriptCorrector
from secretary.services.transcription.base import BaseSTT

logger = logging.getLogger(__name__)


class TranscriptionPipeline:
    """Runs STT then the transcript corrector for one recording.

    Args:
        stt: Speech-to-text provider.
        corrector: Title / dictionary corrector.
    """

    def __init__(self, stt: BaseSTT, corrector: TranscriptCorrector) -> None:
        self._stt = stt
        self._corrector = corrector

    async def run(
        self,
        audio: bytes,
        filename: str = "audio.m4a",
        dictionary: list[str] | None = None,
    ) -> TranscriptionResult:
        """Transcribe and correct *audio*.

        Raises:
            TranscribeError: If the STT call fails or returns no speech.
        """
        try:
            transcript = await self._stt.transcribe(audio, filename)
        except TranscribeError:
            raise
        except (ConnectionError, TimeoutError, RuntimeError) as exc:
            raise TranscribeError(f"Transcription failed: {exc}") from exc
        if not transcript or not transcript.strip():
            raise TranscribeError("Transcription returned no text")

        correction = await self._corrector.correct(transcript, dictionary)
        logger.info("Transcribed %s: %d chars, title %r", filename, len(transcript), correction.title)
        return TranscriptionResult(
            transcript=transcript,
            corrected_transcript=correction.corrected_transcript,
            title=correction.title,
        )
