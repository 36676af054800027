"""
Transcript correction and title generation.

Asks the configured LLM for a short title and a corrected transcript that
honours the user's dictionary terms. Correction is best effort: any LLM or
parsing failure falls back to the raw transcript and a placeholder title.
"""

import json
import logging

from secretary.core.models import CorrectionResult
from secretary.core.utils import strip_code_fences
from secretary.services.llm.base import BaseLLM

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Recording"

SYSTEM_PROMPT = (
    "You are a helpful assistant that generates titles and corrects transcripts. "
    "Always return valid JSON."
)


def build_prompt(transcript: str, dictionary: list[str]) -> str:
    """Build the user prompt for title generation and dictionary correction."""
    terms = ", ".join(dictionary)
    return (
        "Given this transcript, perform two tasks:\n\n"
        "1. Generate a concise 3-5 word title that captures the main topic\n"
        "2. Correct the transcript for proper capitalization and spelling of these "
        f"dictionary terms: {terms}\n\n"
        f'Transcript: "{transcript}"\n\n'
        "Return JSON in this exact format:\n"
        "{\n"
        '  "title": "Generated Title Here",\n'
        '  "corrected": "Corrected transcript here"\n'
        "}"
    )


class TranscriptCorrector:
    """Generates a title and dictionary-corrected transcript with an LLM.

    Args:
        llm: An LLM provider implementing ``BaseLLM``.
    """

    def __init__(self, llm: BaseLLM) -> None:
        self._llm = llm

    async def correct(self, transcript: str, dictionary: list[str] | None = None) -> CorrectionResult:
        """Return the corrected transcript and a title.

        Never raises for LLM problems; the fallback is the input transcript
        with the title ``"Untitled Recording"``.
        """
        fallback = CorrectionResult(corrected_transcript=transcript, title=DEFAULT_TITLE)
        prompt = build_prompt(transcript, dictionary or [])
        try:
            raw_response = await self._llm.generate(
                prompt, system=SYSTEM_PROMPT, temperature=0.3, json_mode=True
            )
        except (ConnectionError, TimeoutError, RuntimeError) as exc:
            logger.warning("Transcript correction failed, keeping raw transcript: %s", exc)
            return fallback

        try:
            data = json.loads(strip_code_fences(raw_response))
        except json.JSONDecodeError:
            logger.warning("Invalid JSON from corrector: %s", raw_response[:200])
            return fallback
        if not isinstance(data, dict):
            return fallback

        corrected = data.get("corrected")
        title = data.get("title")
        return CorrectionResult(
            corrected_transcript=corrected if isinstance(corrected, str) and corrected else transcript,
            title=title.strip() if isinstance(title, str) and title.strip() else DEFAULT_TITLE,
        )
