"""Correction module - LLM title generation and dictionary correction."""

from secretary.services.correction.corrector import DEFAULT_TITLE, TranscriptCorrector

__all__ = ["DEFAULT_TITLE", "TranscriptCorrector"]
