"""Tests for the STT providers and the transcription pipeline.

The Groq provider runs against ``httpx.MockTransport``; WhisperSTT uses a
mocked ``WhisperModel`` so no model download or GPU is needed.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from tenacity import wait_none

import secretary.services.transcription.whisper as whisper_module
from secretary.core.exceptions import TranscribeError
from secretary.core.models import CorrectionResult
from secretary.services.correction.corrector import TranscriptCorrector
from secretary.services.transcription import create_stt
from secretary.services.transcription.groq import GroqSTT
from secretary.services.transcription.pipeline import TranscriptionPipeline
from secretary.services.transcription.whisper import WhisperSTT


def _mock_settings(**overrides):
    defaults = {
        "groq_api_key": "gsk-test",
        "groq_stt_model": "whisper-large-v3-turbo",
        "groq_base_url": "https://api.groq.test/openai/v1",
        "stt_language": "en",
        "whisper_model": "tiny",
    }
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


# ---------------------------------------------------------------------------
# Groq
# ---------------------------------------------------------------------------


def _groq(handler, **settings_overrides) -> GroqSTT:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    settings = _mock_settings(**settings_overrides)
    with patch("secretary.services.transcription.groq.get_settings", return_value=settings):
        return GroqSTT(client=client)


class TestGroqSTT:
    async def test_posts_multipart_and_strips_text(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = request.content
            return httpx.Response(200, json={"text": "  hello world \n"})

        text = await _groq(handler).transcribe(b"AUDIO", "capture.m4a")

        assert text == "hello world"
        assert captured["url"] == "https://api.groq.test/openai/v1/audio/transcriptions"
        assert captured["auth"] == "Bearer gsk-test"
        assert b'filename="capture.m4a"' in captured["body"]
        assert b"whisper-large-v3-turbo" in captured["body"]

    async def test_http_error_becomes_transcribe_error(self):
        def handler(request):
            return httpx.Response(400, text="unsupported format")

        with pytest.raises(TranscribeError, match="unsupported format"):
            await _groq(handler).transcribe(b"AUDIO")

    async def test_missing_key(self):
        stt = _groq(lambda request: httpx.Response(200, json={"text": "x"}), groq_api_key="")
        with pytest.raises(TranscribeError, match="not configured"):
            await stt.transcribe(b"AUDIO")

    async def test_connect_error_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused")

        with patch.object(GroqSTT._call_api.retry, "wait", wait_none()):
            with pytest.raises(ConnectionError):
                await _groq(handler).transcribe(b"AUDIO")
        assert len(calls) == 3


# ---------------------------------------------------------------------------
# Whisper (local)
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _clear_model_cache():
    """Ensure the module-level model cache is cleared around each test."""
    original = whisper_module._model_cache
    whisper_module._model_cache = None
    yield
    whisper_module._model_cache = original


def _whisper() -> WhisperSTT:
    with patch("secretary.services.transcription.whisper.get_settings", return_value=_mock_settings()):
        return WhisperSTT()


class TestWhisperSTT:
    async def test_joins_segments(self):
        model = MagicMock()
        segments = [SimpleNamespace(text=" Hello"), SimpleNamespace(text="  "), SimpleNamespace(text="world ")]
        model.transcribe.return_value = (iter(segments), SimpleNamespace(language="en"))
        stt = _whisper()

        with patch.object(WhisperSTT, "_get_model", return_value=model):
            text = await stt.transcribe(b"AUDIO")

        assert text == "Hello world"
        assert model.transcribe.call_args.kwargs["language"] == "en"

    async def test_decoder_failure_becomes_transcribe_error(self):
        model = MagicMock()
        model.transcribe.side_effect = RuntimeError("bad audio")
        stt = _whisper()

        with patch.object(WhisperSTT, "_get_model", return_value=model):
            with pytest.raises(TranscribeError, match="bad audio"):
                await stt.transcribe(b"AUDIO")

    def test_model_loaded_once(self):
        stt = _whisper()
        with patch("secretary.services.transcription.whisper.WhisperModel") as model_cls:
            first = stt._get_model()
            second = stt._get_model()

        assert first is second
        model_cls.assert_called_once_with("tiny", device="cpu", compute_type="int8")


class TestCreateSTT:
    def test_local_alias(self):
        with patch("secretary.services.transcription.whisper.get_settings", return_value=_mock_settings()):
            assert isinstance(create_stt("local"), WhisperSTT)

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown STT provider"):
            create_stt("nope")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestTranscriptionPipeline:
    @pytest.fixture
    def corrector(self):
        corrector = AsyncMock(spec=TranscriptCorrector)
        corrector.correct.return_value = CorrectionResult(
            corrected_transcript="Talked to Kubernetes team.", title="Weekly Sync Notes"
        )
        return corrector

    async def test_runs_stt_then_correction(self, mock_stt, corrector):
        pipeline = TranscriptionPipeline(mock_stt, corrector)

        result = await pipeline.run(b"AUDIO", "a.m4a", ["Kubernetes"])

        assert result.transcript == "talked to kubernetes team."
        assert result.corrected_transcript == "Talked to Kubernetes team."
        assert result.title == "Weekly Sync Notes"
        corrector.correct.assert_awaited_once_with("talked to kubernetes team.", ["Kubernetes"])

    async def test_empty_transcript_fails(self, mock_stt, corrector):
        mock_stt.transcribe.return_value = "   "
        pipeline = TranscriptionPipeline(mock_stt, corrector)

        with pytest.raises(TranscribeError, match="no text"):
            await pipeline.run(b"AUDIO")
        corrector.correct.assert_not_awaited()

    async def test_transport_error_wrapped(self, mock_stt, corrector):
        mock_stt.transcribe.side_effect = ConnectionError("offline")
        pipeline = TranscriptionPipeline(mock_stt, corrector)

        with pytest.raises(TranscribeError, match="offline"):
            await pipeline.run(b"AUDIO")
