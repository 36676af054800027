"""Shared pytest fixtures for the Secretary test suite.

Provides a file-backed SQLite remote store, an in-memory device cache, a
controllable clock, settings with short intervals and mock pipeline
collaborators.
"""

from unittest.mock import AsyncMock

import pytest
from helpers import USER_ID, FakeClock, SwitchableStore, make_settings, wait_until
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from secretary.core.models import TranscriptionResult
from secretary.services.processing.state_machine import BackoffPolicy
from secretary.services.remote.backend import RemoteBackend
from secretary.services.storage.cache import LocalCacheStore
from secretary.services.storage.database import Base
from secretary.services.storage.kv import MemoryKeyValueStore

# ---------------------------------------------------------------------------
# Time & settings
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def eventually():
    """Await until a zero-argument predicate holds (fails after a timeout)."""
    return wait_until


@pytest.fixture
def settings():
    return make_settings()


# ---------------------------------------------------------------------------
# Remote store
# ---------------------------------------------------------------------------


@pytest.fixture
async def db_engine(tmp_path):
    """SQLite engine on a temp file with all remote tables, disposed after the test."""
    from secretary.services.storage import models_db  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'remote.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def repository(db_session):
    """Return a RecordingRepository bound to the test session."""
    from secretary.services.storage.repository import RecordingRepository

    return RecordingRepository(db_session)


@pytest.fixture
def backend(session_factory, clock):
    return RemoteBackend(session_factory, policy=BackoffPolicy(60.0, 1920.0), clock=clock)


@pytest.fixture
def store(backend):
    return SwitchableStore(backend, USER_ID)


# ---------------------------------------------------------------------------
# Device cache
# ---------------------------------------------------------------------------


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def cache(kv, clock):
    return LocalCacheStore(kv, ttl_seconds=86_400, clock=clock)


# ---------------------------------------------------------------------------
# Pipeline collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_llm():
    """Mock LLM returning a valid correction answer."""
    from secretary.services.llm.base import BaseLLM

    llm = AsyncMock(spec=BaseLLM)
    llm.generate.return_value = (
        '{"title": "Weekly Sync Notes", "corrected": "Talked to Kubernetes team."}'
    )
    return llm


@pytest.fixture
def mock_stt():
    from secretary.services.transcription.base import BaseSTT

    stt = AsyncMock(spec=BaseSTT)
    stt.transcribe.return_value = "talked to kubernetes team."
    return stt


@pytest.fixture
def mock_pipeline():
    from secretary.services.transcription.pipeline import TranscriptionPipeline

    pipeline = AsyncMock(spec=TranscriptionPipeline)
    pipeline.run.return_value = TranscriptionResult(
        transcript="talked to kubernetes team.",
        corrected_transcript="Talked to Kubernetes team.",
        title="Weekly Sync Notes",
    )
    return pipeline


@pytest.fixture
def mock_webhooks():
    from secretary.services.webhook.client import WebhookClient

    return AsyncMock(spec=WebhookClient)


@pytest.fixture
def audio_file(tmp_path):
    """A small fake m4a file on the device."""
    path = tmp_path / "device" / "capture.m4a"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\x00\x00\x00\x18ftypM4A fake audio")
    return path
