"""Tests for scripts/retry_failed.py."""

import importlib.util
from pathlib import Path

import pytest
from helpers import OTHER_USER_ID, USER_ID, make_remote

from secretary.core.models import ProcessingState

S = ProcessingState
SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "retry_failed.py"


@pytest.fixture(scope="module")
def script():
    spec = importlib.util.spec_from_file_location("retry_failed", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


async def _fail_upload(backend, recording_id: str, times: int, user_id: str = USER_ID):
    await backend.insert_recording(user_id, make_remote(recording_id, user_id=user_id))
    for _ in range(times):
        assert await backend.transition_processing_state(user_id, recording_id, S.uploading)
        assert await backend.transition_processing_state(user_id, recording_id, S.upload_failed)


class TestRetryFailed:
    async def test_resets_only_exhausted_failures(self, script, backend, capsys):
        await _fail_upload(backend, "exhausted", times=3)
        await _fail_upload(backend, "pending", times=1)
        await backend.insert_recording(USER_ID, make_remote("healthy"))

        reset, rejected = await script.retry_failed(backend, USER_ID, max_retry=3)

        assert (reset, rejected) == (1, 0)
        exhausted = await backend.get_recording(USER_ID, "exhausted")
        assert exhausted.processing_state == S.recorded
        assert exhausted.retry_count == 0
        pending = await backend.get_recording(USER_ID, "pending")
        assert pending.processing_state == S.upload_failed
        assert "RESET exhausted" in capsys.readouterr().out

    async def test_include_pending(self, script, backend):
        await _fail_upload(backend, "exhausted", times=3)
        await _fail_upload(backend, "pending", times=1)

        reset, _ = await script.retry_failed(backend, USER_ID, max_retry=3, include_pending=True)

        assert reset == 2
        assert (await backend.get_recording(USER_ID, "pending")).retry_count == 0

    async def test_other_users_untouched(self, script, backend):
        await _fail_upload(backend, "theirs", times=3, user_id=OTHER_USER_ID)

        assert await script.retry_failed(backend, USER_ID, max_retry=3) == (0, 0)
        theirs = await backend.get_recording(OTHER_USER_ID, "theirs")
        assert theirs.processing_state == S.upload_failed
