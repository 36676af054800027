"""Integration test fixtures.

``app`` is the real FastAPI application bound to the per-test SQLite
backend from the root conftest, with object storage under ``tmp_path``.
``async_client`` talks to it through ``httpx.ASGITransport``.
"""

import pytest
from helpers import make_settings
from httpx import ASGITransport, AsyncClient

from secretary.api.app import create_app
from secretary.services.storage.objects import LocalObjectStore

API_KEY = "test-key"


@pytest.fixture
def objects(tmp_path):
    return LocalObjectStore(tmp_path / "objects", "http://test/storage")


@pytest.fixture
def app(backend, objects):
    return create_app(make_settings(), backend=backend, objects=objects)


@pytest.fixture
def secured_app(backend, objects):
    return create_app(make_settings(remote_api_key=API_KEY), backend=backend, objects=objects)


@pytest.fixture
async def async_client(app):
    """Async HTTP client for integration tests."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
