"""Tests for the bearer API key middleware."""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from secretary.api.middleware.auth import ApiKeyAuthMiddleware, bearer_token


def _app(api_key: str) -> FastAPI:
    app = FastAPI()
    app.add_middleware(ApiKeyAuthMiddleware, api_key=api_key)

    @app.get("/api/v1/ping")
    async def ping():
        return {"ok": True}

    @app.get("/storage/{key:path}")
    async def storage(key: str):
        return {"key": key}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


async def _get(app: FastAPI, path: str, headers: dict | None = None):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get(path, headers=headers or {})


def test_bearer_token():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("") is None


class TestApiKeyAuthMiddleware:
    async def test_open_without_configured_key(self):
        response = await _get(_app(""), "/api/v1/ping")
        assert response.status_code == 200

    @pytest.mark.parametrize("path", ["/api/v1/ping", "/storage/u/r.m4a"])
    async def test_protected_paths_need_key(self, path):
        response = await _get(_app("secret"), path)

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"

    async def test_correct_key_passes(self):
        response = await _get(_app("secret"), "/api/v1/ping", {"Authorization": "Bearer secret"})
        assert response.json() == {"ok": True}

    async def test_wrong_scheme_rejected(self):
        response = await _get(_app("secret"), "/api/v1/ping", {"Authorization": "secret"})
        assert response.status_code == 401

    async def test_unprotected_path_open(self):
        response = await _get(_app("secret"), "/health")
        assert response.status_code == 200
