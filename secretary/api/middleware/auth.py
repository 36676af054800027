"""
Bearer API key middleware.

Validates ``Authorization: Bearer <key>`` on ``/api/v1/`` and ``/storage/``
routes when an API key is configured. Health and docs stay open; the
websocket endpoint checks the key itself.
"""

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

_PROTECTED_PREFIXES = ("/api/v1/", "/storage/")


def bearer_token(authorization: str) -> str | None:
    """Extract the token from an ``Authorization`` header value."""
    if not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer ") :]


class ApiKeyAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests to protected paths without the configured bearer key."""

    def __init__(self, app: ASGIApp, api_key: str = "") -> None:
        super().__init__(app)
        self._api_key = api_key

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # No key configured: open server
        if not self._api_key:
            return await call_next(request)

        if not request.url.path.startswith(_PROTECTED_PREFIXES):
            return await call_next(request)

        token = bearer_token(request.headers.get("authorization", ""))
        if token != self._api_key:
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid API key", "code": "AUTH_REQUIRED"},
            )
        return await call_next(request)
