"""
Global error handling for the FastAPI application.

Catches SecretaryError subclasses, Pydantic validation errors, and
unhandled exceptions, converting them into a consistent JSON envelope.
"""

import logging
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from secretary.core.exceptions import SecretaryError
from secretary.core.models import ErrorResponse

logger = logging.getLogger(__name__)


def _envelope(
    status_code: int, detail: str, code: str, timestamp: datetime | str | None = None
) -> JSONResponse:
    body = ErrorResponse(detail=detail, code=code, timestamp=timestamp or datetime.now(UTC))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def register_error_handlers(app: FastAPI) -> None:
    """Attach exception handlers to the FastAPI application.

    1. ``SecretaryError``: domain errors with their own status code.
    2. ``RequestValidationError``: malformed body or params (422).
    3. ``Exception``: anything else (500, no stack trace to the client).
    """

    @app.exception_handler(SecretaryError)
    async def secretary_error_handler(_request: Request, exc: SecretaryError) -> JSONResponse:
        return _envelope(exc.status_code, exc.detail, exc.code, exc.timestamp)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _envelope(422, str(exc), "VALIDATION_ERROR")

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _envelope(500, "Internal server error", "INTERNAL_ERROR")
