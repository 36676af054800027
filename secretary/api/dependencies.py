"""
Request-scoped dependencies: the shared backend, object store and caller id.
"""

from fastapi import Header, Request

from secretary.core.exceptions import SecretaryError
from secretary.services.remote.backend import RemoteBackend
from secretary.services.storage.objects import LocalObjectStore

USER_HEADER = "X-User-Id"


def get_backend(request: Request) -> RemoteBackend:
    return request.app.state.backend


def get_object_store(request: Request) -> LocalObjectStore:
    return request.app.state.objects


def get_caller_id(x_user_id: str | None = Header(None, alias=USER_HEADER)) -> str:
    """Identity of the caller, taken from the ``X-User-Id`` header.

    Raises:
        SecretaryError: 401 if the header is missing or blank.
    """
    if not x_user_id or not x_user_id.strip():
        raise SecretaryError(
            detail=f"Missing {USER_HEADER} header",
            code="AUTH_REQUIRED",
            status_code=401,
        )
    return x_user_id.strip()
