"""User profile endpoints (webhook URL and transcription dictionary)."""

from fastapi import APIRouter, Depends

from secretary.api.dependencies import get_backend, get_caller_id
from secretary.core.models import UserProfile, UserProfileUpdate
from secretary.services.remote.backend import RemoteBackend

router = APIRouter(prefix="/profile", tags=["profile"])


@router.get("", response_model=UserProfile | None)
async def get_profile(
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
):
    """Return the caller's profile, or ``null`` if none was saved yet."""
    return await backend.get_user_profile(caller_id)


@router.put("", response_model=UserProfile)
async def save_profile(
    body: UserProfileUpdate,
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
):
    return await backend.save_user_profile(caller_id, body.webhook_url, body.dictionary)
