"""
Recording REST endpoints.

Owner-scoped CRUD over the remote ``recordings`` table. Pipeline state is
not patchable here; it only changes through the RPC endpoints. All
endpoints delegate to ``RemoteBackend``.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from secretary.api.dependencies import get_backend, get_caller_id
from secretary.core.models import RecordingInsert, RecordingPatch, RemoteRecording
from secretary.services.remote.backend import RemoteBackend

router = APIRouter(prefix="/recordings", tags=["recordings"])


@router.post("", response_model=RemoteRecording, status_code=201)
async def insert_recording(
    body: RecordingInsert,
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
):
    """Insert a freshly captured recording (state ``recorded``)."""
    recording = RemoteRecording(user_id=caller_id, **body.model_dump())
    return await backend.insert_recording(caller_id, recording)


@router.get("", response_model=list[RemoteRecording])
async def list_recordings(
    limit: int | None = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
):
    """List the caller's recordings, newest first."""
    return await backend.list_recordings(caller_id, limit=limit, offset=offset)


@router.get("/eligible", response_model=list[RemoteRecording])
async def list_eligible(
    now: datetime,
    max_retry: int = Query(3, ge=0),
    limit: int = Query(5, ge=1, le=100),
    stalled_before: datetime | None = None,
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
):
    """Recordings the queue driver may work on at *now*, oldest first."""
    return await backend.list_eligible(caller_id, now, max_retry, limit, stalled_before)


@router.get("/{recording_id}", response_model=RemoteRecording)
async def get_recording(
    recording_id: str,
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
):
    return await backend.require_recording(caller_id, recording_id)


@router.patch("/{recording_id}", response_model=RemoteRecording)
async def update_recording(
    recording_id: str,
    body: RecordingPatch,
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
):
    """Patch text fields (transcript, title, audio URL...)."""
    return await backend.update_recording(
        caller_id, recording_id, **body.model_dump(exclude_unset=True)
    )


@router.delete("/{recording_id}")
async def delete_recording(
    recording_id: str,
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
) -> dict:
    deleted = await backend.delete_recording(caller_id, recording_id)
    return {"deleted": deleted}
