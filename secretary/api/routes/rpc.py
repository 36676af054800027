"""
Pipeline state RPCs.

The only way to change ``processing_state``. Both return a bare JSON
boolean: ``false`` means the authority rejected the request (illegal edge,
not eligible, unknown or foreign recording).
"""

from fastapi import APIRouter, Depends

from secretary.api.dependencies import get_backend, get_caller_id
from secretary.core.models import ResetRequest, TransitionRequest
from secretary.services.remote.backend import RemoteBackend

router = APIRouter(prefix="/rpc", tags=["rpc"])


@router.post("/transition_processing_state", response_model=bool)
async def transition_processing_state(
    body: TransitionRequest,
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
) -> bool:
    return await backend.transition_processing_state(
        caller_id, body.recording_id, body.new_state, body.error, body.progress
    )


@router.post("/reset_processing_state", response_model=bool)
async def reset_processing_state(
    body: ResetRequest,
    caller_id: str = Depends(get_caller_id),
    backend: RemoteBackend = Depends(get_backend),
) -> bool:
    """Manual retry: put a failed recording back in line with a fresh retry budget."""
    return await backend.reset_processing_state(caller_id, body.recording_id)
