"""
Audio object storage endpoints backed by ``LocalObjectStore``.

``PUT /storage/{key}`` stores the raw request body and answers with the
public URL; ``GET`` serves the file back.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse

from secretary.api.dependencies import get_object_store
from secretary.core.exceptions import SecretaryError
from secretary.services.storage.objects import AUDIO_CONTENT_TYPE, LocalObjectStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/storage", tags=["storage"])


def _object_path(objects: LocalObjectStore, key: str):
    try:
        return objects.path_for(key)
    except ValueError as exc:
        raise SecretaryError(detail=str(exc), code="INVALID_KEY", status_code=400) from exc


@router.put("/{key:path}")
async def put_object(
    key: str,
    request: Request,
    objects: LocalObjectStore = Depends(get_object_store),
) -> dict:
    _object_path(objects, key)
    data = await request.body()
    if not data:
        raise SecretaryError(detail="Empty object body", code="EMPTY_OBJECT", status_code=400)
    content_type = request.headers.get("content-type", AUDIO_CONTENT_TYPE)
    url = await objects.put(key, data, content_type)
    return {"url": url}


@router.get("/{key:path}")
async def get_object(key: str, objects: LocalObjectStore = Depends(get_object_store)):
    path = _object_path(objects, key)
    if not path.is_file():
        raise SecretaryError(detail=f"Object not found: {key}", code="OBJECT_NOT_FOUND", status_code=404)
    return FileResponse(path, media_type=AUDIO_CONTENT_TYPE)


@router.delete("/{key:path}")
async def delete_object(key: str, objects: LocalObjectStore = Depends(get_object_store)) -> dict:
    path = _object_path(objects, key)
    existed = path.is_file()
    path.unlink(missing_ok=True)
    if existed:
        logger.info("Deleted object %s", key)
    return {"deleted": existed}
