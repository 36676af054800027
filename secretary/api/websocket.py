"""WebSocket change feed.

Clients connect to ``/ws/recordings`` with the ``X-User-Id`` header (and
the bearer key when the server has one). The server answers with
``{"type": "subscribed"}`` and then forwards every committed change to the
caller's recordings as ``{"type": "change", "event", "new", "old"}``.
Messages from the client are ignored.
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, status

from secretary.api.dependencies import USER_HEADER
from secretary.api.middleware.auth import bearer_token
from secretary.services.remote.feed import FeedSubscription

logger = logging.getLogger(__name__)

router = APIRouter()


async def _forward(websocket: WebSocket, subscription: FeedSubscription) -> None:
    """Send changes until the subscription is closed."""
    while True:
        change = await subscription.get()
        if change is None:
            return
        await websocket.send_json(change.to_message())


async def _drain(websocket: WebSocket) -> None:
    """Read (and drop) client messages until the client disconnects."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/recordings")
async def recordings_feed(websocket: WebSocket) -> None:
    settings = websocket.app.state.settings
    user_id = (websocket.headers.get(USER_HEADER) or "").strip()
    if settings.remote_api_key:
        token = bearer_token(websocket.headers.get("authorization", ""))
        if token != settings.remote_api_key:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    backend = websocket.app.state.backend
    await websocket.accept()
    subscription = backend.subscribe(user_id)
    await websocket.send_json({"type": "subscribed"})
    logger.info("Change feed client connected for %s", user_id)

    forward = asyncio.create_task(_forward(websocket, subscription))
    drain = asyncio.create_task(_drain(websocket))
    try:
        done, _pending = await asyncio.wait(
            {forward, drain}, return_when=asyncio.FIRST_COMPLETED
        )
        if forward in done:
            if forward.exception() is not None:
                logger.warning("Change feed send failed for %s: %s", user_id, forward.exception())
            else:
                # Feed shut down on the server side
                await websocket.close()
    finally:
        subscription.close()
        for task in (forward, drain):
            task.cancel()
        await asyncio.gather(forward, drain, return_exceptions=True)
        logger.info("Change feed client disconnected for %s", user_id)