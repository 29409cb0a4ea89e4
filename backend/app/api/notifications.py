import asyncio
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from app.core import database
from app.core.security import principal_for_token
from app.services.notification_hub import Subscription, get_notification_hub

logger = logging.getLogger(__name__)

router = APIRouter()


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.get()
        await websocket.send_json(event.model_dump(mode="json"))


async def _until_disconnect(websocket: WebSocket) -> None:
    # Client messages are ignored; reading is how a disconnect is noticed
    while True:
        await websocket.receive_text()


@router.websocket("/ws")
async def notifications(websocket: WebSocket, token: str = ""):
    """Push state/progress events for the caller's own videos.

    Browsers cannot set headers on a WebSocket handshake, so the bearer token
    travels as ``?token=``. Missed events are not replayed; reconcile through
    ``GET /videos``.
    """
    try:
        async with database.async_session_factory() as db:
            principal = await principal_for_token(db, token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    hub = get_notification_hub()
    async with hub.subscribe(principal.user_id) as subscription:
        logger.info(f"Notification stream opened for user {principal.user_id}")
        tasks = [
            asyncio.create_task(_forward(websocket, subscription)),
            asyncio.create_task(_until_disconnect(websocket)),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    logger.warning(f"Notification stream for user {principal.user_id} failed: {exc}")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(
                f"Notification stream closed for user {principal.user_id} "
                f"(dropped={subscription.dropped})"
            )
