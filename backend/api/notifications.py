"""
WebSocket endpoint that streams install and quota notifications to the
signed-in user.
"""

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from backend.api.dependencies import get_ws_install_service
from backend.auth.auth_handler import get_user_id_from_token
from backend.utils.verbosity_logger import get_logger

logger = get_logger("websocket.notifications")

router = APIRouter(tags=["notifications"])


async def _sender(websocket: WebSocket, queue: asyncio.Queue):
    while True:
        payload = await queue.get()
        await websocket.send_json(payload)


@router.websocket("/notifications/ws")
async def notifications_ws(websocket: WebSocket):
    """
    Authenticate with ``?token=<jwt>``, then receive every notification
    published for that user until the client disconnects.
    """
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4000, reason="Authentication token required")
        return

    user_id = get_user_id_from_token(token)
    if user_id is None:
        await websocket.close(code=4001, reason="Invalid authentication token")
        return

    service = get_ws_install_service(websocket)
    if service is None or service.registry is None:
        await websocket.close(code=1011, reason="Notifications unavailable")
        return

    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def deliver(payload):
        # Publishers may run on executor threads
        loop.call_soon_threadsafe(queue.put_nowait, payload)

    unregister = service.registry.register(user_id, deliver)
    sender = asyncio.create_task(_sender(websocket, queue))
    await websocket.send_json({"type": "connected", "userId": user_id})

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Notification socket closed for user %s", user_id)
    except RuntimeError as e:
        logger.warning("Notification socket error for user %s: %s", user_id, e)
    finally:
        unregister()
        sender.cancel()
