"""Broadcast channel WebSocket endpoint.

Clients connect to /ws and immediately receive global board events. Sending
``{"type": "register", "userId": n}`` binds the connection to user n so it
also receives that user's notifications; the server answers with a
``registered`` frame. ``ping`` is answered with ``pong``. Anything else is
ignored: the channel is push-only from the server's side.

Message formats:
Receive: { "type": "register", "userId": int }
         { "type": "ping" }
Send:    { "type": <topic>, "data": {...} }
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from src.dealflow.sync.messages import (
    PingMessage,
    RegisterMessage,
    parse_client_message,
    pong_message,
    registered_message,
)

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["broadcast"])


@router.websocket("/ws")
async def broadcast_websocket(websocket: WebSocket) -> None:
    registry = getattr(websocket.app.state, "broadcast_registry", None)
    if registry is None:
        await websocket.close(code=1013)
        logger.warning("websocket.registry_unavailable")
        return

    await websocket.accept()
    await registry.connect(websocket)
    user_id: int | None = None

    try:
        while True:
            raw = await websocket.receive_text()
            message = parse_client_message(raw)

            if isinstance(message, RegisterMessage):
                user_id = message.user_id
                await registry.register(websocket, user_id)
                await websocket.send_json(registered_message(user_id).to_wire())
                logger.info("websocket.registered", user_id=user_id)
            elif isinstance(message, PingMessage):
                await websocket.send_json(pong_message().to_wire())
            else:
                logger.debug("websocket.message_ignored")
    except WebSocketDisconnect:
        logger.info("websocket.disconnected", user_id=user_id)
    except Exception:
        logger.warning("websocket.error", user_id=user_id, exc_info=True)
    finally:
        await registry.disconnect(websocket)
