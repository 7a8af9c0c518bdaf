"""Control channel: remote handlers register and stream results over ``/control``."""

from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

from agentrelay.relay.deps import RelayServerDep

router = APIRouter(tags=["control"])


@router.websocket("/control")
async def control_channel(websocket: WebSocket, server: RelayServerDep) -> None:
    await websocket.accept()
    connection = server.open_connection(websocket)
    logger.debug("Control socket opened from {}", websocket.client)
    try:
        # handle_frame returns False once the remote unregistered and the socket was closed.
        while await server.handle_frame(connection, await websocket.receive_text()):
            pass
    except WebSocketDisconnect:
        logger.debug("Control socket from {} disconnected", websocket.client)
    finally:
        server.close_connection(connection)
