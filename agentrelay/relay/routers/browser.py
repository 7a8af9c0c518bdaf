"""Browser channel: run / abort / undo / redo over ``WS /`` plus live handler-list pushes."""

from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

from agentrelay.relay.deps import RelayServerDep

router = APIRouter(tags=["browser"])


@router.websocket("/")
async def browser_channel(websocket: WebSocket, server: RelayServerDep) -> None:
    await websocket.accept()
    browser = await server.open_browser(websocket)
    logger.debug("Browser socket opened from {}", websocket.client)
    try:
        while True:
            await server.handle_browser_frame(browser, await websocket.receive_text())
    except WebSocketDisconnect:
        logger.debug("Browser socket from {} disconnected", websocket.client)
    finally:
        # Runs started by this browser have nobody left to stream to.
        await server.close_browser(browser)
