"""FastAPI dependency injection for the relay server.

Usage in route handlers::

    @router.post("/abort/{session_id}")
    async def abort(session_id: str, server: RelayServerDep) -> dict:
        ...

Works for both HTTP and WebSocket routes.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.requests import HTTPConnection

from agentrelay.relay.server import RelayServer


def get_relay_server(connection: HTTPConnection) -> RelayServer:
    """Return the ``RelayServer`` attached by ``create_app``."""
    server: RelayServer | None = getattr(connection.app.state, "relay_server", None)
    if server is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relay server not initialised.",
        )
    return server


# -- Annotated type aliases for concise route signatures ---------------------

RelayServerDep = Annotated[RelayServer, Depends(get_relay_server)]
"""Annotated dependency: the process's relay server."""
