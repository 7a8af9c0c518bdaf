"""Browser-facing endpoints (RPC-style).

Thin HTTP adapter -- delegates to the relay server.  Every failure of an
invocation is delivered in-band (an ``error`` event or a ``status: error``
body), never as an HTTP error status.
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter
from loguru import logger
from sse_starlette import EventSourceResponse

from agentrelay.relay.deps import RelayServerDep
from agentrelay.relay.models.api import (
    AgentRequest,
    OperationRequest,
    OperationResponse,
    generate_session_id,
)
from agentrelay.relay.models.enums import InvokeMethod, MessageType
from agentrelay.relay.models.protocol import RunPayload

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from agentrelay.relay.server import RelayServer

router = APIRouter(tags=["agent"])


@router.post("/agent")
async def handle_agent(body: AgentRequest, server: RelayServerDep) -> EventSourceResponse:
    """Run a prompt and stream ``status`` / ``error`` / ``done`` events."""
    session_id = body.session_id or generate_session_id()
    agent_id = server.resolve_agent_id(body.agent_id)
    payload = RunPayload(prompt=body.combined_prompt(), options=body.options)
    logger.info("POST /agent session={} agent={}", session_id, agent_id)
    return EventSourceResponse(_event_stream(server, agent_id, session_id, payload), sep="\n")


async def _event_stream(
    server: RelayServer,
    agent_id: str | None,
    session_id: str,
    payload: RunPayload,
) -> AsyncIterator[dict[str, Any]]:
    # Closing this generator (client disconnect) aborts the invocation inside RelayServer.
    async with contextlib.aclosing(server.invoke(agent_id, InvokeMethod.RUN, session_id, payload)) as messages:
        async for message in messages:
            yield {"event": message.type.value, "data": message.content}


@router.post("/abort/{session_id}")
async def handle_abort(session_id: str, server: RelayServerDep) -> dict[str, str]:
    """Fire-and-forget abort; succeeds whether or not the session is running."""
    await server.abort(session_id)
    return {"status": "ok"}


async def _operation(server: RelayServer, method: InvokeMethod, body: OperationRequest | None) -> OperationResponse:
    agent_id = server.resolve_agent_id(body.agent_id if body else None)
    # Undo / redo are not tied to a caller session; the id only labels the invocation.
    session_id = f"{method}-{generate_session_id()}"
    async with contextlib.aclosing(server.invoke(agent_id, method, session_id)) as messages:
        async for message in messages:
            if message.type is MessageType.ERROR:
                return OperationResponse(status="error", message=message.content)
    return OperationResponse(status="ok")


@router.post("/undo", response_model=OperationResponse, response_model_exclude_none=True)
async def handle_undo(server: RelayServerDep, body: OperationRequest | None = None) -> OperationResponse:
    """Undo the most recently completed change of the target agent."""
    return await _operation(server, InvokeMethod.UNDO, body)


@router.post("/redo", response_model=OperationResponse, response_model_exclude_none=True)
async def handle_redo(server: RelayServerDep, body: OperationRequest | None = None) -> OperationResponse:
    """Re-apply the most recently undone change of the target agent."""
    return await _operation(server, InvokeMethod.REDO, body)
