"""HTTP surface: SSE /agent, /abort, /undo, /redo, /health and the /control and browser WebSockets."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from agentrelay.providers.adapter import ProcessAdapter
from agentrelay.relay.app import create_app
from agentrelay.relay.models.messages import AgentMessage
from agentrelay.relay.server import RelayServer

Status = AgentMessage.status
Error = AgentMessage.error
Done = AgentMessage.done


@pytest.fixture
def server() -> RelayServer:
    return RelayServer(provider="alpha")


@pytest.fixture
def app(server: RelayServer, settings) -> FastAPI:
    return create_app(server, settings)


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the app.  The lifespan does NOT run under ``ASGITransport``."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.anyio
async def test_health(client: AsyncClient, server: RelayServer, make_handler) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "provider": "alpha", "handlers": []}

    server.register_handler(make_handler("alpha"))
    assert (await client.get("/health")).json()["handlers"] == ["alpha"]


@pytest.mark.anyio
async def test_agent_streams_sse_events(client: AsyncClient, server: RelayServer, make_handler, parse_sse) -> None:
    handler = make_handler("alpha", [Status("Thinking…"), Status("Using editor…"), Done()])
    server.register_handler(handler)

    response = await client.post(
        "/agent",
        json={"prompt": "fix bug", "content": ["<button/>"], "options": {"model": "m"}, "sessionId": "s1"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert parse_sse(response.text) == [("status", "Thinking…"), ("status", "Using editor…"), ("done", "")]
    prompt, options = handler.calls[0]
    assert prompt == "fix bug\n\n<button/>"
    assert options.session_id == "s1"
    assert options.model == "m"


@pytest.mark.anyio
async def test_agent_generates_session_id(client: AsyncClient, server: RelayServer, make_handler) -> None:
    handler = make_handler("alpha", [Done()])
    server.register_handler(handler)

    await client.post("/agent", json={"prompt": "p"})

    assert handler.calls[0][1].session_id.startswith("session-")


@pytest.mark.anyio
async def test_agent_unknown_handler_is_an_error_event(client: AsyncClient, parse_sse) -> None:
    response = await client.post("/agent", json={"prompt": "p", "sessionId": "s1", "agentId": "ghost"})

    assert response.status_code == 200
    assert parse_sse(response.text) == [("error", 'Handler "ghost" not found')]


@pytest.mark.anyio
async def test_agent_runs_provider_cli_end_to_end(
    client: AsyncClient, server: RelayServer, fake_spec, settings, parse_sse
) -> None:
    server.register_handler(ProcessAdapter(fake_spec, settings=settings))

    response = await client.post("/agent", json={"prompt": "p", "sessionId": "s1", "agentId": "fake"})

    assert parse_sse(response.text) == [("status", "Thinking…"), ("status", "Using editor…"), ("done", "")]


@pytest.mark.anyio
async def test_abort_always_ok(client: AsyncClient) -> None:
    response = await client.post("/abort/nobody")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.anyio
async def test_undo_and_redo(client: AsyncClient, server: RelayServer, make_handler) -> None:
    handler = make_handler("alpha")
    server.register_handler(handler)

    assert (await client.post("/undo")).json() == {"status": "ok"}
    assert (await client.post("/redo", json={"agentId": "alpha"})).json() == {"status": "ok"}
    assert (handler.undone, handler.redone) == (1, 1)


@pytest.mark.anyio
async def test_undo_without_history_returns_error_body(client: AsyncClient, server: RelayServer, fake_spec, settings):
    server.register_handler(ProcessAdapter(fake_spec, settings=settings))

    response = await client.post("/undo", json={"agentId": "fake"})

    assert response.status_code == 200
    assert response.json() == {"status": "error", "message": "Nothing to undo: no completed session"}


@pytest.mark.anyio
async def test_undo_unknown_handler(client: AsyncClient) -> None:
    response = await client.post("/undo", json={"agentId": "ghost"})
    assert response.json() == {"status": "error", "message": 'Handler "ghost" not found'}


@pytest.mark.anyio
async def test_cors_preflight(client: AsyncClient) -> None:
    response = await client.options(
        "/agent",
        headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "POST"},
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"


def test_control_socket_registers_and_unregisters(app: FastAPI, server: RelayServer) -> None:
    client = TestClient(app)

    with client.websocket_connect("/control") as ws:
        ws.send_json({"type": "register-handler", "agentId": "beta"})
        deadline = time.monotonic() + 5
        while "beta" not in client.get("/health").json()["handlers"]:
            assert time.monotonic() < deadline
            time.sleep(0.02)

    deadline = time.monotonic() + 5
    while "beta" in client.get("/health").json()["handlers"]:
        assert time.monotonic() < deadline
        time.sleep(0.02)


def test_browser_socket_lists_handlers_and_streams_runs(app: FastAPI, server: RelayServer, make_handler) -> None:
    server.register_handler(make_handler("alpha", [Status("working"), Done()]))
    # One portal (event loop) shared by both sockets, as in a real server.
    with TestClient(app) as client:
        with client.websocket_connect("/") as ws:
            assert ws.receive_json() == {"type": "handlers", "handlers": ["alpha"]}

            ws.send_json({"type": "agent-request", "sessionId": "b1", "context": {"prompt": "p", "content": []}})

            assert ws.receive_json() == {"type": "agent-status", "agentId": "alpha", "sessionId": "b1", "content": "working"}
            assert ws.receive_json() == {"type": "agent-done", "agentId": "alpha", "sessionId": "b1"}

            with client.websocket_connect("/control") as control:
                control.send_json({"type": "register-handler", "agentId": "beta"})
                assert ws.receive_json() == {"type": "handlers", "handlers": ["alpha", "beta"]}
