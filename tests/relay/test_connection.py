"""Host election on a real port: probe, bind, remote fallback, live forwarding."""

from __future__ import annotations

import socket
from collections.abc import Callable

import anyio
import httpx
import pytest

from agentrelay.relay import connection as connection_module
from agentrelay.relay.connection import RelayConnection, bind_socket, probe_health
from agentrelay.relay.errors import BindConflictError, RelayError
from agentrelay.relay.models.enums import InvokeMethod, RelayRole
from agentrelay.relay.models.messages import AgentMessage
from agentrelay.relay.models.protocol import RunPayload
from agentrelay.relay.settings import RelaySettings

Status = AgentMessage.status
Done = AgentMessage.done


async def _eventually(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.02)


@pytest.fixture
def port_settings(settings: RelaySettings, free_port: int) -> RelaySettings:
    return settings.model_copy(update={"port": free_port})


# ---------------------------------------------------------------------------
# Port helpers
# ---------------------------------------------------------------------------


def test_bind_conflict(free_port: int) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
        taken.bind(("127.0.0.1", free_port))
        taken.listen(1)
        with pytest.raises(BindConflictError) as exc_info:
            bind_socket("127.0.0.1", free_port)
    assert exc_info.value.port == free_port


@pytest.mark.anyio
async def test_probe_health_unreachable(free_port: int) -> None:
    assert await probe_health("127.0.0.1", free_port, timeout=0.5) is False


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_first_process_hosts_second_becomes_remote(port_settings: RelaySettings, make_handler, parse_sse) -> None:
    alpha = make_handler("alpha", [Status("Thinking…"), Done()])
    beta = make_handler("beta", [Status("Thinking…"), Status("Using editor…")])
    host = RelayConnection(alpha, port_settings)
    remote = RelayConnection(beta, port_settings)

    try:
        assert await host.start() is RelayRole.HOST
        assert await probe_health("127.0.0.1", port_settings.port)
        assert await remote.start() is RelayRole.REMOTE
        await _eventually(lambda: "beta" in host.server.handler_ids)

        async with httpx.AsyncClient(base_url=host.base_url, timeout=10) as client:
            health = (await client.get("/health")).json()
            assert health == {"status": "ok", "provider": "alpha", "handlers": ["alpha", "beta"]}

            response = await client.post("/agent", json={"prompt": "fix", "sessionId": "s2", "agentId": "beta"})
            assert parse_sse(response.text) == [("status", "Thinking…"), ("status", "Using editor…"), ("done", "")]

            response = await client.post("/agent", json={"prompt": "fix", "sessionId": "s1"})
            assert parse_sse(response.text) == [("status", "Thinking…"), ("done", "")]

        assert beta.calls[0][0] == "fix"
        assert beta.calls[0][1].session_id == "s2"

        await remote.stop()
        await _eventually(lambda: "beta" not in host.server.handler_ids)
    finally:
        await remote.stop()
        await host.stop()


@pytest.mark.anyio
async def test_abort_reaches_remote_handler(port_settings: RelaySettings, make_handler) -> None:
    beta = make_handler("beta", [Status("working")], hang=True)
    host = RelayConnection(None, port_settings)
    remote = RelayConnection(beta, port_settings)

    try:
        await host.start()
        await remote.start()
        await _eventually(lambda: "beta" in host.server.handler_ids)

        received = []
        with anyio.fail_after(10):
            async for message in host.server.invoke("beta", InvokeMethod.RUN, "s9", RunPayload(prompt="p")):
                received.append(message)
                await host.server.abort("s9")

        assert received == [Status("working")]
        await _eventually(lambda: beta.aborted == ["s9"])
        # The finished run leaves no abort bookkeeping behind.
        await _eventually(lambda: not remote.client._runs and not remote.client._aborted)
    finally:
        await remote.stop()
        await host.stop()


@pytest.mark.anyio
async def test_lost_bind_race_falls_back_to_remote(
    port_settings: RelaySettings, make_handler, monkeypatch: pytest.MonkeyPatch
) -> None:
    host = RelayConnection(make_handler("alpha"), port_settings)
    remote = RelayConnection(make_handler("beta"), port_settings)
    real_probe = connection_module.probe_health
    probes = []

    async def first_probe_misses(host_: str, port: int, timeout: float = 1.0) -> bool:
        probes.append(port)
        if len(probes) == 1:
            return False
        return await real_probe(host_, port, timeout)

    try:
        await host.start()
        monkeypatch.setattr(connection_module, "probe_health", first_probe_misses)

        assert await remote.start() is RelayRole.REMOTE
        assert len(probes) == 2
        await _eventually(lambda: "beta" in host.server.handler_ids)
    finally:
        await remote.stop()
        await host.stop()


@pytest.mark.anyio
async def test_bare_relay_cannot_join_existing_host(port_settings: RelaySettings, make_handler) -> None:
    host = RelayConnection(make_handler("alpha"), port_settings)
    try:
        await host.start()
        with pytest.raises(RelayError, match="already running"):
            await RelayConnection(None, port_settings).start()
    finally:
        await host.stop()


@pytest.mark.anyio
async def test_remote_reconnects_to_new_host(port_settings: RelaySettings, make_handler) -> None:
    first_host = RelayConnection(make_handler("alpha"), port_settings)
    remote = RelayConnection(make_handler("beta"), port_settings)
    second_host = RelayConnection(make_handler("gamma"), port_settings)

    try:
        await first_host.start()
        await remote.start()
        await _eventually(lambda: "beta" in first_host.server.handler_ids)

        await first_host.stop()
        assert await second_host.start() is RelayRole.HOST
        await _eventually(lambda: "beta" in second_host.server.handler_ids)
        assert remote.role is RelayRole.REMOTE
        assert remote.client.connected
    finally:
        await remote.stop()
        await second_host.stop()
        await first_host.stop()
