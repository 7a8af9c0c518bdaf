"""Host election for the shared relay port.

Every provider process runs a ``RelayConnection``.  At startup it probes
``GET /health`` on the well-known port:

* healthy -> become a **remote**: register the local handler with the host
  over the ``/control`` WebSocket;
* unreachable -> become the **host**: release stale listeners, bind the port,
  serve the relay app with the local handler registered in-process.

The OS enforces a single listener per port.  Losing the race between the
probe and the bind surfaces as ``BindConflictError`` and falls back to the
remote role against the process that won.  The role never changes after
``start()``.
"""

from __future__ import annotations

import asyncio
import errno
import os
import signal
import socket
from typing import TYPE_CHECKING

import httpx
import uvicorn
from loguru import logger
from sse_starlette.sse import AppStatus

from agentrelay.relay.app import create_app
from agentrelay.relay.errors import BindConflictError, RelayError
from agentrelay.relay.models.enums import RelayRole
from agentrelay.relay.remote import RemoteHandlerClient
from agentrelay.relay.server import RelayServer
from agentrelay.relay.settings import get_settings

if TYPE_CHECKING:
    from agentrelay.relay.handler import Handler
    from agentrelay.relay.settings import RelaySettings


# ---------------------------------------------------------------------------
# Port helpers
# ---------------------------------------------------------------------------


async def probe_health(host: str, port: int, timeout: float = 1.0) -> bool:
    """Return ``True`` if a relay answers ``GET /health`` on the port."""
    url = f"http://{host}:{port}/health"
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
    except httpx.HTTPError as exc:
        logger.debug("Health probe {} failed: {!r}", url, exc)
        return False
    if response.status_code != 200:
        return False
    try:
        return response.json().get("status") == "ok"
    except ValueError:
        return False


async def release_stale_port(port: int) -> int:
    """Kill leftover listeners on the port (best-effort).  Returns how many were killed.

    Only runs after a failed health probe, so whatever still listens there is
    not a working relay -- usually a crashed earlier run.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "lsof",
            "-ti",
            f"tcp:{port}",
            "-sTCP:LISTEN",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await proc.communicate()
    except OSError as exc:
        logger.debug("Cannot look up listeners on port {}: {}", port, exc)
        return 0

    killed = 0
    own_pid = os.getpid()
    for token in stdout.split():
        try:
            pid = int(token)
        except ValueError:
            continue
        if pid == own_pid:
            continue
        try:
            os.kill(pid, signal.SIGKILL)
        except OSError as exc:
            logger.debug("Could not kill stale listener {}: {}", pid, exc)
        else:
            killed += 1
    if killed:
        logger.warning("Killed {} stale listener(s) on port {}", killed, port)
    return killed


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind and listen.  Raises ``BindConflictError`` if the port is taken."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
        sock.listen(2048)
    except OSError as exc:
        sock.close()
        if exc.errno == errno.EADDRINUSE:
            raise BindConflictError(host, port) from exc
        raise
    sock.set_inheritable(True)
    return sock


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class RelayConnection:
    """Decides and holds this process's role for the relay port.

    ``handler`` is the local provider; ``None`` runs a bare relay host that
    only routes to remote handlers (and fails if a host already exists).
    """

    def __init__(self, handler: Handler | None, settings: RelaySettings | None = None) -> None:
        self.handler = handler
        self.settings = settings or get_settings()
        self.role: RelayRole | None = None
        self.server: RelayServer | None = None
        self.client: RemoteHandlerClient | None = None
        self._uvicorn: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None

    @property
    def host(self) -> str:
        return self.settings.host

    @property
    def port(self) -> int:
        return self.settings.port

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> RelayRole:
        """Become host or remote.  Called once; the role is fixed afterwards."""
        if self.role is not None:
            msg = f"Relay connection already started as {self.role}"
            raise RelayError(msg)

        timeout = self.settings.health_check_timeout
        if await probe_health(self.host, self.port, timeout):
            await self._become_remote()
            return self.role

        try:
            await self._become_host()
        except BindConflictError:
            logger.info("Port {} was taken after the health probe, retrying as remote", self.port)
            await asyncio.sleep(self.settings.post_kill_delay)
            if not await probe_health(self.host, self.port, timeout):
                raise
            await self._become_remote()
        return self.role

    async def stop(self) -> None:
        """Leave the relay: drain and stop the host, or unregister the remote."""
        if self.role is RelayRole.HOST:
            await self._stop_host()
        elif self.role is RelayRole.REMOTE and self.client is not None:
            await self.client.close()
        if self.handler is not None:
            await self.handler.close(self.settings.graceful_shutdown_timeout)

    async def wait_closed(self) -> None:
        """Block until the host server exits or the remote client is closed."""
        if self._serve_task is not None:
            await asyncio.shield(self._serve_task)
        elif self.client is not None:
            await self.client.wait_closed()

    # -- Host ------------------------------------------------------------------

    async def _become_host(self) -> None:
        if self.settings.release_stale_port:
            await release_stale_port(self.port)
            await asyncio.sleep(self.settings.post_kill_delay)
        sock = bind_socket(self.host, self.port)

        server = RelayServer(provider=self.handler.agent_id if self.handler else None)
        if self.handler is not None:
            server.register_handler(self.handler)
        app = create_app(server, self.settings)

        config = uvicorn.Config(
            app,
            log_level="warning",  # uvicorn's own logging is intercepted by loguru
            timeout_graceful_shutdown=int(self.settings.graceful_shutdown_timeout) + 5,
        )
        self._uvicorn = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._uvicorn.serve(sockets=[sock]), name="relay-host")
        while not self._uvicorn.started:
            if self._serve_task.done():
                sock.close()
                await self._serve_task
                msg = f"Relay server on port {self.port} exited during startup"
                raise RelayError(msg)
            await asyncio.sleep(0.05)

        self.server = server
        self.role = RelayRole.HOST
        logger.info("Relay host listening on {} (provider={})", self.base_url, server.provider)

    async def _stop_host(self) -> None:
        if self.server is not None:
            await self.server.shutdown(self.settings.graceful_shutdown_timeout)
        # Streams are drained; let sse-starlette close whatever is left.
        AppStatus.should_exit = True
        if self._uvicorn is not None:
            self._uvicorn.should_exit = True
        if self._serve_task is not None:
            await self._serve_task
        logger.info("Relay host on port {} stopped", self.port)

    # -- Remote ----------------------------------------------------------------

    async def _become_remote(self) -> None:
        if self.handler is None:
            msg = f"A relay host is already running on port {self.port}"
            raise RelayError(msg)
        url = f"ws://{self.host}:{self.port}/control"
        self.client = RemoteHandlerClient(self.handler, url, reconnect_delay=self.settings.reconnect_delay)
        await self.client.connect()
        self.role = RelayRole.REMOTE
        logger.info("Relay remote: {} registered with host on port {}", self.handler.agent_id, self.port)
