"""Remote-handler side of the control channel.

A process that lost the host election keeps its provider ``Handler`` local
and registers it with the host over ``ws://<host>:<port>/control``.  Every
``invoke-handler`` frame is executed here; ``run`` streams its messages
back as ``agent-status`` / ``agent-error`` / ``agent-done`` frames, each run
in its own task so sessions never wait on each other.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from agentrelay.relay.errors import RelayError, SessionBusyError
from agentrelay.relay.handler import RunOptions
from agentrelay.relay.models.enums import InvokeMethod
from agentrelay.relay.models.messages import AgentMessage
from agentrelay.relay.models.protocol import (
    AgentEvent,
    InvokeHandler,
    RegisterHandler,
    RunPayload,
    UnregisterHandler,
    dump_frame,
    parse_frame,
)

if TYPE_CHECKING:
    from collections.abc import Coroutine

    from agentrelay.relay.handler import Handler
    from agentrelay.relay.models.protocol import _Frame


class RemoteHandlerClient:
    """Keeps one handler registered with the host and serves its invocations.

    If the socket drops without ``close()`` being called, in-flight runs are
    aborted and the client reconnects every ``reconnect_delay`` seconds.
    """

    def __init__(self, handler: Handler, url: str, *, reconnect_delay: float = 1.0) -> None:
        self.handler = handler
        self.url = url
        self.reconnect_delay = reconnect_delay
        self._ws: ClientConnection | None = None
        self._runs: dict[str, asyncio.Task[None]] = {}
        self._aborted: set[str] = set()
        self._receiver: asyncio.Task[None] | None = None
        self._closing = False
        self._closed = asyncio.Event()

    @property
    def agent_id(self) -> str:
        return self.handler.agent_id

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closing

    # -- Lifecycle -------------------------------------------------------------

    async def connect(self) -> None:
        """Open the control socket and register.  Raises if the host is unreachable."""
        await self._open()
        self._receiver = asyncio.create_task(self._receive_loop(), name=f"relay-remote-{self.agent_id}")

    async def close(self) -> None:
        """Unregister, abort in-flight runs and close the socket."""
        if self._closing:
            return
        self._closing = True
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(ConnectionClosed):
                await self._send(UnregisterHandler(agent_id=self.agent_id))
        await self._abort_all()
        if ws is not None:
            await ws.close()
        if self._receiver is not None:
            self._receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receiver
        self._closed.set()
        logger.info("Remote handler {} disconnected from {}", self.agent_id, self.url)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _open(self) -> None:
        self._ws = await connect(self.url)
        await self._send(RegisterHandler(agent_id=self.agent_id))
        logger.info("Registered {} with relay host at {}", self.agent_id, self.url)

    async def _receive_loop(self) -> None:
        while not self._closing:
            ws = self._ws
            if ws is not None:
                try:
                    async for data in ws:
                        await self._handle(data)
                except ConnectionClosed:
                    pass
            if self._closing:
                break
            self._ws = None
            logger.warning("Lost connection to relay host, reconnecting every {}s", self.reconnect_delay)
            await self._abort_all()
            await self._reconnect()

    async def _reconnect(self) -> None:
        while not self._closing:
            await asyncio.sleep(self.reconnect_delay)
            try:
                await self._open()
            except (OSError, WebSocketException) as exc:
                logger.debug("Reconnect to {} failed: {}", self.url, exc)
            else:
                return

    # -- Invocations -----------------------------------------------------------

    async def _handle(self, data: str | bytes) -> None:
        try:
            frame = parse_frame(data)
        except ValidationError as exc:
            logger.warning("Ignoring malformed control frame ({} errors)", exc.error_count())
            return
        if not isinstance(frame, InvokeHandler):
            logger.warning("Unexpected {} frame from host, ignored", frame.type)
            return

        session_id = frame.session_id
        match frame.method:
            case InvokeMethod.RUN:
                if session_id in self._runs:
                    await self._send_message(session_id, AgentMessage.error(str(SessionBusyError(session_id))))
                    return
                self._aborted.discard(session_id)
                payload = frame.payload or RunPayload(prompt="")
                self._start(session_id, self._execute_run(session_id, payload))
            case InvokeMethod.ABORT:
                if session_id in self._runs:
                    self._aborted.add(session_id)
                await self.handler.abort(session_id)
            case InvokeMethod.UNDO | InvokeMethod.REDO:
                self._start(session_id, self._execute_operation(session_id, frame.method))

    def _start(self, session_id: str, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro, name=f"relay-invoke-{session_id}")
        self._runs[session_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._runs.get(session_id) is done:
                del self._runs[session_id]
                self._aborted.discard(session_id)

        task.add_done_callback(_forget)

    async def _execute_run(self, session_id: str, payload: RunPayload) -> None:
        options = RunOptions.from_payload(session_id, payload.options)
        try:
            async with contextlib.aclosing(self.handler.run(payload.prompt, options)) as messages:
                async for message in messages:
                    if session_id in self._aborted:
                        return
                    await self._send_message(session_id, message)
                    if message.is_terminal:
                        return
            if session_id not in self._aborted:
                await self._send_message(session_id, AgentMessage.done())
        except ConnectionClosed:
            logger.debug("Host went away during run {}", session_id)
        except Exception as exc:
            logger.exception("Run {} failed", session_id)
            with contextlib.suppress(ConnectionClosed):
                await self._send_message(session_id, AgentMessage.error(str(exc)))

    async def _execute_operation(self, session_id: str, method: InvokeMethod) -> None:
        try:
            await (self.handler.undo() if method is InvokeMethod.UNDO else self.handler.redo())
        except RelayError as exc:
            message = AgentMessage.error(str(exc))
        else:
            message = AgentMessage.done()
        with contextlib.suppress(ConnectionClosed):
            await self._send_message(session_id, message)

    async def _abort_all(self) -> None:
        sessions = list(self._runs)
        for session_id in sessions:
            self._aborted.add(session_id)
            await self.handler.abort(session_id)
        if sessions:
            logger.info("Aborted {} in-flight runs of {}", len(sessions), self.agent_id)
            await asyncio.gather(*self._runs.values(), return_exceptions=True)

    # -- Wire ------------------------------------------------------------------

    async def _send_message(self, session_id: str, message: AgentMessage) -> None:
        await self._send(AgentEvent.from_message(message, session_id=session_id, agent_id=self.agent_id))

    async def _send(self, frame: _Frame) -> None:
        ws = self._ws
        if ws is None:
            # Between reconnects; the host already failed these invocations.
            logger.debug("Dropping {} frame while disconnected", frame.type)
            return
        await ws.send(json.dumps(dump_frame(frame)))
