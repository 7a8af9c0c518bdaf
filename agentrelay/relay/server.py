"""Relay server -- handler registry and invocation routing (host only).

The host owns the ``agent_id -> Handler`` map.  Its own provider is
registered in-process; providers living in other processes register over the
``/control`` WebSocket and are represented here by a ``RemoteHandler`` that
forwards invocations over that socket and re-streams the replies.

Browsers connect to ``WS /``: they start and abort invocations over the
socket and are pushed the handler list whenever it changes.

The server only routes.  Session state (thread ids, cancellation handles)
belongs to whichever process actually executes the run.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import anyio
from fastapi import WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError

from agentrelay.relay.errors import (
    HandlerDisconnectedError,
    HandlerNotFoundError,
    RelayError,
    SessionBusyError,
    ShuttingDownError,
)
from agentrelay.relay.handler import Handler, RunOptions
from agentrelay.relay.models.api import AgentContext, generate_session_id
from agentrelay.relay.models.browser import BrowserEvent, HandlerList, parse_browser_request
from agentrelay.relay.models.enums import InvokeMethod, MessageType
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
    from collections.abc import AsyncIterator, Coroutine

# What sending on (or closing) a dead WebSocket raises, depending on which side closed first.
_SOCKET_ERRORS = (RuntimeError, OSError, WebSocketDisconnect)


class ControlSocket(Protocol):
    """The part of a WebSocket the server needs (``fastapi.WebSocket`` fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


# ---------------------------------------------------------------------------
# Remote handlers
# ---------------------------------------------------------------------------


class RemoteHandler(Handler):
    """Proxy for a handler registered by another process over ``/control``.

    Each forwarded invocation waits on its own queue, keyed by session id;
    ``agent-*`` frames arriving on the socket are delivered to it in receipt
    order.  ``None`` on a queue means the invocation was aborted.
    """

    def __init__(self, agent_id: str, socket: ControlSocket) -> None:
        self.agent_id = agent_id
        self.socket = socket
        self._streams: dict[str, asyncio.Queue[AgentMessage | None]] = {}
        self._disconnected = False

    @property
    def supports_undo(self) -> bool:
        # Unknown until asked; the remote side reports unsupported operations as errors.
        return True

    async def run(self, prompt: str, options: RunOptions) -> AsyncIterator[AgentMessage]:
        frame = InvokeHandler(
            method=InvokeMethod.RUN,
            session_id=options.session_id,
            payload=RunPayload(prompt=prompt, options=options.to_payload()),
        )
        async with contextlib.aclosing(self._exchange(frame)) as messages:
            async for message in messages:
                yield message

    async def abort(self, session_id: str) -> None:
        queue = self._streams.pop(session_id, None)
        if queue is not None:
            queue.put_nowait(None)
        if self._disconnected:
            return
        try:
            await self._send(InvokeHandler(method=InvokeMethod.ABORT, session_id=session_id))
        except HandlerDisconnectedError:
            logger.debug("Abort for {} not forwarded: {} is gone", session_id, self.agent_id)

    async def undo(self) -> None:
        await self._call(InvokeMethod.UNDO)

    async def redo(self) -> None:
        await self._call(InvokeMethod.REDO)

    # -- Socket side -----------------------------------------------------------

    def deliver(self, event: AgentEvent) -> None:
        queue = self._streams.get(event.session_id)
        if queue is None:
            logger.debug("Dropping {} for idle session {}", event.type, event.session_id)
            return
        queue.put_nowait(event.to_message())

    def disconnect(self) -> None:
        """Fail every waiting invocation with ``Handler disconnected``."""
        self._disconnected = True
        error = AgentMessage.error(str(HandlerDisconnectedError(self.agent_id)))
        for queue in self._streams.values():
            queue.put_nowait(error)

    # -- Internals -------------------------------------------------------------

    async def _call(self, method: InvokeMethod) -> None:
        frame = InvokeHandler(method=method, session_id=f"{method}-{uuid.uuid4().hex[:8]}")
        async with contextlib.aclosing(self._exchange(frame)) as messages:
            async for message in messages:
                if message.type is MessageType.ERROR:
                    raise RelayError(message.content)
                if message.type is MessageType.DONE:
                    return
        raise HandlerDisconnectedError(self.agent_id)

    async def _exchange(self, frame: InvokeHandler) -> AsyncIterator[AgentMessage]:
        session_id = frame.session_id
        if self._disconnected:
            yield AgentMessage.error(str(HandlerDisconnectedError(self.agent_id)))
            return
        if session_id in self._streams:
            yield AgentMessage.error(str(SessionBusyError(session_id)))
            return

        queue: asyncio.Queue[AgentMessage | None] = asyncio.Queue()
        self._streams[session_id] = queue
        try:
            try:
                await self._send(frame)
            except HandlerDisconnectedError as exc:
                yield AgentMessage.error(str(exc))
                return
            while True:
                message = await queue.get()
                if message is None:
                    return
                yield message
                if message.is_terminal:
                    return
        finally:
            if self._streams.get(session_id) is queue:
                del self._streams[session_id]

    async def _send(self, frame: InvokeHandler) -> None:
        try:
            await self.socket.send_json(dump_frame(frame))
        except _SOCKET_ERRORS as exc:
            self._disconnected = True
            raise HandlerDisconnectedError(self.agent_id) from exc


class ControlConnection:
    """One accepted ``/control`` socket and the handlers it registered."""

    def __init__(self, socket: ControlSocket) -> None:
        self.socket = socket
        self.handlers: dict[str, RemoteHandler] = {}


class BrowserConnection:
    """One accepted browser socket and the invocations it started."""

    def __init__(self, socket: ControlSocket) -> None:
        self.socket = socket
        self.sessions: dict[str, asyncio.Task[None]] = {}
        self.tasks: set[asyncio.Task[None]] = set()

    async def send(self, frame: BrowserEvent | HandlerList) -> None:
        # A browser that went away is cleaned up when its route exits.
        with contextlib.suppress(*_SOCKET_ERRORS):
            await self.socket.send_json(frame.dump())


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@dataclass
class _Invocation:
    handler: Handler
    aborted: bool = False


class RelayServer:
    """Routes invocations to local or remote handlers.

    ``provider`` is the agent id of the host's own co-located handler; it is
    the default target of requests that do not name an agent.
    """

    def __init__(self, provider: str | None = None) -> None:
        self.provider = provider
        self._handlers: dict[str, Handler] = {}
        self._connections: set[ControlConnection] = set()
        self._active: dict[str, _Invocation] = {}
        self._drain_event = asyncio.Event()
        self._drain_event.set()
        self._shutting_down = False
        self._browsers: set[BrowserConnection] = set()
        self._announcements: set[asyncio.Task[None]] = set()

    # -- Registration ----------------------------------------------------------

    def register_handler(self, handler: Handler) -> None:
        previous = self._handlers.get(handler.agent_id)
        if previous is not None and previous is not handler:
            logger.warning("Handler {} re-registered, replacing previous registration", handler.agent_id)
        self._handlers[handler.agent_id] = handler
        logger.info("Registered handler {} ({})", handler.agent_id, type(handler).__name__)
        self._announce_handlers()

    def unregister_handler(self, agent_id: str) -> Handler | None:
        handler = self._handlers.pop(agent_id, None)
        if handler is not None:
            logger.info("Unregistered handler {}", agent_id)
            self._announce_handlers()
        return handler

    def get_handler(self, agent_id: str) -> Handler:
        try:
            return self._handlers[agent_id]
        except KeyError:
            raise HandlerNotFoundError(agent_id) from None

    @property
    def handler_ids(self) -> list[str]:
        return sorted(self._handlers)

    def resolve_agent_id(self, agent_id: str | None) -> str | None:
        """Target of a request: the named agent, else the host's provider, else the only handler."""
        if agent_id:
            return agent_id
        if self.provider is not None:
            return self.provider
        if len(self._handlers) == 1:
            return next(iter(self._handlers))
        return None

    # -- Control channel -------------------------------------------------------

    def open_connection(self, socket: ControlSocket) -> ControlConnection:
        connection = ControlConnection(socket)
        self._connections.add(connection)
        return connection

    async def handle_frame(self, connection: ControlConnection, data: str | bytes) -> bool:
        """Process one frame from a remote.  Returns ``False`` once the socket was closed."""
        try:
            frame = parse_frame(data)
        except ValidationError as exc:
            logger.warning("Ignoring malformed control frame ({} errors): {!r}", exc.error_count(), data[:200])
            return True

        match frame:
            case RegisterHandler(agent_id=agent_id):
                handler = RemoteHandler(agent_id, connection.socket)
                connection.handlers[agent_id] = handler
                self.register_handler(handler)
            case UnregisterHandler(agent_id=agent_id):
                self._drop_remote(connection, agent_id)
                self._connections.discard(connection)
                with contextlib.suppress(*_SOCKET_ERRORS):
                    await connection.socket.close()
                return False
            case AgentEvent(agent_id=agent_id):
                handler = connection.handlers.get(agent_id)
                if handler is None:
                    logger.warning("Event for unregistered handler {} ignored", agent_id)
                else:
                    handler.deliver(frame)
            case InvokeHandler():
                logger.warning("Remote sent invoke-handler to the host, ignored")
        return True

    def close_connection(self, connection: ControlConnection) -> None:
        """Forget a closed socket: unregister its handlers and fail their invocations."""
        self._connections.discard(connection)
        for agent_id in list(connection.handlers):
            self._drop_remote(connection, agent_id)

    def _drop_remote(self, connection: ControlConnection, agent_id: str) -> None:
        handler = connection.handlers.pop(agent_id, None)
        if handler is None:
            return
        handler.disconnect()
        # A newer registration from another socket keeps its entry.
        if self._handlers.get(agent_id) is handler:
            self.unregister_handler(agent_id)

    # -- Browser channel -------------------------------------------------------

    async def open_browser(self, socket: ControlSocket) -> BrowserConnection:
        """Track a browser socket and send it the current handler list."""
        browser = BrowserConnection(socket)
        self._browsers.add(browser)
        await browser.send(HandlerList(handlers=self.handler_ids))
        return browser

    async def handle_browser_frame(self, browser: BrowserConnection, data: str | bytes) -> None:
        try:
            request = parse_browser_request(data)
        except ValidationError as exc:
            logger.warning("Ignoring malformed browser frame ({} errors)", exc.error_count())
            return

        agent_id = self.resolve_agent_id(request.agent_id)
        session_id = request.session_id or generate_session_id()
        match request.type:
            case "agent-request":
                try:
                    context = AgentContext.model_validate(request.context or {})
                except ValidationError:
                    await browser.send(
                        BrowserEvent(
                            type="agent-error",
                            agent_id=agent_id,
                            session_id=session_id,
                            content="Invalid context: missing or malformed prompt/content",
                        )
                    )
                    return
                payload = RunPayload(prompt=context.combined_prompt(), options=context.options)
                stream = self._stream_to_browser(browser, agent_id, session_id, payload)
                browser.sessions[session_id] = self._start_browser_task(browser, stream)
            case "agent-abort":
                await self.abort(session_id)
            case "agent-undo" | "agent-redo":
                method = InvokeMethod.UNDO if request.type == "agent-undo" else InvokeMethod.REDO
                self._start_browser_task(browser, self._operation_for_browser(browser, agent_id, method, session_id))

    async def close_browser(self, browser: BrowserConnection) -> None:
        """Forget a closed browser socket and abort the runs it started."""
        self._browsers.discard(browser)
        for session_id in list(browser.sessions):
            await self.abort(session_id)
        tasks = list(browser.tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _start_browser_task(self, browser: BrowserConnection, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        browser.tasks.add(task)

        def _forget(done: asyncio.Task[None]) -> None:
            browser.tasks.discard(done)
            for session_id, session_task in list(browser.sessions.items()):
                if session_task is done:
                    del browser.sessions[session_id]

        task.add_done_callback(_forget)
        return task

    async def _stream_to_browser(
        self,
        browser: BrowserConnection,
        agent_id: str | None,
        session_id: str,
        payload: RunPayload,
    ) -> None:
        async with contextlib.aclosing(self.invoke(agent_id, InvokeMethod.RUN, session_id, payload)) as messages:
            async for message in messages:
                await browser.send(BrowserEvent.from_message(message, agent_id=agent_id, session_id=session_id))

    async def _operation_for_browser(
        self,
        browser: BrowserConnection,
        agent_id: str | None,
        method: InvokeMethod,
        session_id: str,
    ) -> None:
        invocation_id = f"{method}-{generate_session_id()}"
        async with contextlib.aclosing(self.invoke(agent_id, method, invocation_id)) as messages:
            async for message in messages:
                if message.type is MessageType.ERROR:
                    message = AgentMessage.error(f"{method.capitalize()} failed: {message.content}")
                await browser.send(BrowserEvent.from_message(message, agent_id=agent_id, session_id=session_id))

    def _announce_handlers(self) -> None:
        if not self._browsers:
            return
        task = asyncio.get_running_loop().create_task(self._push_handlers())
        self._announcements.add(task)
        task.add_done_callback(self._announcements.discard)

    async def _push_handlers(self) -> None:
        # Read at send time so a burst of changes ends on the latest list.
        frame = HandlerList(handlers=self.handler_ids)
        for browser in list(self._browsers):
            await browser.send(frame)

    # -- Invocation ------------------------------------------------------------

    async def invoke(
        self,
        agent_id: str | None,
        method: InvokeMethod,
        session_id: str,
        payload: RunPayload | None = None,
    ) -> AsyncIterator[AgentMessage]:
        """Invoke ``method`` on a handler and stream the resulting messages.

        ``run`` streams the handler's messages up to the first terminal one;
        the other methods yield a single ``done`` or ``error``.  Routing
        failures are reported as an ``error`` message, nothing is raised.
        """
        handler = self._handlers.get(agent_id) if agent_id else None
        if handler is None:
            error = HandlerNotFoundError(agent_id)
            logger.warning("Invocation {} for {}: {}", method, session_id, error)
            yield AgentMessage.error(str(error))
            return

        match method:
            case InvokeMethod.RUN:
                async with contextlib.aclosing(self._run(handler, session_id, payload)) as messages:
                    async for message in messages:
                        yield message
            case InvokeMethod.ABORT:
                await self.abort(session_id)
                yield AgentMessage.done()
            case InvokeMethod.UNDO | InvokeMethod.REDO:
                try:
                    await (handler.undo() if method is InvokeMethod.UNDO else handler.redo())
                except RelayError as exc:
                    logger.info("{} {} failed: {}", handler.agent_id, method, exc)
                    yield AgentMessage.error(str(exc))
                    return
                except Exception as exc:
                    logger.exception("{} {} failed", handler.agent_id, method)
                    yield AgentMessage.error(str(exc) or type(exc).__name__)
                    return
                yield AgentMessage.done()

    async def _run(
        self,
        handler: Handler,
        session_id: str,
        payload: RunPayload | None,
    ) -> AsyncIterator[AgentMessage]:
        if self._shutting_down:
            yield AgentMessage.error(str(ShuttingDownError()))
            return
        if session_id in self._active:
            yield AgentMessage.error(str(SessionBusyError(session_id)))
            return

        payload = payload or RunPayload(prompt="")
        options = RunOptions.from_payload(session_id, payload.options)
        invocation = _Invocation(handler)
        self._active[session_id] = invocation
        self._drain_event.clear()
        logger.info("Run {} on {}", session_id, handler.agent_id)

        finished = False
        try:
            try:
                async with contextlib.aclosing(handler.run(payload.prompt, options)) as messages:
                    async for message in messages:
                        if invocation.aborted:
                            break
                        yield message
                        if message.is_terminal:
                            finished = True
                            break
            except Exception as exc:
                if invocation.aborted:
                    logger.debug("Run {} raised after abort: {!r}", session_id, exc)
                    return
                logger.exception("Run {} on {} failed", session_id, handler.agent_id)
                finished = True
                yield AgentMessage.error(str(exc) or type(exc).__name__)
                return
            if not finished and not invocation.aborted:
                finished = True
                yield AgentMessage.done()
        finally:
            if self._active.get(session_id) is invocation:
                del self._active[session_id]
            if not self._active:
                self._drain_event.set()
            if not finished and not invocation.aborted:
                # Caller went away mid-stream: stop the work wherever it runs.
                invocation.aborted = True
                with anyio.CancelScope(shield=True):
                    await handler.abort(session_id)

    async def abort(self, session_id: str) -> None:
        """Stop forwarding events for a session and abort its handler.  Idempotent."""
        invocation = self._active.get(session_id)
        if invocation is None or invocation.aborted:
            logger.debug("Abort for idle session {} ignored", session_id)
            return
        invocation.aborted = True
        logger.info("Aborting session {} on {}", session_id, invocation.handler.agent_id)
        await invocation.handler.abort(session_id)

    # -- Lifecycle -------------------------------------------------------------

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def shutdown(self, timeout: float | None = None) -> None:
        """Refuse new runs, drain in-flight ones (force-aborting after *timeout*), close all sockets."""
        self._shutting_down = True
        if self._active:
            logger.info("Waiting for {} active invocations to finish (timeout={}s)...", len(self._active), timeout)
            if not await self._wait_drained(timeout):
                sessions = [sid for sid, inv in self._active.items() if not inv.aborted]
                for session_id in sessions:
                    await self.abort(session_id)
                logger.warning("Force-aborted {} invocations after timeout", len(sessions))
                await self._wait_drained(5.0)

        for connection in list(self._connections):
            self.close_connection(connection)
            with contextlib.suppress(*_SOCKET_ERRORS):
                await connection.socket.close()

        for browser in list(self._browsers):
            await self.close_browser(browser)
            with contextlib.suppress(*_SOCKET_ERRORS):
                await browser.socket.close()

    async def _wait_drained(self, timeout: float | None) -> bool:
        if not self._active:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        else:
            return True
