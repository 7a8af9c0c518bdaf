"""Generic process adapter -- one ``Handler`` for every provider CLI.

Spawns one CLI invocation per run with the prompt on stdin, reads its
line-delimited JSON output and maps each event through the provider's
``ProviderSpec``.  Uses ``asyncio.create_subprocess_exec`` (argv array, no
shell).
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import os
import uuid
from typing import TYPE_CHECKING, TypeVar

from agentrelay.providers.base import RunRequest, parse_line
from agentrelay.relay.context import CancellationHandle
from agentrelay.relay.errors import (
    ExternalProcessError,
    RelayError,
    SessionBusyError,
    ShuttingDownError,
    UndoUnavailableError,
)
from agentrelay.relay.handler import Handler, RunOptions
from agentrelay.relay.models.enums import MessageType
from agentrelay.relay.models.messages import THINKING_STATUS, AgentMessage
from agentrelay.relay.registry import SessionRegistry
from agentrelay.relay.settings import get_settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

    from agentrelay.providers.base import ProviderSpec
    from agentrelay.relay.context import AgentSession
    from agentrelay.relay.settings import RelaySettings

logger = logging.getLogger(__name__)

_STDERR_TAIL = 2000

T = TypeVar("T")


class ProcessAdapter(Handler):
    """Runs a provider CLI as a subprocess and streams ``AgentMessage``s.

    Session bookkeeping (provider thread ids, cancellation handles) lives in
    the injected ``SessionRegistry`` so that several adapters -- or several
    isolated relays in tests -- never share module-level state.
    """

    def __init__(
        self,
        spec: ProviderSpec,
        *,
        registry: SessionRegistry | None = None,
        settings: RelaySettings | None = None,
        default_model: str | None = None,
    ) -> None:
        self.spec = spec
        self.default_model = default_model
        self.agent_id = spec.agent_id
        self.registry = registry if registry is not None else SessionRegistry()
        self._settings = settings or get_settings()

    @property
    def supports_undo(self) -> bool:
        return self.spec.supports_undo

    # -- Run -------------------------------------------------------------------

    async def run(self, prompt: str, options: RunOptions) -> AsyncIterator[AgentMessage]:
        session_id = options.session_id
        handle = CancellationHandle(session_id, grace_period=self._settings.kill_grace_period)
        try:
            self.registry.register_cancellation(session_id, handle)
        except (SessionBusyError, ShuttingDownError) as exc:
            yield AgentMessage.error(str(exc))
            return

        session = self.registry.get_or_create(session_id)
        session.is_streaming = True
        try:
            async with contextlib.aclosing(self._stream(prompt, options, session, handle)) as messages:
                async for message in messages:
                    if handle.cancelled:
                        return
                    if message.type is MessageType.STATUS:
                        session.last_status = message.content
                    yield message
        finally:
            session.is_streaming = False
            self.registry.release_cancellation(session_id, handle)
            # Consumer stopped early or we hit a terminal error: never leave the CLI running.
            await handle.stop_process()

    async def _stream(
        self,
        prompt: str,
        options: RunOptions,
        session: AgentSession,
        handle: CancellationHandle,
    ) -> AsyncIterator[AgentMessage]:
        yield AgentMessage.status(THINKING_STATUS)

        if options.model is None and self.default_model:
            options = dataclasses.replace(options, model=self.default_model)
        request = RunRequest(options=options, resume_token=session.external_thread_id)
        argv = self.spec.build_argv(request)
        try:
            proc = await self._spawn(argv, self._resolve_cwd(options))
        except RelayError as exc:
            yield AgentMessage.error(str(exc))
            return
        handle.attach(proc)
        logger.info("%s started (pid=%d, session=%s)", self.spec.binary, proc.pid, session.session_id)

        stderr_task = asyncio.create_task(_read_all(proc.stderr))
        cancelled = asyncio.create_task(handle.wait_cancelled())
        try:
            await _feed_stdin(proc, prompt)

            captured_thread = False
            while not handle.cancelled:
                try:
                    line = await _unless_cancelled(proc.stdout.readline(), cancelled)
                except ValueError:
                    logger.warning("%s emitted a line over the size limit, skipping", self.spec.binary)
                    continue
                if line is None:
                    return
                if not line:
                    break
                event = parse_line(line)
                if event is None:
                    continue

                if not captured_thread:
                    thread_id = self.spec.extract_thread_id(event)
                    if thread_id:
                        self.registry.upsert_thread_id(session.session_id, thread_id)
                        captured_thread = True

                for message in self.spec.map_event(event):
                    yield message
                    if message.type is MessageType.ERROR:
                        return

            returncode = await _unless_cancelled(proc.wait(), cancelled)
            if returncode is None or handle.cancelled:
                return
            if returncode != 0:
                stderr = (await stderr_task)[-_STDERR_TAIL:].strip()
                yield AgentMessage.error(str(ExternalProcessError(self.spec.binary, returncode, stderr)))
                return

            self.registry.mark_completed(session.session_id)
            yield AgentMessage.done()
        finally:
            cancelled.cancel()
            if not stderr_task.done():
                stderr_task.cancel()

    # -- Abort -----------------------------------------------------------------

    async def abort(self, session_id: str) -> None:
        handle = self.registry.take_cancellation(session_id)
        if handle is None:
            logger.debug("Abort for idle session %s ignored", session_id)
            return
        logger.info("Aborting %s run for session %s", self.agent_id, session_id)
        handle.cancel()

    async def close(self, timeout: float | None = None) -> None:
        self.registry.begin_shutdown()
        if await self.registry.wait_until_drained(timeout):
            return
        cancelled = self.registry.cancel_all()
        logger.warning("Cancelled %d %s runs still active at shutdown", cancelled, self.agent_id)

    # -- Undo / redo -----------------------------------------------------------

    async def undo(self) -> None:
        await self._replay(self.spec.undo_prompt, "undo")

    async def redo(self) -> None:
        await self._replay(self.spec.redo_prompt, "redo")

    async def _replay(self, prompt: str, action: str) -> None:
        """Run a short-lived invocation against the last completed thread."""
        if not self.spec.supports_undo:
            msg = f"{self.agent_id} does not support {action}"
            raise UndoUnavailableError(msg)

        thread_id = self.registry.last_completed_thread_id
        if thread_id is None:
            msg = f"Nothing to {action}: no completed session"
            raise UndoUnavailableError(msg)

        options = RunOptions(session_id=f"{action}-{uuid.uuid4().hex[:8]}", model=self.default_model)
        argv = self.spec.build_argv(RunRequest(options=options, resume_token=thread_id))
        proc = await self._spawn(argv, self._resolve_cwd(options))
        logger.info("%s %s against thread %s (pid=%d)", self.spec.binary, action, thread_id, proc.pid)
        _, stderr = await proc.communicate(prompt.encode("utf-8"))
        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-_STDERR_TAIL:].strip()
            raise ExternalProcessError(self.spec.binary, proc.returncode, tail)

    # -- Helpers ---------------------------------------------------------------

    def _resolve_cwd(self, options: RunOptions) -> str:
        return options.cwd or self._settings.cwd or os.getcwd()

    async def _spawn(self, argv: list[str], cwd: str) -> asyncio.subprocess.Process:
        if not os.path.isdir(cwd):
            msg = f"Working directory does not exist: {cwd}"
            raise RelayError(msg)
        try:
            return await asyncio.create_subprocess_exec(
                self.spec.binary,
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                start_new_session=True,
                limit=self._settings.max_line_bytes,
            )
        except FileNotFoundError as exc:
            raise self.spec.missing_binary_error() from exc
        except OSError as exc:
            msg = f"Failed to start {self.spec.binary}: {exc}"
            raise RelayError(msg) from exc


async def _feed_stdin(proc: asyncio.subprocess.Process, prompt: str) -> None:
    if proc.stdin is None:
        return
    # The CLI may exit before reading its input; the exit code reports that.
    with contextlib.suppress(BrokenPipeError, ConnectionResetError):
        proc.stdin.write(prompt.encode("utf-8"))
        await proc.stdin.drain()
    proc.stdin.close()


async def _read_all(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


async def _unless_cancelled(awaitable: Awaitable[T], cancelled: asyncio.Future[None]) -> T | None:
    """Await *awaitable* unless the run is cancelled first (then ``None``)."""
    task = asyncio.ensure_future(awaitable)
    try:
        await asyncio.wait({task, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not task.done():
            task.cancel()
    if not task.done() or task.cancelled():
        return None
    return task.result()
