"""In-flight state for sessions and invocations.

``AgentSession`` is the caller-visible conversation thread, kept in memory
for the life of the process.  ``CancellationHandle`` belongs to a single
running invocation and is discarded when it reaches a terminal state.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from dataclasses import dataclass, field

from loguru import logger


@dataclass
class AgentSession:
    """One logical conversation as seen by the caller.

    Created on the first ``run`` for a ``session_id``; never persisted.
    """

    session_id: str

    external_thread_id: str | None = None
    """The provider CLI's own resume token, learned from its output."""

    is_streaming: bool = False
    last_status: str | None = None


@dataclass
class CancellationHandle:
    """Cooperative flag plus the spawned process of one running invocation.

    ``cancel`` sets the flag (checked by the adapter between parsed events)
    and sends SIGTERM; if the process has not exited after
    ``grace_period`` seconds it is killed.  When the CLI leads its own
    process group (spawned with ``start_new_session``) the signals go to the
    whole group, so tool subprocesses holding its stdout die with it.
    """

    session_id: str
    grace_period: float = 3.0
    process: asyncio.subprocess.Process | None = None

    _event: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _escalation: asyncio.Task[None] | None = field(default=None, init=False, repr=False)
    _pgid: int | None = field(default=None, init=False, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def attach(self, process: asyncio.subprocess.Process) -> None:
        """Bind the spawned process.  Terminates it at once if already cancelled."""
        self.process = process
        with contextlib.suppress(ProcessLookupError):
            if os.getpgid(process.pid) == process.pid:
                self._pgid = process.pid
        if self.cancelled:
            self._terminate()

    def cancel(self) -> None:
        """Request cancellation.  Idempotent."""
        if self._event.is_set():
            return
        self._event.set()
        logger.debug("Cancelling session {}", self.session_id)
        self._terminate()

    async def wait_cancelled(self) -> None:
        await self._event.wait()

    async def stop_process(self) -> None:
        """Terminate the process (if still running) and wait for it to exit."""
        self._terminate()
        if self._escalation is not None:
            await self._escalation

    def _signal(self, proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        if self._pgid is not None:
            os.killpg(self._pgid, sig)
        else:
            proc.send_signal(sig)

    def _terminate(self) -> None:
        proc = self.process
        if proc is None or proc.returncode is not None or self._escalation is not None:
            return
        try:
            self._signal(proc, signal.SIGTERM)
        except ProcessLookupError:
            return
        self._escalation = asyncio.get_running_loop().create_task(self._escalate(proc))

    async def _escalate(self, proc: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_period)
        except TimeoutError:
            logger.warning("Process {} ignored SIGTERM for {}s, killing", proc.pid, self.grace_period)
            with contextlib.suppress(ProcessLookupError):
                self._signal(proc, signal.SIGKILL)
            await proc.wait()
        if self._pgid is not None:
            # Tool subprocesses left in the CLI's group would keep its stdout open.
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self._pgid, signal.SIGKILL)
