"""In-process session registry.

Tracks conversation sessions (sessionId -> provider thread id) and the
cancellation handle of every running invocation.  Ephemeral -- empty on
process restart.  Owned by whichever process executes ``run`` for a
session (host or remote handler), never by the routing layer.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from agentrelay.relay.context import AgentSession, CancellationHandle
from agentrelay.relay.errors import SessionBusyError, ShuttingDownError


class SessionRegistry:
    """Registry of sessions and in-flight invocations.

    Each ``session_id`` has at most one registered cancellation handle, so a
    second ``run`` for a session that is still streaming is rejected rather
    than executed in parallel against the same provider thread.

    The registry also provides a drain mechanism for graceful shutdown:
    ``wait_until_drained`` blocks until every handle has been released.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, AgentSession] = {}
        self._cancellations: dict[str, CancellationHandle] = {}
        self._last_completed: str | None = None
        self._drain_event = asyncio.Event()
        self._drain_event.set()  # Starts "drained" (nothing running).
        self._shutting_down = False

    # -- Sessions --------------------------------------------------------------

    def get(self, session_id: str) -> AgentSession | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> AgentSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = AgentSession(session_id=session_id)
            self._sessions[session_id] = session
        return session

    def upsert_thread_id(self, session_id: str, thread_id: str) -> None:
        """Record the provider thread id for a session.  Last writer wins."""
        session = self.get_or_create(session_id)
        if session.external_thread_id != thread_id:
            logger.debug("Registry: session {} -> thread {}", session_id, thread_id)
        session.external_thread_id = thread_id

    def mark_completed(self, session_id: str) -> None:
        """Remember the session's thread as the most recently completed one (for undo)."""
        session = self._sessions.get(session_id)
        if session is not None and session.external_thread_id:
            self._last_completed = session.external_thread_id

    @property
    def last_completed_thread_id(self) -> str | None:
        return self._last_completed

    # -- Cancellation ----------------------------------------------------------

    def register_cancellation(self, session_id: str, handle: CancellationHandle) -> None:
        """Register the handle of a starting invocation.

        Raises ``SessionBusyError`` if the session already has one, and
        ``ShuttingDownError`` once shutdown has begun.
        """
        if self._shutting_down:
            raise ShuttingDownError
        if session_id in self._cancellations:
            raise SessionBusyError(session_id)
        self._cancellations[session_id] = handle
        self._drain_event.clear()

    def take_cancellation(self, session_id: str) -> CancellationHandle | None:
        """Remove and return the handle, so an abort fires at most once."""
        handle = self._cancellations.pop(session_id, None)
        self._update_drained()
        return handle

    def release_cancellation(self, session_id: str, handle: CancellationHandle) -> None:
        """Drop the handle if it is still the one registered for the session."""
        if self._cancellations.get(session_id) is handle:
            del self._cancellations[session_id]
        self._update_drained()

    def is_running(self, session_id: str) -> bool:
        return session_id in self._cancellations

    @property
    def active_count(self) -> int:
        return len(self._cancellations)

    def _update_drained(self) -> None:
        if not self._cancellations:
            self._drain_event.set()

    # -- Lifecycle -------------------------------------------------------------

    def begin_shutdown(self) -> None:
        """Mark the registry as shutting down.  New runs are refused."""
        self._shutting_down = True
        logger.info("Registry: shutdown initiated, refusing new runs")
        self._update_drained()

    def cancel_all(self) -> int:
        """Cancel every running invocation.  Returns how many were cancelled."""
        handles = list(self._cancellations.values())
        self._cancellations.clear()
        for handle in handles:
            handle.cancel()
        self._update_drained()
        return len(handles)

    async def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Wait until no invocation is running.

        Returns ``True`` if drained, ``False`` if *timeout* expired first.
        """
        if not self._cancellations:
            return True
        try:
            await asyncio.wait_for(self._drain_event.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Registry: drain timed out after {}s with {} runs still active",
                timeout,
                len(self._cancellations),
            )
            return False
        else:
            return True
