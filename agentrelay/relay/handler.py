"""Handler contract consumed by the relay server.

A handler is the run / abort / undo / redo capability object of one agent
provider.  The process adapter implements it for local CLIs; the relay
server implements it for providers living in remote processes.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentrelay.relay.errors import UndoUnavailableError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from agentrelay.relay.models.messages import AgentMessage

# Browser clients use several spellings for the same option.
_CWD_KEYS = ("cwd", "workspace", "workingDirectory", "directory")
_AUTO_KEYS = ("autoLevel", "sandbox", "permissionMode")


@dataclass
class RunOptions:
    """Per-run options handed to ``Handler.run``."""

    session_id: str
    model: str | None = None
    cwd: str | None = None
    auto_level: str | None = None
    """Autonomy / sandbox level, interpreted by each provider."""

    reasoning_effort: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, session_id: str, options: dict[str, Any] | None) -> RunOptions:
        """Build options from the free-form ``options`` object of a request."""
        options = dict(options or {})
        return cls(
            session_id=session_id,
            model=options.pop("model", None),
            cwd=_pop_first(options, _CWD_KEYS),
            auto_level=_pop_first(options, _AUTO_KEYS),
            reasoning_effort=options.pop("reasoningEffort", None),
            extra=options,
        )

    def to_payload(self) -> dict[str, Any]:
        """Inverse of ``from_payload`` (used when forwarding to a remote handler)."""
        payload = dict(self.extra)
        for key, value in (
            ("model", self.model),
            ("cwd", self.cwd),
            ("autoLevel", self.auto_level),
            ("reasoningEffort", self.reasoning_effort),
        ):
            if value is not None:
                payload[key] = value
        return payload


def _pop_first(options: dict[str, Any], keys: tuple[str, ...]) -> Any:
    found = None
    for key in keys:
        value = options.pop(key, None)
        if found is None and value is not None:
            found = value
    return found


class Handler(abc.ABC):
    """Abstract provider handler."""

    agent_id: str

    @property
    def supports_undo(self) -> bool:
        """Whether ``undo`` / ``redo`` are available for this provider."""
        return False

    @abc.abstractmethod
    def run(self, prompt: str, options: RunOptions) -> AsyncIterator[AgentMessage]:
        """Start a run and stream its messages.

        The returned iterator is lazy and must be closed (``aclose``) by the
        consumer if it stops early; closing it stops the underlying work.
        """

    @abc.abstractmethod
    async def abort(self, session_id: str) -> None:
        """Best-effort cancellation.  A no-op if nothing is running."""

    async def undo(self) -> None:
        """Revert the last completed change.  Raises ``UndoUnavailableError`` if unsupported."""
        msg = f"{self.agent_id} does not support undo"
        raise UndoUnavailableError(msg)

    async def redo(self) -> None:
        """Re-apply the last undone change.  Raises ``UndoUnavailableError`` if unsupported."""
        msg = f"{self.agent_id} does not support redo"
        raise UndoUnavailableError(msg)

    async def close(self, timeout: float | None = None) -> None:
        """Stop accepting runs and wait up to *timeout* for running ones."""
