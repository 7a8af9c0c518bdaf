"""Frames of the browser WebSocket channel (``WS /``).

Browsers send requests and receive the streamed messages of their sessions
plus the live list of registered handlers::

    -> {"type": "agent-request", "agentId": "codex", "sessionId": "s1", "context": {"prompt": "...", "content": []}}
    -> {"type": "agent-abort", "sessionId": "s1"}
    <- {"type": "handlers", "handlers": ["claude", "codex"]}
    <- {"type": "agent-status", "agentId": "codex", "sessionId": "s1", "content": "Thinking…"}
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from agentrelay.relay.models.messages import AgentMessage


class _BrowserFrame(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# -- browser -> host -----------------------------------------------------------


class BrowserRequest(_BrowserFrame):
    type: Literal["agent-request", "agent-abort", "agent-undo", "agent-redo"]
    agent_id: str | None = None
    session_id: str | None = None
    context: dict[str, Any] | None = None
    """Validated as ``AgentContext`` for ``agent-request`` only."""


def parse_browser_request(data: str | bytes) -> BrowserRequest:
    """Decode a browser frame.  Raises ``pydantic.ValidationError`` if malformed."""
    return BrowserRequest.model_validate_json(data)


# -- host -> browser -----------------------------------------------------------


class BrowserEvent(_BrowserFrame):
    type: Literal["agent-status", "agent-error", "agent-done"]
    agent_id: str | None = None
    session_id: str
    content: str | None = None

    @classmethod
    def from_message(cls, message: AgentMessage, *, agent_id: str | None, session_id: str) -> BrowserEvent:
        return cls(
            type=message.to_control_type().value,
            agent_id=agent_id,
            session_id=session_id,
            content=message.content or None,
        )


class HandlerList(_BrowserFrame):
    type: Literal["handlers"] = "handlers"
    handlers: list[str]
