"""Control-channel frames exchanged between the host and remote handlers.

Frames are JSON text messages with a ``type`` discriminator and camelCase
keys on the wire::

    {"type": "register-handler", "agentId": "codex"}
    {"type": "invoke-handler", "method": "run", "sessionId": "s1", "payload": {...}}
    {"type": "agent-status", "sessionId": "s1", "agentId": "codex", "content": "..."}

Use :func:`parse_frame` to decode an incoming frame and
``frame.model_dump(by_alias=True)`` (or :func:`dump_frame`) to encode one.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from agentrelay.relay.models.enums import ControlMessageType, InvokeMethod
from agentrelay.relay.models.messages import AgentMessage


class _Frame(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- remote -> host ------------------------------------------------------------


class RegisterHandler(_Frame):
    type: Literal["register-handler"] = "register-handler"
    agent_id: str


class UnregisterHandler(_Frame):
    type: Literal["unregister-handler"] = "unregister-handler"
    agent_id: str


class AgentEvent(_Frame):
    """A message of an invocation streamed back from a remote handler."""

    type: Literal["agent-status", "agent-error", "agent-done"]
    session_id: str
    agent_id: str
    content: str | None = None

    @classmethod
    def from_message(cls, message: AgentMessage, *, session_id: str, agent_id: str) -> AgentEvent:
        return cls(
            type=message.to_control_type().value,
            session_id=session_id,
            agent_id=agent_id,
            content=message.content,
        )

    def to_message(self) -> AgentMessage:
        return AgentMessage.from_control(ControlMessageType(self.type), self.content)


# -- host -> remote ------------------------------------------------------------


class RunPayload(_Frame):
    prompt: str
    options: dict[str, Any] = Field(default_factory=dict)


class InvokeHandler(_Frame):
    type: Literal["invoke-handler"] = "invoke-handler"
    method: InvokeMethod
    session_id: str
    payload: RunPayload | None = None


ControlFrame = Annotated[
    RegisterHandler | UnregisterHandler | AgentEvent | InvokeHandler,
    Field(discriminator="type"),
]

_frame_adapter: TypeAdapter[ControlFrame] = TypeAdapter(ControlFrame)


def parse_frame(data: str | bytes | dict[str, Any]) -> ControlFrame:
    """Decode a control frame.  Raises ``pydantic.ValidationError`` if malformed."""
    if isinstance(data, dict):
        return _frame_adapter.validate_python(data)
    return _frame_adapter.validate_json(data)


def dump_frame(frame: _Frame) -> dict[str, Any]:
    """Encode a frame as a JSON-ready dict with wire (camelCase) keys."""
    return frame.model_dump(mode="json", by_alias=True, exclude_none=True)
