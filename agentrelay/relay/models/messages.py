"""The common message shape every handler produces."""

from __future__ import annotations

from pydantic import BaseModel

from agentrelay.relay.models.enums import ControlMessageType, MessageType

COMPLETED_STATUS = "Completed successfully"
THINKING_STATUS = "Thinking…"


class AgentMessage(BaseModel):
    """One item of an invocation's message stream.

    ``status`` carries progress text, ``error`` a failure description and
    ``done`` (empty content) marks successful completion.  For a single
    invocation at most one terminal message (``done`` or ``error``) is
    produced and it is always the last one.
    """

    type: MessageType
    content: str = ""

    @classmethod
    def status(cls, text: str) -> AgentMessage:
        return cls(type=MessageType.STATUS, content=text)

    @classmethod
    def error(cls, text: str) -> AgentMessage:
        return cls(type=MessageType.ERROR, content=text)

    @classmethod
    def done(cls) -> AgentMessage:
        return cls(type=MessageType.DONE)

    @property
    def is_terminal(self) -> bool:
        return self.type in (MessageType.ERROR, MessageType.DONE)

    def to_control_type(self) -> ControlMessageType:
        """Map to the control-channel frame type used by remote handlers."""
        return _TO_CONTROL[self.type]

    @classmethod
    def from_control(cls, frame_type: ControlMessageType, content: str | None) -> AgentMessage:
        return cls(type=_FROM_CONTROL[frame_type], content=content or "")


_TO_CONTROL = {
    MessageType.STATUS: ControlMessageType.AGENT_STATUS,
    MessageType.ERROR: ControlMessageType.AGENT_ERROR,
    MessageType.DONE: ControlMessageType.AGENT_DONE,
}
_FROM_CONTROL = {v: k for k, v in _TO_CONTROL.items()}
