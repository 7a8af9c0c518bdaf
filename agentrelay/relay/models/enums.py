"""Shared enumerations used across the relay."""

from __future__ import annotations

from enum import StrEnum

# -- Messages ----------------------------------------------------------------


class MessageType(StrEnum):
    """Kind of a single ``AgentMessage``."""

    STATUS = "status"
    ERROR = "error"
    DONE = "done"


# -- Control channel ---------------------------------------------------------


class InvokeMethod(StrEnum):
    RUN = "run"
    ABORT = "abort"
    UNDO = "undo"
    REDO = "redo"


class ControlMessageType(StrEnum):
    """Frame types on the host <-> remote control channel."""

    # remote -> host
    REGISTER_HANDLER = "register-handler"
    UNREGISTER_HANDLER = "unregister-handler"
    AGENT_STATUS = "agent-status"
    AGENT_ERROR = "agent-error"
    AGENT_DONE = "agent-done"

    # host -> remote
    INVOKE_HANDLER = "invoke-handler"


# -- Connection --------------------------------------------------------------


class RelayRole(StrEnum):
    """Role a process plays for the shared port.  Fixed after startup."""

    HOST = "host"
    REMOTE = "remote"
