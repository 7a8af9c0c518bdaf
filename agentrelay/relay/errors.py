"""Domain exceptions raised by the relay.

Components raise these and never HTTP exceptions -- translating them into
``error`` events or JSON responses is the router's responsibility.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every relay failure."""


class BindConflictError(RelayError):
    """The relay port is already owned by another process."""

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        super().__init__(f"Port {port} on {host} is already in use")


class HandlerNotFoundError(RelayError, LookupError):
    """No local or remote handler is registered for the agent id."""

    def __init__(self, agent_id: str | None) -> None:
        self.agent_id = agent_id
        super().__init__(f'Handler "{agent_id}" not found')


class HandlerDisconnectedError(RelayError):
    """A remote handler's control socket closed before the invocation finished."""

    def __init__(self, agent_id: str | None = None) -> None:
        self.agent_id = agent_id
        super().__init__("Handler disconnected")


class ExternalBinaryMissingError(RelayError):
    """The provider CLI executable could not be found."""

    def __init__(self, binary: str, install_hint: str) -> None:
        self.binary = binary
        self.install_hint = install_hint
        super().__init__(f"{binary} is not installed. Install: {install_hint}")


class ExternalProcessError(RelayError):
    """The provider CLI exited with a nonzero status we did not cause."""

    def __init__(self, binary: str, returncode: int, stderr: str = "") -> None:
        self.binary = binary
        self.returncode = returncode
        self.stderr = stderr
        message = f"{binary} exited with code {returncode}"
        if stderr:
            message = f"{message}\n\nstderr:\n{stderr}"
        super().__init__(message)


class SessionBusyError(RelayError):
    """A run is already streaming for this session id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has a run in progress")


class UndoUnavailableError(RelayError):
    """Undo / redo cannot be performed (unsupported or no history)."""


class ShuttingDownError(RelayError):
    """Raised when attempting to start a run while the process shuts down."""

    def __init__(self) -> None:
        super().__init__("Relay is shutting down")
