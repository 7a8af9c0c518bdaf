"""Shared test fixtures: in-memory handlers, a fake provider CLI and settings.

Nothing here needs network access or an installed coding CLI.  Process
adapter tests run ``tests/fixtures/fake_cli.py`` with the current
interpreter; relay tests use ``FakeHandler``.
"""

from __future__ import annotations

import asyncio
import socket
import sys
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import Any

import pytest
from sse_starlette.sse import AppStatus

from agentrelay.providers.base import ProviderEvent, ProviderSpec, RunRequest
from agentrelay.relay.errors import UndoUnavailableError
from agentrelay.relay.handler import Handler, RunOptions
from agentrelay.relay.models.messages import AgentMessage
from agentrelay.relay.settings import RelaySettings, _get_settings_cached

FAKE_CLI = Path(__file__).parent / "fixtures" / "fake_cli.py"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_global_state() -> Iterator[None]:
    """sse-starlette keeps a process-wide exit flag; the settings cache is global too."""
    AppStatus.should_exit = False
    _get_settings_cached.cache_clear()
    yield
    AppStatus.should_exit = False
    _get_settings_cached.cache_clear()


# ---------------------------------------------------------------------------
# In-memory handler
# ---------------------------------------------------------------------------


class FakeHandler(Handler):
    """Yields a fixed script; optionally blocks afterwards until aborted."""

    def __init__(
        self,
        agent_id: str = "alpha",
        script: list[AgentMessage] | None = None,
        *,
        hang: bool = False,
        undo_error: str | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.script = script if script is not None else []
        self.hang = hang
        self.undo_error = undo_error
        self.calls: list[tuple[str, RunOptions]] = []
        self.aborted: list[str] = []
        self.undone = 0
        self.redone = 0
        self.closed = 0
        self._released = asyncio.Event()

    @property
    def supports_undo(self) -> bool:
        return True

    async def run(self, prompt: str, options: RunOptions) -> AsyncIterator[AgentMessage]:
        self.calls.append((prompt, options))
        try:
            for message in self.script:
                yield message
            if self.hang:
                await self._released.wait()
        finally:
            self.closed += 1

    async def abort(self, session_id: str) -> None:
        self.aborted.append(session_id)
        self._released.set()

    async def undo(self) -> None:
        if self.undo_error:
            raise UndoUnavailableError(self.undo_error)
        self.undone += 1

    async def redo(self) -> None:
        if self.undo_error:
            raise UndoUnavailableError(self.undo_error)
        self.redone += 1


@pytest.fixture
def make_handler() -> type[FakeHandler]:
    return FakeHandler


# ---------------------------------------------------------------------------
# Fake provider CLI
# ---------------------------------------------------------------------------


def _fake_argv(request: RunRequest) -> list[str]:
    argv = [str(FAKE_CLI), str(request.options.extra.get("mode", "ok"))]
    if request.resume_token:
        argv += ["--resume", request.resume_token]
    return argv


def _fake_event(event: ProviderEvent) -> list[AgentMessage]:
    match event.get("type"):
        case "status":
            return [AgentMessage.status(str(event.get("text", "")))]
        case "error":
            return [AgentMessage.error(str(event.get("text", "")))]
    return []


@pytest.fixture
def fake_spec() -> ProviderSpec:
    return ProviderSpec(
        agent_id="fake",
        binary=sys.executable,
        install_hint="https://example.invalid/fake-cli",
        build_argv=_fake_argv,
        map_event=_fake_event,
        undo_prompt="undo",
        redo_prompt="redo",
    )


@pytest.fixture
def settings(tmp_path: Path) -> RelaySettings:
    return RelaySettings(
        cwd=str(tmp_path),
        kill_grace_period=1.0,
        release_stale_port=False,
        post_kill_delay=0.05,
        reconnect_delay=0.1,
        graceful_shutdown_timeout=2.0,
    )


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def event_blocks(body: str) -> list[tuple[str, str]]:
    """Parse an SSE body into ``(event, data)`` pairs."""
    events = []
    for block in body.replace("\r\n", "\n").split("\n\n"):
        if not block.strip():
            continue
        fields: dict[str, Any] = {"event": "message", "data": []}
        for line in block.split("\n"):
            name, _, value = line.partition(":")
            value = value.removeprefix(" ")
            if name == "event":
                fields["event"] = value
            elif name == "data":
                fields["data"].append(value)
        events.append((fields["event"], "\n".join(fields["data"])))
    return events


@pytest.fixture
def parse_sse():
    return event_blocks
