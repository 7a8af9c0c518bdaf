"""Per-provider description consumed by the generic process adapter.

Everything provider-specific is data: how to build the command line, how to
turn one line of the CLI's JSON output into ``AgentMessage``s, where the
CLI reports its own thread id, and how to tell the user to install it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agentrelay.relay.errors import ExternalBinaryMissingError
from agentrelay.relay.handler import RunOptions
from agentrelay.relay.models.messages import AgentMessage

logger = logging.getLogger(__name__)

ProviderEvent = dict[str, Any]


@dataclass(frozen=True)
class RunRequest:
    """Input of ``ProviderSpec.build_argv``."""

    options: RunOptions
    resume_token: str | None = None


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of one external coding CLI."""

    agent_id: str
    binary: str
    install_hint: str
    build_argv: Callable[[RunRequest], list[str]]
    map_event: Callable[[ProviderEvent], list[AgentMessage]]
    thread_id_keys: tuple[str, ...] = ("session_id",)
    supports_undo: bool = True
    undo_prompt: str = "Please undo the last change you made."
    redo_prompt: str = "Please redo the last change you undid."

    def extract_thread_id(self, event: ProviderEvent) -> str | None:
        for key in self.thread_id_keys:
            value = event.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def missing_binary_error(self) -> ExternalBinaryMissingError:
        return ExternalBinaryMissingError(self.binary, self.install_hint)


def parse_line(line: str | bytes) -> ProviderEvent | None:
    """Parse one output line as a JSON object.

    Returns ``None`` for blank lines, invalid JSON and non-object values --
    partial lines at stream edges are expected and never fatal.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    text = line.strip()
    if not text:
        return None
    try:
        event = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed output line: %.200s", text)
        return None
    if not isinstance(event, dict):
        return None
    return event


def text_blocks(blocks: Any, separator: str = " ") -> str:
    """Join the ``text`` of every ``{"type": "text"}`` block in a content list."""
    if not isinstance(blocks, list):
        return ""
    parts = [
        block["text"]
        for block in blocks
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    ]
    return separator.join(parts).strip()


def truncate(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."
