"""Built-in provider table.

One entry per supported coding CLI.  Each entry pairs an argv builder with
an event mapper for the CLI's line-delimited JSON output; the process
adapter does everything else.
"""

from __future__ import annotations

from typing import Any

from agentrelay.providers.base import ProviderEvent, ProviderSpec, RunRequest, text_blocks, truncate
from agentrelay.relay.errors import HandlerNotFoundError
from agentrelay.relay.models.messages import COMPLETED_STATUS, AgentMessage

Status = AgentMessage.status
Error = AgentMessage.error


def _model_args(request: RunRequest, flag: str = "--model") -> list[str]:
    return [flag, request.options.model] if request.options.model else []


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Claude Code
# ---------------------------------------------------------------------------


def _claude_argv(request: RunRequest) -> list[str]:
    argv = ["--print", "--output-format", "stream-json", "--verbose"]
    argv += _model_args(request)
    argv += ["--permission-mode", request.options.auto_level or "acceptEdits"]
    if request.resume_token:
        argv += ["--resume", request.resume_token]
    return argv


def _claude_event(event: ProviderEvent) -> list[AgentMessage]:
    match event.get("type"):
        case "assistant":
            content = _as_dict(event.get("message")).get("content")
            messages = []
            if isinstance(content, list):
                for block in content:
                    if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("name"):
                        messages.append(Status(f"Using {block['name']}…"))
            text = text_blocks(content)
            if text:
                messages.append(Status(text))
            return messages
        case "result":
            subtype = str(event.get("subtype", ""))
            if event.get("is_error") or subtype.startswith("error"):
                return [Error(str(event.get("result") or subtype or "Task failed"))]
            if subtype == "success":
                return [Status(COMPLETED_STATUS)]
            return [Status("Task finished")]
    return []


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------

_CODEX_SANDBOXES = ("read-only", "workspace-write", "danger-full-access")


def _codex_argv(request: RunRequest) -> list[str]:
    argv = ["exec", "--json", "--skip-git-repo-check"]
    argv += _model_args(request)
    level = request.options.auto_level
    if level in _CODEX_SANDBOXES:
        argv += ["--sandbox", level]
    else:
        argv.append("--full-auto")
    if request.resume_token:
        argv += ["resume", request.resume_token]
    argv.append("-")  # prompt on stdin
    return argv


def _codex_item_status(kind: str, item: dict[str, Any]) -> str | None:
    text = item.get("text") or text_blocks(item.get("content"))
    match item.get("type"):
        case "agent_message" | "reasoning" if kind == "completed":
            return text or None
        case "command_execution" if kind == "started":
            return f"Running: {item.get('command') or 'command'}"
        case "file_change" if kind == "completed":
            changes = item.get("changes")
            if not isinstance(changes, list):
                changes = []
            paths = [c.get("path") for c in changes if isinstance(c, dict) and c.get("path")]
            return f"Editing: {', '.join(paths)}" if paths else "Editing file"
        case "todo_list" if kind == "completed":
            return "Plan updated"
        case "mcp_tool_call" if kind == "started":
            return f"Using {item.get('tool') or 'tool'}…"
    return None


def _codex_event(event: ProviderEvent) -> list[AgentMessage]:
    kind = str(event.get("type", ""))
    base, _, sub = kind.partition(".")
    if base == "item":
        status = _codex_item_status(sub, _as_dict(event.get("item")))
        return [Status(status)] if status else []
    if kind == "turn.completed":
        return [Status(COMPLETED_STATUS)]
    if kind == "turn.failed":
        return [Error(str(_as_dict(event.get("error")).get("message") or "Turn failed"))]
    if kind == "error":
        return [Error(str(event.get("message") or "Unknown error"))]
    return []


# ---------------------------------------------------------------------------
# Cursor
# ---------------------------------------------------------------------------


def _cursor_argv(request: RunRequest) -> list[str]:
    argv = ["--print", "--output-format", "stream-json", "--force"]
    argv += _model_args(request)
    if request.resume_token:
        argv += ["--resume", request.resume_token]
    return argv


def _cursor_event(event: ProviderEvent) -> list[AgentMessage]:
    match event.get("type"):
        case "assistant":
            text = text_blocks(_as_dict(event.get("message")).get("content"))
            return [Status(text)] if text else []
        case "tool_call" if event.get("subtype") == "started":
            call = _as_dict(event.get("tool_call"))
            name = next(iter(call), "tool").removesuffix("ToolCall")
            return [Status(f"Using {name}…")]
        case "result":
            if event.get("subtype") == "error" or event.get("is_error"):
                return [Error(str(event.get("result") or "Unknown error"))]
            if event.get("subtype") == "success":
                return [Status(COMPLETED_STATUS)]
            return [Status("Task finished")]
    return []


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


def _gemini_argv(request: RunRequest) -> list[str]:
    argv = ["--output-format", "stream-json", "--yolo"]
    argv += _model_args(request)
    include = request.options.extra.get("includeDirectories")
    if include:
        argv += ["--include-directories", str(include)]
    if request.resume_token:
        argv += ["--resume", request.resume_token]
    return argv


def _gemini_event(event: ProviderEvent) -> list[AgentMessage]:
    match event.get("type"):
        case "init":
            return [Status("Session started...")]
        case "message" if event.get("role") == "assistant" and event.get("content"):
            return [Status(str(event["content"]))]
        case "tool_use" if event.get("tool_name"):
            return [Status(f"Using {event['tool_name']}...")]
        case "tool_result" if event.get("status") == "error" and event.get("output"):
            return [Status(f"Tool error: {event['output']}")]
        case "error" if event.get("content"):
            return [Error(str(event["content"]))]
        case "result":
            if event.get("status") == "success":
                return [Status(COMPLETED_STATUS)]
            if event.get("status") == "error":
                return [Error("Task failed")]
    return []


# ---------------------------------------------------------------------------
# Droid
# ---------------------------------------------------------------------------


def _droid_argv(request: RunRequest) -> list[str]:
    options = request.options
    argv = ["exec", "--output-format", "stream-json", "--auto", options.auto_level or "low"]
    argv += _model_args(request)
    if options.reasoning_effort:
        argv += ["--reasoning-effort", options.reasoning_effort]
    if options.cwd:
        argv += ["--cwd", options.cwd]
    if request.resume_token:
        argv += ["--session-id", request.resume_token]
    return argv


def _droid_event(event: ProviderEvent) -> list[AgentMessage]:
    match event.get("type"):
        case "message" if event.get("role") == "assistant" and event.get("text"):
            return [Status(str(event["text"]))]
        case "tool_call" if event.get("toolName"):
            return [Status(f"Running {event['toolName']}…")]
        case "completion":
            if event.get("is_error"):
                return [Error(str(event.get("finalText") or "Unknown error"))]
            return [Status(COMPLETED_STATUS)]
    return []


# ---------------------------------------------------------------------------
# Amp
# ---------------------------------------------------------------------------


def _amp_argv(request: RunRequest) -> list[str]:
    argv = ["threads", "continue", request.resume_token] if request.resume_token else []
    return [*argv, "--execute", "--stream-json", "--dangerously-allow-all"]


def _amp_event(event: ProviderEvent) -> list[AgentMessage]:
    match event.get("type"):
        case "system" if event.get("subtype") == "init":
            return [Status("Session started...")]
        case "assistant":
            content = _as_dict(event.get("message")).get("content")
            if isinstance(content, list):
                for block in content:
                    if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("name"):
                        return [Status(f"Using {block['name']}...")]
            text = text_blocks(content)
            return [Status(text)] if text else []
        case "result":
            if event.get("is_error"):
                return [Error(str(event.get("error") or "Unknown error"))]
            return [Status(COMPLETED_STATUS)]
    return []


# ---------------------------------------------------------------------------
# OpenCode
# ---------------------------------------------------------------------------


def _opencode_argv(request: RunRequest) -> list[str]:
    argv = ["run", "--format", "json"]
    argv += _model_args(request)
    if request.resume_token:
        argv += ["--session", request.resume_token]
    return argv


def _opencode_event(event: ProviderEvent) -> list[AgentMessage]:
    part = _as_dict(event.get("part"))
    match event.get("type"):
        case "text" if part.get("text"):
            return [Status(truncate(str(part["text"])))]
        case "tool_use" if part.get("tool"):
            running = _as_dict(part.get("state")).get("status") == "running"
            return [Status(f"{'Running' if running else 'Using'} {part['tool']}")]
        case "error":
            error = _as_dict(event.get("error"))
            message = _as_dict(error.get("data")).get("message") or error.get("name") or "Unknown error"
            return [Error(str(message))]
    return []


# ---------------------------------------------------------------------------
# Table
# ---------------------------------------------------------------------------

PROVIDERS: dict[str, ProviderSpec] = {
    spec.agent_id: spec
    for spec in (
        ProviderSpec(
            agent_id="claude-code",
            binary="claude",
            install_hint="npm install -g @anthropic-ai/claude-code",
            build_argv=_claude_argv,
            map_event=_claude_event,
            undo_prompt="undo",
            redo_prompt="redo",
        ),
        ProviderSpec(
            agent_id="codex",
            binary="codex",
            install_hint="npm install -g @openai/codex",
            build_argv=_codex_argv,
            map_event=_codex_event,
            thread_id_keys=("thread_id",),
        ),
        ProviderSpec(
            agent_id="cursor",
            binary="cursor-agent",
            install_hint="https://cursor.com/docs/cli/overview",
            build_argv=_cursor_argv,
            map_event=_cursor_event,
            undo_prompt="undo",
            redo_prompt="redo",
        ),
        ProviderSpec(
            agent_id="gemini",
            binary="gemini",
            install_hint="npm install -g @google/gemini-cli",
            build_argv=_gemini_argv,
            map_event=_gemini_event,
            undo_prompt="undo",
            redo_prompt="redo",
        ),
        ProviderSpec(
            agent_id="droid",
            binary="droid",
            install_hint="curl -fsSL https://app.factory.ai/cli | sh",
            build_argv=_droid_argv,
            map_event=_droid_event,
            undo_prompt="undo the last change you made",
            redo_prompt="redo the last change you undid",
        ),
        ProviderSpec(
            agent_id="amp",
            binary="amp",
            install_hint="npm install -g @sourcegraph/amp",
            build_argv=_amp_argv,
            map_event=_amp_event,
            thread_id_keys=("thread_id", "session_id"),
            undo_prompt="undo",
            redo_prompt="redo",
        ),
        ProviderSpec(
            agent_id="opencode",
            binary="opencode",
            install_hint="npm install -g opencode-ai",
            build_argv=_opencode_argv,
            map_event=_opencode_event,
            thread_id_keys=("sessionID",),
            # Reverting needs the OpenCode server API; the CLI has no undo.
            supports_undo=False,
        ),
    )
}


def get_provider(agent_id: str) -> ProviderSpec:
    """Look up a built-in provider.  Raises ``HandlerNotFoundError`` for unknown ids."""
    try:
        return PROVIDERS[agent_id]
    except KeyError:
        raise HandlerNotFoundError(agent_id) from None
