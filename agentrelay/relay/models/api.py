"""HTTP request / response schemas for the browser-facing endpoints.

Wire keys are camelCase (``sessionId``, ``agentId``) to match the browser
client; Python attributes are snake_case.
"""

from __future__ import annotations

import secrets
import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def generate_session_id() -> str:
    """Session id used when the caller does not supply one."""
    return f"session-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class AgentContext(_CamelModel):
    """What to run: the instruction, context blocks and provider options."""

    prompt: str
    content: list[str] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> Any:
        # Older clients send a single string.
        if isinstance(value, str):
            return [value]
        if value is None:
            return []
        return value

    def combined_prompt(self) -> str:
        """Prompt handed to the handler: the instruction followed by the context blocks."""
        if not self.content:
            return self.prompt
        return f"{self.prompt}\n\n" + "\n\n".join(self.content)


class AgentRequest(AgentContext):
    """Body of ``POST /agent``."""

    session_id: str | None = None
    agent_id: str | None = Field(default=None, description="Target handler; defaults to the host's own provider.")


class OperationRequest(_CamelModel):
    """Optional body of ``POST /undo`` and ``POST /redo``."""

    agent_id: str | None = None


class OperationResponse(BaseModel):
    status: Literal["ok", "error"]
    message: str | None = None


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    provider: str | None = None
    handlers: list[str] = Field(default_factory=list)
