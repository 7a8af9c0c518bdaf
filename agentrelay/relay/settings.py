"""Relay configuration loaded from AGENT_RELAY_* environment variables."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RELAY_PORT = 4722


class RelaySettings(BaseSettings):
    """agent-relay settings.

    All fields are read from environment variables with the ``AGENT_RELAY_``
    prefix.  For example, ``AGENT_RELAY_PORT=4800`` maps to ``port``.
    Command-line flags take precedence over these values.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Server ----------------------------------------------------------------
    host: str = "127.0.0.1"
    port: int = DEFAULT_RELAY_PORT

    health_check_timeout: float = 1.0
    """Seconds the startup probe waits for ``GET /health`` on the relay port."""

    post_kill_delay: float = 0.1
    """Pause after releasing a stale listener or losing the bind race."""

    release_stale_port: bool = True
    """Kill leftover listeners on the relay port before binding as host."""

    reconnect_delay: float = 1.0
    """Seconds a remote handler waits before reconnecting to a dropped host."""

    graceful_shutdown_timeout: float = 30.0
    """Seconds the host waits for in-flight invocations before force-aborting."""

    # -- Process adapter -------------------------------------------------------
    cwd: str | None = None
    """Default working directory for provider CLIs (falls back to the process cwd)."""

    kill_grace_period: float = 3.0
    """Seconds between SIGTERM and SIGKILL when aborting a provider CLI."""

    max_line_bytes: int = 16 * 1024 * 1024
    """Largest single output line accepted from a provider CLI."""


@lru_cache(maxsize=1)
def _get_settings_cached() -> RelaySettings:
    return RelaySettings()


def get_settings() -> RelaySettings:
    """Return a cached settings instance.

    Call ``_get_settings_cached.cache_clear()`` in tests to force a re-read
    after overriding env vars.
    """
    return _get_settings_cached()
