from __future__ import annotations

import pytest

from agentrelay.relay.settings import DEFAULT_RELAY_PORT, _get_settings_cached, get_settings


def test_defaults() -> None:
    settings = get_settings()
    assert settings.port == DEFAULT_RELAY_PORT
    assert settings.host == "127.0.0.1"
    assert settings.health_check_timeout == 1.0
    assert settings.release_stale_port is True


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_RELAY_PORT", "4800")
    monkeypatch.setenv("AGENT_RELAY_RELEASE_STALE_PORT", "false")
    _get_settings_cached.cache_clear()

    settings = get_settings()
    assert settings.port == 4800
    assert settings.release_stale_port is False
    assert get_settings() is settings
