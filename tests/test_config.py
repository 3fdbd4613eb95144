"""Tests for agent settings."""

from dataclasses import replace

import pytest

from hostvol.config import AgentSettings, validate_agent_settings


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("HOSTVOL_NODE_NAME", "worker-7")
    monkeypatch.setenv("HOSTVOL_API_PORT", "9100")
    monkeypatch.setenv("HOSTVOL_HEARTBEAT_INTERVAL", "1.5")
    monkeypatch.setenv("HOSTVOL_REGISTRATION_DIR", "/run/hostvol/plugins")
    monkeypatch.setenv("HOSTVOL_STATUS_RETENTION", "120")
    monkeypatch.setenv("HOSTVOL_MAX_FINISHED_STATUSES", "50")

    settings = AgentSettings.from_env()

    assert settings.node_name == "worker-7"
    assert settings.port == 9100
    assert settings.heartbeat_interval == 1.5
    assert settings.registration_dir == "/run/hostvol/plugins"
    assert settings.status_retention == 120.0
    assert settings.max_finished_statuses == 50


def test_unparseable_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("HOSTVOL_API_PORT", "eighty")
    monkeypatch.setenv("HOSTVOL_MISSED_HEARTBEATS", "")

    settings = AgentSettings.from_env()

    assert settings.port == 8010
    assert settings.missed_heartbeat_limit == 3


def test_defaults_are_valid():
    validate_agent_settings(AgentSettings(node_name="node-1"))


@pytest.mark.parametrize(
    "changes",
    [
        {"port": 0},
        {"node_name": " "},
        {"registration_dir": "plugins"},
        {"heartbeat_timeout": 0},
        {"missed_heartbeat_limit": 0},
        {"backoff_initial": 10.0, "backoff_cap": 5.0},
        {"max_frame_bytes": 16},
        {"status_retention": 0},
        {"max_finished_statuses": -1},
    ],
)
def test_invalid_settings_rejected(changes):
    with pytest.raises(ValueError):
        validate_agent_settings(replace(AgentSettings(node_name="node-1"), **changes))
