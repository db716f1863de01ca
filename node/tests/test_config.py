"""Tests for configuration loading."""

from __future__ import annotations

from crowdmesh.config import AppConfig, load_config


def test_defaults_without_file(tmp_path):
    config = load_config(tmp_path / "missing.yaml")
    assert config == AppConfig()
    assert config.proximity.window_ms == 5000
    assert config.crowd.nearby_threshold == -70
    assert config.location.anchor_ttl_seconds == 0.0


def test_yaml_overrides(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "node:\n"
        "  name: Gate B\n"
        "crowd:\n"
        "  high_proportion: 0.7\n"
        "  unknown_key: 3\n"
        "chat:\n"
        "  max_messages: 50\n"
    )
    config = load_config(path)
    assert config.node.name == "Gate B"
    assert config.crowd.high_proportion == 0.7
    assert config.chat.max_messages == 50
    assert not hasattr(config.crowd, "unknown_key")


def test_env_overrides_win(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("proximity:\n  window_ms: 8000\n")
    monkeypatch.setenv("CROWDMESH_PROXIMITY_WINDOW_MS", "3000")
    monkeypatch.setenv("CROWDMESH_CROWD_MEDIUM_PROPORTION", "0.5")
    monkeypatch.setenv("CROWDMESH_LOGGING_FORMAT", "json")

    config = load_config(path)
    assert config.proximity.window_ms == 3000
    assert config.crowd.medium_proportion == 0.5
    assert config.logging.format == "json"


def test_config_path_from_env(tmp_path, monkeypatch):
    path = tmp_path / "node.yaml"
    path.write_text("api:\n  port: 9090\n")
    monkeypatch.setenv("CROWDMESH_CONFIG", str(path))
    assert load_config().api.port == 9090


def test_empty_yaml_is_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(path) == AppConfig()
