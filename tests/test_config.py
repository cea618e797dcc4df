"""Tests for tunnel.config: YAML persistence and process-only overrides."""
from __future__ import annotations

import os
import stat

import pytest
import yaml

from tunnel.config import TunnelConfig, config_path, load_config, save_config
from tunnel.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("MINDSTUDIO_ENV", "MINDSTUDIO_API_KEY", "MINDSTUDIO_TUNNEL_CONFIG"):
        monkeypatch.delenv(var, raising=False)


def test_defaults_when_file_missing(tmp_path):
    config = load_config(tmp_path / "missing.yaml")

    assert config.active_environment == "prod"
    assert config.api_base_url == "https://api.mindstudio.ai"
    assert config.api_key is None
    assert config.provider_url("ollama") == "http://localhost:11434"
    assert config.provider_url("comfyui") == "http://127.0.0.1:8188"
    assert config.poll_retry_delay_s == 5.0


def test_round_trip(tmp_path):
    path = tmp_path / "nested" / "config.yaml"
    config = TunnelConfig()
    config.set_credentials("sk-abc", user_id="user-1")
    config.provider_base_urls["lmstudio"] = "http://gpu-box:1234/v1"

    save_config(config, path)
    loaded = load_config(path)

    assert loaded.api_key == "sk-abc"
    assert loaded.user_id == "user-1"
    assert loaded.provider_url("lmstudio") == "http://gpu-box:1234/v1"
    assert loaded.environments["local"].api_key is None
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_partial_file_keeps_both_environments(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "environment": "local",
        "environments": {"local": {"api_base_url": "http://localhost:4000/", "api_key": "sk-dev"}},
    }))

    config = load_config(path)

    assert config.api_base_url == "http://localhost:4000"
    assert config.api_key == "sk-dev"
    assert config.environments["prod"].api_base_url == "https://api.mindstudio.ai"


def test_env_overrides_are_not_persisted(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    save_config(TunnelConfig(), path)
    monkeypatch.setenv("MINDSTUDIO_ENV", "local")
    monkeypatch.setenv("MINDSTUDIO_API_KEY", "sk-from-env")

    config = load_config(path)
    assert config.active_environment == "local"
    assert config.api_key == "sk-from-env"
    save_config(config, path)

    on_disk = yaml.safe_load(path.read_text())
    assert on_disk["environment"] == "prod"
    assert "environment_override" not in on_disk
    assert "api_key_override" not in on_disk
    assert "api_key" not in on_disk["environments"]["local"]


def test_invalid_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("MINDSTUDIO_ENV", "staging")

    with pytest.raises(ConfigurationError, match="MINDSTUDIO_ENV"):
        load_config(tmp_path / "config.yaml")


@pytest.mark.parametrize(
    "content, message",
    [
        ("environment: [unclosed", "Invalid YAML"),
        ("- just\n- a list\n", "must contain a mapping"),
        ("environment: staging\n", "Invalid config"),
        ("max_concurrent_requests: 0\n", "Invalid config"),
    ],
    ids=["bad-yaml", "not-a-mapping", "bad-environment", "bad-concurrency"],
)
def test_invalid_files(tmp_path, content, message):
    path = tmp_path / "config.yaml"
    path.write_text(content)

    with pytest.raises(ConfigurationError, match=message):
        load_config(path)


def test_config_path_override(tmp_path, monkeypatch):
    monkeypatch.setenv("MINDSTUDIO_TUNNEL_CONFIG", str(tmp_path / "alt.yaml"))

    assert config_path() == tmp_path / "alt.yaml"


def test_clear_credentials_only_touches_active_environment():
    config = TunnelConfig()
    config.set_credentials("sk-prod", user_id="u")
    config.environments["local"].api_key = "sk-local"

    config.clear_credentials()

    assert config.api_key is None
    assert config.user_id is None
    assert config.environments["local"].api_key == "sk-local"
