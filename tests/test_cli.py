"""
Unit tests for the mindstudio-local CLI.

Tests cover:
- argument parsing for global options and subcommands
- env / config / logout commands persisting to the config file
- fatal errors mapping to exit code 1

Run with: pytest tests/test_cli.py -v
"""

from __future__ import annotations

from unittest import mock

import pytest
import yaml

from shared.schemas import LocalModel
from tunnel.cli import build_parser, main
from tunnel.config import TunnelConfig, save_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("MINDSTUDIO_ENV", "MINDSTUDIO_API_KEY", "MINDSTUDIO_TUNNEL_CONFIG"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "config.yaml"


def read(path):
    return yaml.safe_load(path.read_text())


class TestParser:
    def test_global_options(self, tmp_path):
        args = build_parser().parse_args(["--env", "local", "--config", str(tmp_path / "c.yaml"), "status"])

        assert args.env == "local"
        assert args.config == tmp_path / "c.yaml"
        assert args.command == "status"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_unknown_provider_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["config", "set-provider-url", "vllm", "http://x"])

    def test_auth_no_browser(self):
        assert build_parser().parse_args(["auth", "--no-browser"]).no_browser is True


class TestConfigCommands:
    def test_env_switch_is_saved(self, config_file, capsys):
        assert main(["--config", str(config_file), "env", "local"]) == 0

        assert read(config_file)["environment"] == "local"
        assert "Environment: local (http://localhost:3129)" in capsys.readouterr().out

    def test_env_flag_is_not_saved(self, config_file, capsys):
        save_config(TunnelConfig(), config_file)

        assert main(["--env", "local", "--config", str(config_file), "config", "set-provider-url",
                     "ollama", "http://gpu-box:11434"]) == 0

        on_disk = read(config_file)
        assert on_disk["environment"] == "prod"
        assert on_disk["provider_base_urls"] == {"ollama": "http://gpu-box:11434"}

    def test_set_install_path_expands_user(self, config_file):
        assert main(["--config", str(config_file), "config", "set-install-path", "comfyui", "~/ComfyUI"]) == 0

        path = read(config_file)["provider_install_paths"]["comfyui"]
        assert not path.startswith("~")
        assert path.endswith("ComfyUI")

    def test_set_api_url_targets_active_environment(self, config_file):
        assert main(["--config", str(config_file), "--env", "local", "config", "set-api-url",
                     "http://localhost:4000"]) == 0

        envs = read(config_file)["environments"]
        assert envs["local"]["api_base_url"] == "http://localhost:4000"
        assert envs["prod"]["api_base_url"] == "https://api.mindstudio.ai"

    def test_show_prints_provider_urls(self, config_file, capsys):
        assert main(["--config", str(config_file), "config"]) == 0

        out = capsys.readouterr().out
        assert "http://localhost:1234/v1" in out
        assert "stable-diffusion" in out
        assert not config_file.exists()

    def test_logout_clears_key(self, config_file):
        config = TunnelConfig()
        config.set_credentials("sk-old", user_id="u-1")
        save_config(config, config_file)

        assert main(["--config", str(config_file), "logout"]) == 0

        assert "api_key" not in read(config_file)["environments"]["prod"]


class TestRuntimeCommands:
    def test_start_without_credentials_fails(self, config_file, capsys):
        assert main(["--config", str(config_file), "start"]) == 1

        assert "Not authenticated" in capsys.readouterr().err

    def test_invalid_config_fails(self, config_file, capsys):
        config_file.write_text("environment: [broken")

        assert main(["--config", str(config_file), "status"]) == 1
        assert "Invalid YAML" in capsys.readouterr().err

    def test_models_lists_discovered_models(self, config_file, capsys):
        registry = mock.MagicMock()
        registry.refresh = mock.AsyncMock()
        registry.models = [
            LocalModel(name="llama3:8b", provider="ollama", parameter_size="8.0B", quantization="Q4_0"),
            LocalModel(name="ComfyUI Image Generation", provider="comfyui", capability="image",
                       status_hint="Workflow converter not available"),
        ]

        with mock.patch("tunnel.cli.ProviderRegistry.from_config", return_value=registry):
            assert main(["--config", str(config_file), "models"]) == 0

        out = capsys.readouterr().out
        assert "Found 2 model(s):" in out
        assert "llama3:8b [ollama, text] (8.0B, Q4_0)" in out
        assert "[Workflow converter not available]" in out

    def test_register_without_models_fails(self, config_file, capsys):
        registry = mock.MagicMock()
        registry.refresh = mock.AsyncMock()
        registry.sync_entries = mock.AsyncMock(return_value=[])

        with mock.patch("tunnel.cli.ProviderRegistry.from_config", return_value=registry):
            assert main(["--config", str(config_file), "register"]) == 1

        assert "nothing to register" in capsys.readouterr().err
