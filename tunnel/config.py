"""
Tunnel configuration.

Stored as YAML at ~/.mindstudio-local-tunnel/config.yaml (override with
MINDSTUDIO_TUNNEL_CONFIG). MINDSTUDIO_ENV and MINDSTUDIO_API_KEY override
the stored environment and key for the current process only.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from tunnel.errors import ConfigurationError

log = logging.getLogger("mindstudio-tunnel.config")

Environment = Literal["prod", "local"]

CONFIG_DIR = Path.home() / ".mindstudio-local-tunnel"
CONFIG_FILENAME = "config.yaml"

DEFAULT_API_BASE_URLS: Dict[str, str] = {
    "prod": "https://api.mindstudio.ai",
    "local": "http://localhost:3129",
}

DEFAULT_PROVIDER_URLS: Dict[str, str] = {
    "ollama": "http://localhost:11434",
    "lmstudio": "http://localhost:1234/v1",
    "stable-diffusion": "http://127.0.0.1:7860",
    "comfyui": "http://127.0.0.1:8188",
}


class EnvironmentConfig(BaseModel):
    api_base_url: str
    api_key: Optional[str] = None
    user_id: Optional[str] = None


def _default_environments() -> Dict[str, EnvironmentConfig]:
    return {env: EnvironmentConfig(api_base_url=url) for env, url in DEFAULT_API_BASE_URLS.items()}


class TunnelConfig(BaseModel):
    environment: Environment = "prod"
    environments: Dict[str, EnvironmentConfig] = Field(default_factory=_default_environments)
    provider_base_urls: Dict[str, str] = Field(default_factory=dict)
    provider_install_paths: Dict[str, str] = Field(default_factory=dict)

    poll_retry_delay_s: float = 5.0
    progress_interval_s: float = 0.1
    workflow_timeout_s: float = 1800.0
    probe_timeout_s: float = 2.0
    max_concurrent_requests: Optional[int] = Field(default=None, ge=1)

    # Process-only overrides (--env, MINDSTUDIO_ENV, MINDSTUDIO_API_KEY); never written back to disk
    environment_override: Optional[Environment] = Field(default=None, exclude=True)
    api_key_override: Optional[str] = Field(default=None, exclude=True)

    @property
    def active_environment(self) -> str:
        return self.environment_override or self.environment

    @property
    def current(self) -> EnvironmentConfig:
        name = self.active_environment
        env = self.environments.get(name)
        if env is None:
            env = EnvironmentConfig(api_base_url=DEFAULT_API_BASE_URLS[name])
            self.environments[name] = env
        return env

    @property
    def api_base_url(self) -> str:
        return self.current.api_base_url.rstrip("/")

    @property
    def api_key(self) -> Optional[str]:
        return self.api_key_override or self.current.api_key

    @property
    def user_id(self) -> Optional[str]:
        return self.current.user_id

    def set_credentials(self, api_key: str, user_id: Optional[str] = None) -> None:
        self.current.api_key = api_key
        if user_id is not None:
            self.current.user_id = user_id

    def clear_credentials(self) -> None:
        self.current.api_key = None
        self.current.user_id = None

    def provider_url(self, name: str) -> str:
        return self.provider_base_urls.get(name) or DEFAULT_PROVIDER_URLS[name]

    def install_path(self, name: str) -> Optional[str]:
        return self.provider_install_paths.get(name)


def config_path() -> Path:
    override = os.getenv("MINDSTUDIO_TUNNEL_CONFIG")
    if override:
        return Path(override).expanduser()
    return CONFIG_DIR / CONFIG_FILENAME


def apply_env_overrides(config: TunnelConfig) -> TunnelConfig:
    env = os.getenv("MINDSTUDIO_ENV")
    if env:
        if env not in DEFAULT_API_BASE_URLS:
            raise ConfigurationError(f"MINDSTUDIO_ENV must be one of prod, local (got {env!r})")
        config.environment_override = env  # type: ignore[assignment]
    api_key = os.getenv("MINDSTUDIO_API_KEY")
    if api_key:
        config.api_key_override = api_key
    return config


def load_config(path: Optional[Path] = None, apply_env: bool = True) -> TunnelConfig:
    """Load the config file, falling back to defaults when it does not exist."""
    path = path or config_path()
    raw: Dict = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
    else:
        log.debug(f"No config at {path}; using defaults")

    try:
        config = TunnelConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config in {path}: {e}") from e

    # Keep both environments addressable even if the file only lists one
    for env, url in DEFAULT_API_BASE_URLS.items():
        config.environments.setdefault(env, EnvironmentConfig(api_base_url=url))

    if apply_env:
        apply_env_overrides(config)
    return config


def save_config(config: TunnelConfig, path: Optional[Path] = None) -> Path:
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude_none=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        log.warning(f"Could not restrict permissions on {path}: {e}")
    return path
