"""
Tunnel configuration.

Loaded once per process from YAML ($TUNNEL_CONFIG or
~/.local-model-tunnel/config.yaml) and validated with pydantic. The
tunnel only reads this file; credentials are written by other tooling.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

log = logging.getLogger("tunnel.config")

DEFAULT_CONFIG_PATH = Path.home() / ".local-model-tunnel" / "config.yaml"

DEFAULT_PROVIDER_URLS: Dict[str, str] = {
    "ollama": "http://localhost:11434",
    "lmstudio": "http://localhost:1234/v1",
    "stable-diffusion": "http://127.0.0.1:7860",
    "comfyui": "http://127.0.0.1:8188",
}

Environment = Literal["prod", "local"]


class EnvironmentConfig(BaseModel):
    api_base_url: Optional[str] = None
    api_key: Optional[str] = None
    user_id: Optional[str] = None


def _default_environments() -> Dict[str, EnvironmentConfig]:
    return {
        "prod": EnvironmentConfig(api_base_url="https://api.mindstudio.ai"),
        "local": EnvironmentConfig(api_base_url="http://localhost:3129"),
    }


class RunnerConfig(BaseModel):
    poll_backoff_s: float = 5.0
    progress_interval_s: float = 0.1
    poll_timeout_s: float = 65.0
    sync_models: bool = True
    status_host: str = "127.0.0.1"
    status_port: int = 0  # 0 disables the status endpoint


class ComfyConfig(BaseModel):
    job_timeout_s: float = 30 * 60
    history_timeout_s: float = 30.0
    download_timeout_s: float = 60.0
    poll_interval_s: float = 1.0


class TunnelConfig(BaseModel):
    environment: Environment = "prod"
    environments: Dict[str, EnvironmentConfig] = Field(default_factory=_default_environments)
    provider_base_urls: Dict[str, str] = Field(default_factory=dict)
    provider_install_paths: Dict[str, str] = Field(default_factory=dict)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    comfyui: ComfyConfig = Field(default_factory=ComfyConfig)

    def _env(self) -> EnvironmentConfig:
        env = self.environments.get(self.environment)
        if env is None:
            env = _default_environments()[self.environment]
        return env

    @property
    def api_base_url(self) -> str:
        url = self._env().api_base_url or _default_environments()[self.environment].api_base_url
        return url.rstrip("/")

    @property
    def api_key(self) -> Optional[str]:
        return self._env().api_key

    def provider_base_url(self, name: str) -> str:
        url = self.provider_base_urls.get(name) or DEFAULT_PROVIDER_URLS.get(name, "")
        return url.rstrip("/")

    def provider_install_path(self, name: str) -> Optional[Path]:
        raw = self.provider_install_paths.get(name)
        return Path(raw).expanduser() if raw else None


def config_path() -> Path:
    env_path = os.environ.get("TUNNEL_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def _apply_env_overrides(cfg: TunnelConfig) -> TunnelConfig:
    environment = os.environ.get("TUNNEL_ENVIRONMENT")
    if environment in ("prod", "local"):
        cfg.environment = environment  # type: ignore[assignment]

    env = cfg.environments.setdefault(cfg.environment, _default_environments()[cfg.environment])
    api_key = os.environ.get("TUNNEL_API_KEY")
    if api_key:
        env.api_key = api_key
    base_url = os.environ.get("TUNNEL_API_BASE_URL")
    if base_url:
        env.api_base_url = base_url
    return cfg


def load_config(path: Optional[Path] = None) -> TunnelConfig:
    """Read and validate the YAML config; a missing file yields defaults."""
    path = path or config_path()
    data: Dict = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        log.info("Loaded config from %s", path)
    else:
        log.info("No config at %s; using defaults", path)

    cfg = TunnelConfig.model_validate(data)
    return _apply_env_overrides(cfg)
