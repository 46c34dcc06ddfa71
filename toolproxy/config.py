"""Configuration loader: reads config.yaml plus environment, validates with Pydantic.

The YAML file is optional. Environment variables override whatever the file
sets, so a container can run on env alone. The result is cached process-wide
and treated as read-only after startup.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

DEFAULT_DENYLIST = r"rm -rf|shutdown|reboot|mkfs|:\(\)\{:\|:\&\}\;:"

# env var -> config field
_ENV_OVERRIDES = {
    "UPSTREAM_URL": "upstream_url",
    "UPSTREAM_API_KEY": "upstream_api_key",
    "DEFAULT_MODEL": "default_model",
    "WORKSPACE_ROOT": "workspace_root",
    "EXEC_TIMEOUT_MS": "exec_timeout_ms",
    "EXEC_MAX_BUFFER": "exec_max_buffer",
    "EXEC_BLOCKLIST": "exec_denylist",
    "HOST": "host",
    "PORT": "port",
}


class ConfigurationError(RuntimeError):
    """Raised when the proxy cannot serve a request with the current config."""


class ProxyConfig(BaseModel):
    """Top-level proxy configuration."""

    # Upstream
    upstream_url: str | None = None
    upstream_api_key: str = ""
    upstream_timeout: float = 300.0
    default_model: str = "llama3.1:8b"

    # Sandbox
    workspace_root: str = "/app/workspace"
    exec_timeout_ms: int = 8000
    exec_max_buffer: int = 1048576
    exec_denylist: str = DEFAULT_DENYLIST

    # Server & CORS
    host: str = "0.0.0.0"
    port: int = 11434
    allowed_origins: list[str] = ["*"]

    @field_validator("exec_timeout_ms", "exec_max_buffer")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("exec_denylist")
    @classmethod
    def must_compile(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid denylist pattern: {e}") from e
        return v

    @field_validator("upstream_url")
    @classmethod
    def blank_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v

    def require_upstream_url(self) -> str:
        """Return the upstream URL. Raises ConfigurationError if unset."""
        if not self.upstream_url:
            raise ConfigurationError("UPSTREAM_URL not configured")
        return self.upstream_url


# ---------------------------------------------------------------------------
# Module-level config cache
# ---------------------------------------------------------------------------

_config: ProxyConfig | None = None


def _default_path() -> str:
    return os.environ.get("TOOLPROXY_CONFIG", "config.yaml")


def load_config(path: str | None = None) -> ProxyConfig:
    """Read the optional YAML file, overlay environment variables, validate, and cache."""
    global _config

    config_file = Path(path or _default_path())
    raw: dict = {}
    if config_file.exists():
        raw = yaml.safe_load(config_file.read_text()) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file must contain a mapping: {config_file.resolve()}")
        logger.info(f"Read config file {config_file.resolve()}")
    else:
        logger.debug(f"No config file at {config_file}, using environment only")

    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is not None:
            raw[field_name] = value

    _config = ProxyConfig(**raw)

    logger.info(
        f"Loaded config: "
        f"upstream={_config.upstream_url or 'not configured'}, "
        f"workspace_root={_config.workspace_root}"
    )
    return _config


def get_config() -> ProxyConfig:
    """Return cached config. Raises if not yet loaded."""
    if _config is None:
        raise RuntimeError("Config not loaded; call load_config() first")
    return _config
