"""Config Loader - Loads the optional YAML defaults file.

The defaults file holds values a user would otherwise repeat on every
invocation (corporate proxy, CA bundle, user agent, ...). Strings may
reference environment variables as ${VAR}. Explicit command-line values
always win over the file.

Lookup order: --config, then $KURL_CONFIG, then ~/.config/kurl/config.yaml
(only when it exists).
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kurl.errors import ConfigError, LocalIOError

logger = logging.getLogger(__name__)

ENV_CONFIG_PATH = "KURL_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "kurl" / "config.yaml"

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


class ClientDefaults(BaseModel):
    """Top-level defaults file structure."""

    model_config = ConfigDict(extra="forbid")

    proxy: str | None = Field(default=None, description="Proxy URL")
    proxy_user: str | None = Field(default=None, description="Proxy credentials 'user:pass'")
    no_proxy: str | list[str] | None = Field(
        default=None, description="Hosts that bypass the proxy (list or comma-separated)"
    )
    ca_bundle: Path | None = Field(default=None, description="Extra PEM trust roots")
    insecure: bool = Field(default=False, description="Skip TLS verification")
    user_agent: str | None = None
    connect_timeout: float | None = Field(default=None, ge=0)
    max_time: float | None = Field(default=None, ge=0)
    max_redirects: int | None = Field(default=None, ge=0)
    compressed: bool = False
    headers: list[str] = Field(
        default_factory=list, description="Extra 'Name: value' headers sent on every request"
    )


def find_config_path(
    explicit: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Path | None:
    """Locate the defaults file, or None when there is nothing to load."""
    if explicit is not None:
        return explicit
    source = os.environ if env is None else env
    from_env = source.get(ENV_CONFIG_PATH)
    if from_env:
        return Path(from_env)
    if DEFAULT_CONFIG_PATH.is_file():
        return DEFAULT_CONFIG_PATH
    return None


def load_defaults(
    config_path: Path,
    env: Mapping[str, str] | None = None,
) -> ClientDefaults:
    """Load the defaults file with ${ENV_VAR} substitution.

    Raises:
        LocalIOError: If the file cannot be read.
        ConfigError: If the YAML is invalid, references an unset variable or
                     does not match the expected structure.
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except OSError as e:
        raise LocalIOError(f"cannot read config file {config_path}: {e.strerror or e}", config_path) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {config_path}: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError(f"Config file {config_path} must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config, os.environ if env is None else env)

    try:
        defaults = ClientDefaults.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid config structure in {config_path}: {e}") from e

    logger.debug("loaded defaults from %s", config_path)
    return defaults


def _substitute_env_vars(data: Any, env: Mapping[str, str]) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data, env)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v, env) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item, env) for item in data]
    return data


def _substitute_string(s: str, env: Mapping[str, str]) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = env.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_REF.sub(replacer, s)
