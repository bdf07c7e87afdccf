"""Configuration file handling for the BaiduPan client.

The configuration is a small YAML file holding the account name and client
settings. Passwords are never stored in it.
"""

from __future__ import annotations

import os
import stat
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .auth import DEFAULT_TIMEOUT
from .cache import DEFAULT_CACHE_TTL
from .errors import ConfigError

# Default config locations
DEFAULT_CONFIG_NAME = ".baidupan"
XDG_CONFIG_NAME = "baidupan/baidupan.conf"
CONFIG_ENV_VAR = "BAIDUPAN_CONFIG"

# File permissions (owner read/write only)
CONFIG_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0o600


class ClientConfig(BaseModel):
    """Settings stored in the configuration file."""

    username: str = Field(default="", description="Account to log in with")
    cache_ttl: float = Field(
        default=DEFAULT_CACHE_TTL,
        ge=0,
        description="Seconds to keep cached listings; 0 disables caching",
    )
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0, description="HTTP timeout")


def config_candidates() -> list[Path]:
    """Return the configuration file locations in lookup order.

    ``BAIDUPAN_CONFIG`` replaces the search entirely. Otherwise the home file
    comes before the XDG one.
    """
    env_config = os.environ.get(CONFIG_ENV_VAR)
    if env_config:
        return [Path(env_config).expanduser()]
    xdg_config_home = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
    return [Path.home() / DEFAULT_CONFIG_NAME, xdg_config_home / XDG_CONFIG_NAME]


def resolve_config_path(config_path: str | Path | None = None) -> Path:
    """Return the configuration file to read and write.

    An explicit path wins. Otherwise the first candidate that is an existing
    file is used, and a new file goes to the first candidate.
    """
    if config_path is not None:
        return Path(config_path).expanduser()
    candidates = config_candidates()
    return next((path for path in candidates if path.is_file()), candidates[0])


def load_config(config_path: str | Path | None = None) -> ClientConfig:
    """Load the configuration file.

    Args:
        config_path: Path to config file. If None, uses default location.

    Returns:
        The loaded settings, or the defaults if the file does not exist.

    Raises:
        ConfigError: If the file exists but cannot be parsed.
    """
    path = resolve_config_path(config_path)
    if not path.exists():
        return ClientConfig()

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {e}") from e

    if not data:
        return ClientConfig()

    try:
        return ClientConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def save_config(config: ClientConfig, config_path: str | Path | None = None) -> Path:
    """Save the configuration file with owner-only permissions.

    Returns:
        The path written to.

    Raises:
        ConfigError: If the file cannot be written.
    """
    path = resolve_config_path(config_path)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(config.model_dump(), default_flow_style=False))
        path.chmod(CONFIG_FILE_MODE)
    except OSError as e:
        raise ConfigError(f"Failed to save config: {e}") from e

    return path
