"""Config discovery and loading.

Priority order (highest wins):
1. Environment variables (BATCH_SIZE, WAIT_AFTER_MESSAGE, NOOP_INTERVAL,
   MAILBRIDGE_BOT_TOKEN, MAILBRIDGE_IMAP_URL)
2. The config file (YAML; JSON is valid YAML)
3. Schema defaults
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .conventions import CONFIG_FILENAMES
from .errors import ConfigError
from .schema import BridgeConfig

logger = logging.getLogger(__name__)

# env var -> config key
_STR_OVERRIDES = {
    "MAILBRIDGE_BOT_TOKEN": "bot_token",
    "MAILBRIDGE_IMAP_URL": "imap_url",
}
_INT_OVERRIDES = {
    "BATCH_SIZE": "batch_size",
    "WAIT_AFTER_MESSAGE": "wait_after_message_ms",
    "NOOP_INTERVAL": "noop_interval_ms",
}


def find_config_file(explicit: Path | str | None = None, cwd: Path | None = None) -> Path:
    """Return the config file to load.

    An explicit path must exist. Otherwise the first of CONFIG_FILENAMES
    present in *cwd* wins.
    """
    if explicit is not None:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ConfigError(f"Config file not found at path: {path}")
        return path

    base = cwd or Path.cwd()
    for name in CONFIG_FILENAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    raise ConfigError(f"No config file found in {base} (tried {', '.join(CONFIG_FILENAMES)})")


def _read_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping at the top level")
    return data


def _apply_env(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    merged = dict(data)
    for env_key, config_key in _STR_OVERRIDES.items():
        value = env.get(env_key, "")
        if value:
            merged[config_key] = value
    for env_key, config_key in _INT_OVERRIDES.items():
        value = env.get(env_key, "")
        if not value:
            continue
        try:
            merged[config_key] = int(value)
        except ValueError:
            raise ConfigError(f"{env_key} must be an integer, got {value!r}") from None
    return merged


def load_config(
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> BridgeConfig:
    """Find, read and validate the configuration. Raises ConfigError."""
    config_file = find_config_file(path, cwd)
    data = _apply_env(_read_file(config_file), os.environ if env is None else env)
    try:
        config = BridgeConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {config_file}:\n{exc}") from exc
    logger.debug("Loaded config from %s", config_file)
    return config
