"""
Strata Config - Loader.

Reads ~/.strata/config.yaml and applies STRATA_* environment overrides.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import ValidationError

from strata.config.constants import DEFAULT_CONFIG_PATH, ENV_PREFIX
from strata.config.models import StrataConfig
from strata.core.exceptions import ConfigurationError

# Environment variable suffix -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "STATE_PATH": ("general", "state_path"),
    "REFRESH": ("general", "refresh"),
    "MAX_WORKERS": ("apply", "max_workers"),
    "MAX_ATTEMPTS": ("apply", "max_attempts"),
    "INITIAL_DELAY": ("apply", "initial_delay"),
    "MAX_DELAY": ("apply", "max_delay"),
    "RUN_TIMEOUT": ("apply", "run_timeout"),
    "PROVIDER": ("provider", "name"),
    "REGION": ("provider", "region"),
    "PROFILE": ("provider", "profile"),
    "LOCAL_PATH": ("provider", "local_path"),
    "LOG_DIR": ("logging", "log_dir"),
}


def _read_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", {"path": str(path)}) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping", {"path": str(path)})
    return data


def _apply_env(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    for suffix, (section, key) in ENV_OVERRIDES.items():
        value = env.get(f"{ENV_PREFIX}{suffix}")
        if value is None or value == "":
            continue
        section_data = data.setdefault(section, {})
        if not isinstance(section_data, dict):
            raise ConfigurationError(f"Config section '{section}' must be a mapping")
        section_data[key] = value
        logger.debug(f"Config override from environment: {section}.{key}")
    return data


def load_config(
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> StrataConfig:
    """
    Load configuration.

    Args:
        path: Config file. If None, uses ~/.strata/config.yaml when present.
        env: Environment mapping (default: os.environ)

    Returns:
        Validated StrataConfig

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}", {"path": str(config_path)})
        data = _read_file(config_path)
    elif DEFAULT_CONFIG_PATH.exists():
        data = _read_file(DEFAULT_CONFIG_PATH)

    data = _apply_env(data, env)

    try:
        return StrataConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
