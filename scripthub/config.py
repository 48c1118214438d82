"""
Configuration - environment constants and the per-command YAML file.

The YAML file holds one mapping per sub-command whose keys are argparse
destinations; those become parser defaults so explicit flags still win.

    port-scan:
      threads: 50
      timeout: 2
    disk-usage:
      threshold: 85
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from scripthub.errors import ValidationError

logger = logging.getLogger("scripthub.config")

LOG_LEVEL = os.getenv("SCRIPTHUB_LOG_LEVEL", "INFO").upper()
DEBUG_MODE = os.getenv("DEBUG_MODE", "").lower() in ("true", "1", "yes")

# auto | always | never
COLOR_MODE = os.getenv("SCRIPTHUB_COLOR", "auto").lower()

CONFIG_PATH = os.getenv(
    "SCRIPTHUB_CONFIG",
    os.path.join(os.path.expanduser("~"), ".config", "scripthub", "config.yaml"),
)
STATE_DIR = os.getenv(
    "SCRIPTHUB_STATE_DIR",
    os.path.join(os.path.expanduser("~"), ".local", "state", "scripthub"),
)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the YAML config file.

    A missing file is an empty config. A file that does not hold a mapping
    raises ValidationError.
    """
    config_file = Path(path or CONFIG_PATH)
    if not config_file.is_file():
        if path:
            raise ValidationError(f"Config file not found: {config_file}")
        return {}

    try:
        with config_file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {config_file}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"Config file {config_file} must contain a mapping")

    logger.debug(f"Loaded config from {config_file}: {sorted(data)}")
    return data


def command_defaults(config: Dict[str, Any], command: str) -> Dict[str, Any]:
    """Return the defaults section for one sub-command."""
    section = config.get(command) or {}
    if not isinstance(section, dict):
        raise ValidationError(f"Config section '{command}' must be a mapping")
    return {key.replace("-", "_"): value for key, value in section.items()}


def state_path(name: str) -> Path:
    """Path of a state file, creating the state directory on first use."""
    directory = Path(STATE_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / name


LOG_LEVELS = ("DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR")
COLOR_MODES = ("auto", "always", "never")


def logging_defaults(config: Dict[str, Any]) -> Dict[str, str]:
    """Top-level `log_level` and `color` keys, falling back to the environment."""
    level = str(config.get("log_level") or LOG_LEVEL).upper()
    if level not in LOG_LEVELS:
        raise ValidationError(f"Config log_level must be one of: {', '.join(LOG_LEVELS)}")

    color = config.get("color", COLOR_MODE)
    # YAML reads bare yes/no/true/false as booleans
    if isinstance(color, bool):
        color = "always" if color else "never"
    color = str(color).lower()
    if color not in COLOR_MODES:
        raise ValidationError(f"Config color must be one of: {', '.join(COLOR_MODES)}")
    return {"log_level": level, "color": color}
