import logging
import os
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("Config")

DEFAULT_CONFIG_PATH = "/etc/signature_tracker/config.yaml"

DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    },
    "http": {
        "host": "0.0.0.0",
        "port": 8000,
        "cors_enabled": False,
    },
    "tracker": {},
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the YAML configuration file, merged over built-in defaults.

    A missing file is not an error: the defaults (plus TRACKER_* environment
    overrides applied later by TrackerConfig) are enough to run.

    Raises:
        ValueError: If the file exists but is not a YAML mapping
    """
    path = config_path or os.environ.get("SIGNATURE_TRACKER_CONFIG", DEFAULT_CONFIG_PATH)

    if not os.path.exists(path):
        logger.warning(f"Config file not found at {path}, using defaults")
        return _merge(DEFAULTS, {})

    with open(path, "r") as f:
        loaded = yaml.safe_load(f) or {}

    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    logger.info(f"Loaded config from {path}")
    return _merge(DEFAULTS, loaded)
