"""
Configuration defaults and config-file loading for digislide.

Usage:
    from digislide.utils.config import load_config, get_detection_defaults

    config = load_config('/path/to/experiment')
    timeout = config["tepis"]["timeout_s"]

Environment Variables:
    DIGISLIDE_OUTPUT_DIR: Default output directory for registries and overlays
    TEPIS_URL: Base URL of the remote image server
    TEPIS_USER / TEPIS_PASSWORD: Remote credentials (read by the CLI only)
    OPENSLIDE_LIBRARY_PATH: Directory holding the OpenSlide shared library
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from digislide.errors import InvalidParameter
from digislide.utils.json_utils import atomic_json_dump
from digislide.utils.logging import get_logger

logger = get_logger(__name__)


DEFAULT_PATHS = {
    "output_dir": os.getenv("DIGISLIDE_OUTPUT_DIR", str(Path.home() / "digislide_output")),
    "tepis_url": os.getenv("TEPIS_URL", ""),
    "openslide_library_path": os.getenv("OPENSLIDE_LIBRARY_PATH", ""),
}


DEFAULT_CONFIG = {
    "display": {
        # Minimum number of pixels shown for a viewport
        "target_resolution": 800 ** 2,
        "padding": 0.15,
    },
    "tepis": {
        "timeout_s": 60.0,
        "verify_ssl": True,
        "default_quality": None,
    },
    "czi": {
        # Virtual pyramid stops once either side falls below this
        "min_level_size": 512,
        "scene": 0,
    },
}

# TMA core detection parameters (physical sizes in mm)
DETECTION_DEFAULTS = {
    "core_diameter": 0.6,
    "radius_tolerance": 10.0,
    "strictness": 90.0,
    "target_core_diameter_pixels": 20.0,
}


_VALIDATION_RULES: Dict[str, Dict[str, Any]] = {
    "display": {
        "target_resolution": {"min": 1, "max": 1e9, "type": (int, float)},
        "padding": {"min": 0.0, "max": 1.0, "type": (int, float)},
    },
    "tepis": {
        "timeout_s": {"min": 0.1, "max": 3600.0, "type": (int, float)},
        "default_quality": {"min": 1, "max": 100, "type": int, "nullable": True},
    },
    "czi": {
        "min_level_size": {"min": 16, "max": 65536, "type": int},
        "scene": {"min": 0, "max": 1000, "type": int},
    },
    "detection": {
        "core_diameter": {"min": 1e-6, "max": 1e3, "type": (int, float)},
        "radius_tolerance": {"min": 0, "max": 100, "type": (int, float)},
        "strictness": {"min": 0, "max": 100, "type": (int, float)},
        "target_core_diameter_pixels": {"min": 1e-6, "max": 1e6, "type": (int, float)},
    },
}


def get_default_path(key: str) -> str:
    """Get a default path from the environment, or empty string if unknown."""
    return DEFAULT_PATHS.get(key, "")


def get_detection_defaults() -> Dict[str, float]:
    """Return a copy of the default TMA detection parameters."""
    return DETECTION_DEFAULTS.copy()


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Recursively merge override into base (in place)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Check config values against the range rules.

    Args:
        config: Configuration dictionary (sections as in DEFAULT_CONFIG)

    Returns:
        List of error messages, empty when the config is valid
    """
    errors = []
    for section, rules in _VALIDATION_RULES.items():
        values = config.get(section)
        if not isinstance(values, dict):
            continue
        for key, rule in rules.items():
            if key not in values:
                continue
            value = values[key]
            if value is None and rule.get("nullable"):
                continue
            if isinstance(value, bool) or not isinstance(value, rule["type"]):
                errors.append(f"{section}.{key}: expected {rule['type']}, got {type(value).__name__}")
                continue
            if not rule["min"] <= value <= rule["max"]:
                errors.append(
                    f"{section}.{key}: {value} outside [{rule['min']}, {rule['max']}]"
                )
    return errors


def load_config(
    experiment_dir: Optional[Union[str, Path]] = None,
    config_filename: str = "digislide.json",
) -> Dict[str, Any]:
    """
    Load configuration, deep-merged over DEFAULT_CONFIG.

    A missing file yields the defaults. An unreadable or invalid file raises.

    Args:
        experiment_dir: Directory holding the config file (None for defaults)
        config_filename: Name of the config file

    Returns:
        Merged configuration dict, including a "detection" section

    Raises:
        InvalidParameter: If the file cannot be parsed or fails validation
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["detection"] = get_detection_defaults()

    if experiment_dir is None:
        return config

    config_path = Path(experiment_dir) / config_filename
    if not config_path.exists():
        logger.debug("No config at %s, using defaults", config_path)
        return config

    try:
        with open(config_path, 'r') as f:
            file_config = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise InvalidParameter(f"Could not load config from {config_path}: {e}",
                               operation="load_config") from e

    _deep_merge(config, file_config)
    errors = validate_config(config)
    if errors:
        raise InvalidParameter("Invalid config: " + "; ".join(errors),
                               operation="load_config", parameter=str(config_path))
    logger.debug("Loaded config from %s", config_path)
    return config


def save_config(
    config: Dict[str, Any],
    output_dir: Union[str, Path],
    config_filename: str = "digislide.json",
) -> Path:
    """Write a config file atomically and return its path."""
    config_path = Path(output_dir) / config_filename
    atomic_json_dump(config, config_path)
    logger.debug("Saved config to %s", config_path)
    return config_path
