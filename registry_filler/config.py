"""
Configuration for the registry form filling pipeline.

Settings are layered: built-in defaults, then an optional JSON file, then
REGISTRY_FILLER_* environment variables (a .env file is honored).
"""

import os
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from loguru import logger

from registry_filler.utils import load_json_safely


ENV_PREFIX = "REGISTRY_FILLER_"

ONE_YEAR_SECONDS = 365 * 24 * 60 * 60


def get_default_config() -> Dict[str, Any]:
    """Get default configuration settings."""
    return {
        'font_size': 10,
        'verify_after_fill': True,
        'auto_correct': True,
        'max_correction_attempts': 1,
        'signed_url_ttl_seconds': ONE_YEAR_SECONDS,
        'storage_root': 'output',
        'log_file': None,
        'log_level': 'INFO',
        'log_rotation': '10 MB',
        'log_retention': None,
        'save_intermediate_files': True,
    }


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Override settings from REGISTRY_FILLER_<NAME> variables.

    Values are converted to the type of the built-in default; a value that
    cannot be converted is logged and ignored.
    """
    environ = os.environ if environ is None else environ
    defaults = get_default_config()
    updated = dict(config)

    for key in defaults:
        raw = environ.get(ENV_PREFIX + key.upper())
        if raw is None:
            continue
        try:
            updated[key] = _coerce(raw, defaults[key])
        except ValueError:
            logger.warning(f"Ignoring invalid value for {ENV_PREFIX}{key.upper()}: {raw!r}")

    return updated


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load the effective configuration.

    Args:
        config_path: Optional JSON file whose keys override the defaults

    Returns:
        Configuration dictionary
    """
    config = get_default_config()

    if config_path:
        file_config = load_json_safely(config_path)
        if file_config is None:
            logger.warning(f"Using defaults, config file unreadable: {config_path}")
        else:
            config.update(file_config)

    load_dotenv()
    return apply_env_overrides(config)
