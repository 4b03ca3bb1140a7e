"""Configuration loader for engine settings."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

# Configuration directory
CONFIG_DIR = Path(__file__).parent


@lru_cache(maxsize=None)
def _read_config(config_name: str) -> Dict[str, Any]:
    config_path = CONFIG_DIR / f"{config_name}.json"

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def load_config(config_name: str) -> Dict[str, Any]:
    """Load a configuration file by name.

    Args:
        config_name: Name of the config file (without .json extension)

    Returns:
        Dictionary containing the configuration. The parsed file is cached,
        so callers receive a fresh copy they are free to mutate.

    Raises:
        FileNotFoundError: If the configuration file doesn't exist
        json.JSONDecodeError: If the configuration file is invalid JSON

    Example:
        >>> config = load_config('engine')
        >>> config['special_ids']['no_category']
        '__NO_CATEGORY__'
    """
    return json.loads(json.dumps(_read_config(config_name)))


def get_engine_config() -> Dict[str, Any]:
    """Get the engine configuration.

    Returns:
        Engine configuration dictionary with recalculation, budget, audit and
        special id settings
    """
    return load_config('engine')


def get_config_value(config_name: str, *keys: str, default: Any = None) -> Any:
    """Get a nested configuration value by key path.

    Args:
        config_name: Name of the config file
        *keys: Path to the nested value (e.g., 'recalculation', 'batch_size')
        default: Default value if key path doesn't exist

    Returns:
        The configuration value at the specified path, or default if not found

    Example:
        >>> get_config_value('engine', 'budget', 'percentage_income_months_back')
        1
    """
    try:
        value: Any = _read_config(config_name)
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError, FileNotFoundError):
        return default
