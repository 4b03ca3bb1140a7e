"""Engine configuration files and loaders.

Tunable constants (batch sizes, special ids, progress milestones) are stored
in JSON files next to this module so they can change without code edits.
"""

from .defaults import load_config, get_engine_config, get_config_value

__all__ = ['load_config', 'get_engine_config', 'get_config_value']
