"""Configuration management for the envelope budget engine.

This module centralizes paths, environment variable overrides and the
logging setup shared by the engine and the maintenance scripts.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from .settings import get_config_value

# Base project root - assumes this file is in envelope_budget/
_PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = Path(os.getenv("ENVELOPE_BUDGET_DATA_DIR", _PROJECT_ROOT / "data"))

# Document store
DB_PATH = Path(
    os.getenv("ENVELOPE_BUDGET_DB_PATH", DATA_DIR / "budget.db")
).resolve()

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def ensure_data_directories() -> None:
    """Create all required data directories if they don't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)


def get_db_path() -> str:
    """Get the document store path as a string."""
    return str(DB_PATH)


def get_recalc_batch_size() -> int:
    """Maximum number of month documents written per batch.

    ``ENVELOPE_BUDGET_RECALC_BATCH_SIZE`` overrides the value from
    ``settings/engine.json``. Invalid or non-positive overrides are ignored.
    """
    default = int(get_config_value('engine', 'recalculation', 'batch_size', default=400))
    raw = os.getenv("ENVELOPE_BUDGET_RECALC_BATCH_SIZE")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def configure_logging(level: Optional[Union[int, str]] = None) -> None:
    """Configure root logging for scripts.

    Args:
        level: Logging level name or number. Falls back to
            ``ENVELOPE_BUDGET_LOG_LEVEL`` and then ``INFO``.
    """
    if level is None:
        level = os.getenv("ENVELOPE_BUDGET_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
