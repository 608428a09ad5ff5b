"""Utility helpers shared across the orchestrator."""

from __future__ import annotations

from .config import CONFIG_FILENAMES, Settings, find_config_in_parents, load_settings
from .logger import (
    StructuredFormatter,
    configure_logging,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)

__all__ = [
    "CONFIG_FILENAMES",
    "Settings",
    "StructuredFormatter",
    "configure_logging",
    "find_config_in_parents",
    "get_correlation_id",
    "get_logger",
    "load_settings",
    "set_correlation_id",
]
