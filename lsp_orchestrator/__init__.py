"""Public package interface for the language server orchestrator."""

from __future__ import annotations

from importlib import metadata as _metadata

try:
    __version__ = _metadata.version("lsp-orchestrator")
except _metadata.PackageNotFoundError:  # pragma: no cover - fallback when not installed
    __version__ = "0.1.0"

from . import core, lsp
from .core import Settings, configure_logging, get_logger, load_settings
from .lsp import (
    ActivationDispatcher,
    FeatureBinder,
    InstallerBridge,
    Registry,
    ServerDescriptor,
    ensure_installed,
)

__all__ = [
    "ActivationDispatcher",
    "FeatureBinder",
    "InstallerBridge",
    "Registry",
    "ServerDescriptor",
    "Settings",
    "__version__",
    "configure_logging",
    "core",
    "ensure_installed",
    "get_logger",
    "load_settings",
    "lsp",
]
