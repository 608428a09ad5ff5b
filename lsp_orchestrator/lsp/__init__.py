"""Language server orchestration: registry, installation, activation and features."""
from __future__ import annotations

from .capabilities import CapabilitySet, select_check
from .client import LSPClient
from .descriptors import ServerDescriptor, builtin_descriptors
from .diagnostics import Diagnostic, DiagnosticsConfig, DiagnosticSeverity
from .dispatcher import ActivationDispatcher
from .errors import (
    ConfigurationError,
    InstallFailure,
    NegotiationTimeout,
    OrchestrationError,
    RegistryError,
    SessionStateError,
    SpawnFailure,
    StaleResponse,
)
from .events import DocumentClosed, DocumentOpened, ServerExited
from .features import FEATURES, Binding, Feature, FeatureBinder
from .installer import CommandPackageManager, InstallerBridge, ensure_installed
from .registry import Registry
from .servers import ServerLauncher
from .sessions import DetachReason, DocumentSession, SessionState

__all__ = [
    "ActivationDispatcher",
    "Binding",
    "CapabilitySet",
    "CommandPackageManager",
    "ConfigurationError",
    "Diagnostic",
    "DiagnosticSeverity",
    "DiagnosticsConfig",
    "DetachReason",
    "DocumentClosed",
    "DocumentOpened",
    "DocumentSession",
    "FEATURES",
    "Feature",
    "FeatureBinder",
    "InstallFailure",
    "InstallerBridge",
    "LSPClient",
    "NegotiationTimeout",
    "OrchestrationError",
    "Registry",
    "RegistryError",
    "ServerDescriptor",
    "ServerExited",
    "ServerLauncher",
    "SessionState",
    "SessionStateError",
    "SpawnFailure",
    "StaleResponse",
    "builtin_descriptors",
    "ensure_installed",
    "select_check",
]
