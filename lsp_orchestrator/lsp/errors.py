"""Error taxonomy for the orchestration layer.

None of these are fatal to the orchestrator itself. Each one is scoped to a
single tool (installation) or a single document session (spawn, negotiation).
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class OrchestrationError(Exception):
    """Base class for orchestrator errors."""


class ConfigurationError(OrchestrationError):
    """Invalid server configuration or descriptors file."""


class RegistryError(OrchestrationError):
    """Inconsistent descriptor table (duplicate ids, unknown server)."""


class SessionStateError(OrchestrationError):
    """Illegal document session state transition."""


class InstallFailure(OrchestrationError):
    """A tool could not be acquired by the package manager."""

    def __init__(self, tool_id: str, reason: str):
        super().__init__(f"Failed to install {tool_id}: {reason}")
        self.tool_id = tool_id
        self.reason = reason


class SpawnFailure(OrchestrationError):
    """A language server process could not be started."""

    def __init__(self, descriptor_id: str, root: Optional[Path], reason: str):
        where = f" for {root}" if root is not None else ""
        super().__init__(f"Failed to start {descriptor_id}{where}: {reason}")
        self.descriptor_id = descriptor_id
        self.root = root
        self.reason = reason


class NegotiationTimeout(OrchestrationError):
    """The server did not answer ``initialize`` within the allowed window."""

    def __init__(self, descriptor_id: str, timeout: float):
        super().__init__(f"{descriptor_id} did not finish initialization within {timeout:g}s")
        self.descriptor_id = descriptor_id
        self.timeout = timeout


class StaleResponse(OrchestrationError):
    """Negotiation result delivered to a session that is already detached.

    Only used internally; never surfaced to the user.
    """

    def __init__(self, session_id: str):
        super().__init__(f"Discarding negotiation result for detached session {session_id}")
        self.session_id = session_id


__all__ = [
    "ConfigurationError",
    "InstallFailure",
    "NegotiationTimeout",
    "OrchestrationError",
    "RegistryError",
    "SessionStateError",
    "SpawnFailure",
    "StaleResponse",
]
