"""Per-document session state machine."""
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Mapping, Optional

from lsp_orchestrator.core.utils.logger import get_logger
from lsp_orchestrator.lsp.capabilities import CapabilitySet
from lsp_orchestrator.lsp.descriptors import ServerDescriptor
from lsp_orchestrator.lsp.errors import SessionStateError

if TYPE_CHECKING:
    from lsp_orchestrator.lsp.features import Binding

LOGGER = get_logger(__name__)

_session_ids = itertools.count(1)


class SessionState(str, Enum):
    UNATTACHED = "unattached"
    STARTING = "starting"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    DETACHED = "detached"


_TRANSITIONS: Mapping[SessionState, FrozenSet[SessionState]] = {
    SessionState.UNATTACHED: frozenset({SessionState.STARTING, SessionState.DETACHED}),
    SessionState.STARTING: frozenset({SessionState.NEGOTIATING, SessionState.DETACHED}),
    SessionState.NEGOTIATING: frozenset({SessionState.ACTIVE, SessionState.DETACHED}),
    SessionState.ACTIVE: frozenset({SessionState.DETACHED}),
    SessionState.DETACHED: frozenset(),
}


class DetachReason(str, Enum):
    CLOSED = "closed"
    SERVER_EXITED = "server-exited"
    SPAWN_FAILED = "spawn-failed"
    NEGOTIATION_TIMEOUT = "negotiation-timeout"
    NOT_INSTALLED = "not-installed"
    SHUTDOWN = "shutdown"


@dataclass(eq=False)
class DocumentSession:
    """A (document, attached server) pairing.

    Sessions compare by identity: two sessions for the same document and
    server are still distinct, which is what stale negotiation results are
    matched against.
    """

    document: Path
    filetype: str
    descriptor: ServerDescriptor
    root: Path
    id: str = field(default_factory=lambda: f"s{next(_session_ids)}")
    state: SessionState = SessionState.UNATTACHED
    capabilities: Optional[CapabilitySet] = None
    features: Dict[str, "Binding"] = field(default_factory=dict)
    detach_reason: Optional[DetachReason] = None
    error: Optional[str] = None
    inlay_hints_enabled: bool = False

    @property
    def is_live(self) -> bool:
        return self.state is not SessionState.DETACHED

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def server_key(self) -> tuple:
        return (self.descriptor.id, self.root)

    def transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise SessionStateError(
                f"Session {self.id} cannot move from {self.state.value} to {target.value}"
            )
        LOGGER.debug("Session %s (%s): %s -> %s", self.id, self.descriptor.id, self.state.value, target.value)
        self.state = target

    def activate(self, capabilities: CapabilitySet) -> None:
        self.transition(SessionState.ACTIVE)
        self.capabilities = capabilities

    def detach(self, reason: DetachReason, error: Optional[str] = None) -> bool:
        """Move to DETACHED and drop every bound feature.

        Returns:
            False when the session was already detached
        """
        if self.state is SessionState.DETACHED:
            return False
        self.transition(SessionState.DETACHED)
        self.detach_reason = reason
        self.error = error
        self.features.clear()
        self.inlay_hints_enabled = False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document": str(self.document),
            "filetype": self.filetype,
            "server": self.descriptor.id,
            "root": str(self.root),
            "state": self.state.value,
            "features": sorted(self.features),
            "detach_reason": self.detach_reason.value if self.detach_reason else None,
            "error": self.error,
        }


__all__ = ["DetachReason", "DocumentSession", "SessionState"]
