"""Capability-gated user actions.

Each feature of the catalog maps one protocol method to a user-invocable
action and its default keybinding. :class:`FeatureBinder` attaches a feature
to a session only when the negotiated capabilities of the session's server
confirm the method, once, when the session becomes active.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Tuple

from lsp_orchestrator.core.utils.constants import KEYMAP_DESC_PREFIX
from lsp_orchestrator.core.utils.logger import get_logger
from lsp_orchestrator.lsp.capabilities import CapabilityCheck, select_check
from lsp_orchestrator.lsp.client import LSPClient
from lsp_orchestrator.lsp.errors import RegistryError
from lsp_orchestrator.lsp.sessions import DocumentSession

LOGGER = get_logger(__name__)

TOGGLE_INLAY_HINTS = "toggle_inlay_hints"


@dataclass(frozen=True)
class Feature:
    """One user action backed by a protocol method."""

    name: str
    method: str
    keys: str
    description: str
    # Shape of the request parameters: position, rename, range, references, document, query, toggle
    shape: str = "position"
    modes: Tuple[str, ...] = ("n",)
    enabled_by_default: bool = True


FEATURES: Tuple[Feature, ...] = (
    Feature("rename", "textDocument/rename", "grn", "[R]e[n]ame", shape="rename"),
    Feature(
        "code_action",
        "textDocument/codeAction",
        "gra",
        "[G]oto Code [A]ction",
        shape="range",
        modes=("n", "x"),
    ),
    Feature("references", "textDocument/references", "grr", "[G]oto [R]eferences", shape="references"),
    Feature("implementation", "textDocument/implementation", "gri", "[G]oto [I]mplementation"),
    Feature("definition", "textDocument/definition", "grd", "[G]oto [D]efinition"),
    Feature("declaration", "textDocument/declaration", "grD", "[G]oto [D]eclaration"),
    Feature(
        "document_symbols",
        "textDocument/documentSymbol",
        "gO",
        "Open Document Symbols",
        shape="document",
    ),
    Feature(
        "workspace_symbols",
        "workspace/symbol",
        "gW",
        "Open Workspace Symbols",
        shape="query",
    ),
    Feature("type_definition", "textDocument/typeDefinition", "grt", "[G]oto [T]ype Definition"),
    Feature(
        TOGGLE_INLAY_HINTS,
        "textDocument/inlayHint",
        "<leader>th",
        "[T]oggle Inlay [H]ints",
        shape="toggle",
    ),
    # Reference highlighting under the cursor; off unless enabled in settings
    Feature(
        "document_highlight",
        "textDocument/documentHighlight",
        "",
        "Highlight References",
        enabled_by_default=False,
    ),
)


@dataclass(frozen=True)
class Binding:
    """A feature attached to one document session."""

    feature: Feature
    keys: str
    description: str
    modes: Tuple[str, ...]

    @classmethod
    def for_feature(cls, feature: Feature) -> "Binding":
        return cls(
            feature=feature,
            keys=feature.keys,
            description=f"{KEYMAP_DESC_PREFIX}{feature.description}",
            modes=feature.modes,
        )


def _position(params: Mapping[str, Any]) -> Dict[str, int]:
    return {"line": int(params.get("line", 0)), "character": int(params.get("character", 0))}


def build_params(feature: Feature, document: Path, **params: Any) -> Dict[str, Any]:
    """Request parameters for ``feature`` on ``document``."""
    text_document = {"uri": LSPClient._path_to_uri(document)}

    if feature.shape == "query":
        return {"query": params.get("query", "")}
    if feature.shape == "document":
        return {"textDocument": text_document}
    if feature.shape == "range":
        start = _position(params)
        end = {
            "line": int(params.get("end_line", start["line"])),
            "character": int(params.get("end_character", start["character"])),
        }
        return {
            "textDocument": text_document,
            "range": {"start": start, "end": end},
            "context": {"diagnostics": list(params.get("diagnostics", []))},
        }

    request = {"textDocument": text_document, "position": _position(params)}
    if feature.shape == "rename":
        request["newName"] = params["new_name"]
    elif feature.shape == "references":
        request["context"] = {"includeDeclaration": bool(params.get("include_declaration", True))}
    return request


class FeatureBinder:
    """Attaches catalog features to sessions, gated by negotiated capabilities.

    The capability-check strategy is chosen once, from ``client_type``.
    """

    def __init__(
        self,
        client_type: type = LSPClient,
        catalog: Iterable[Feature] = FEATURES,
        enable: Iterable[str] = (),
        disable: Iterable[str] = (),
    ):
        enable = set(enable)
        disable = set(disable)
        catalog = tuple(catalog)
        unknown = (enable | disable).difference(feature.name for feature in catalog)
        if unknown:
            raise RegistryError(f"Unknown features: {', '.join(sorted(unknown))}")

        self.catalog: Tuple[Feature, ...] = tuple(
            feature
            for feature in catalog
            if (feature.enabled_by_default or feature.name in enable) and feature.name not in disable
        )
        self.check: CapabilityCheck = select_check(client_type)
        LOGGER.debug("Capability checks use the %s form", self.check.name)

    def bind(self, session: DocumentSession, client: Any) -> Mapping[str, Binding]:
        """Attach every supported feature to an active session.

        A feature is bound only when both the session's negotiated capability
        set and the client confirm the method.
        """
        session.features.clear()
        if not session.is_active or session.capabilities is None:
            LOGGER.debug("Not binding features for inactive session %s", session.id)
            return MappingProxyType(session.features)

        for feature in self.catalog:
            if not session.capabilities.supports(feature.method):
                continue
            if not self.check(client, feature.method, session.document):
                continue
            session.features[feature.name] = Binding.for_feature(feature)

        LOGGER.info(
            "Bound %d feature(s) for %s via %s: %s",
            len(session.features),
            session.document,
            session.descriptor.id,
            ", ".join(session.features) or "-",
        )
        return MappingProxyType(session.features)

    def unbind(self, session: DocumentSession) -> None:
        session.features.clear()
        session.inlay_hints_enabled = False

    async def invoke(self, session: DocumentSession, client: Any, feature_name: str, **params: Any) -> Any:
        """Run a bound feature.

        Invoking a feature the session does not have is a no-op returning
        ``None``.
        """
        binding = session.features.get(feature_name)
        if binding is None or not session.is_active or client is None:
            LOGGER.debug("Feature %s is not available for session %s", feature_name, session.id)
            return None

        if binding.feature.shape == "toggle":
            session.inlay_hints_enabled = not session.inlay_hints_enabled
            return session.inlay_hints_enabled

        request = build_params(binding.feature, session.document, **params)
        return await client.request(binding.feature.method, request)

    @staticmethod
    def keymap(session: DocumentSession) -> Dict[str, str]:
        """Key sequence -> description for the session's bound features."""
        return {
            binding.keys: binding.description
            for binding in session.features.values()
            if binding.keys
        }


__all__ = ["Binding", "FEATURES", "Feature", "FeatureBinder", "TOGGLE_INLAY_HINTS", "build_params"]
