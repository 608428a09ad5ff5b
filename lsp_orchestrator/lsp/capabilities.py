"""Negotiated server capabilities and the capability-check compatibility shim.

Two client shapes exist for asking "does this server support method X":

* newer clients expose ``client.supports_method(method, document)``;
* older clients only carry the raw ``server_capabilities`` table, checked with
  the free function ``supports_method(capabilities, method, {"document": ...})``.

:func:`select_check` picks the matching strategy once, from the client type,
and the binder keeps using it for every session.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Protocol

from lsp_orchestrator.lsp.descriptors import ServerDescriptor, deep_merge, freeze

# Protocol method -> server capability key
METHOD_TO_CAPABILITY: Mapping[str, str] = MappingProxyType(
    {
        "textDocument/rename": "renameProvider",
        "textDocument/prepareRename": "renameProvider.prepareProvider",
        "textDocument/codeAction": "codeActionProvider",
        "textDocument/references": "referencesProvider",
        "textDocument/definition": "definitionProvider",
        "textDocument/declaration": "declarationProvider",
        "textDocument/implementation": "implementationProvider",
        "textDocument/typeDefinition": "typeDefinitionProvider",
        "textDocument/documentSymbol": "documentSymbolProvider",
        "workspace/symbol": "workspaceSymbolProvider",
        "textDocument/inlayHint": "inlayHintProvider",
        "textDocument/documentHighlight": "documentHighlightProvider",
        "textDocument/hover": "hoverProvider",
        "textDocument/completion": "completionProvider",
        "textDocument/signatureHelp": "signatureHelpProvider",
        "textDocument/formatting": "documentFormattingProvider",
    }
)

# Client capabilities announced in ``initialize`` before descriptor overrides
DEFAULT_CLIENT_CAPABILITIES: Mapping[str, Any] = freeze(
    {
        "textDocument": {
            "synchronization": {
                "dynamicRegistration": False,
                "willSave": False,
                "didSave": True,
                "willSaveWaitUntil": False,
            },
            "hover": {"contentFormat": ["markdown", "plaintext"]},
            "definition": {"linkSupport": True},
            "declaration": {"linkSupport": True},
            "implementation": {"linkSupport": True},
            "typeDefinition": {"linkSupport": True},
            "references": {},
            "documentHighlight": {},
            "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
            "codeAction": {
                "codeActionLiteralSupport": {
                    "codeActionKind": {
                        "valueSet": [
                            "",
                            "quickfix",
                            "refactor",
                            "refactor.extract",
                            "refactor.inline",
                            "refactor.rewrite",
                            "source",
                            "source.organizeImports",
                        ]
                    }
                }
            },
            "rename": {"prepareSupport": True},
            "inlayHint": {},
            "publishDiagnostics": {"relatedInformation": True},
        },
        "workspace": {
            "applyEdit": True,
            "workspaceFolders": True,
            "configuration": True,
            "symbol": {},
            "didChangeConfiguration": {"dynamicRegistration": False},
        },
        "window": {"workDoneProgress": True},
    }
)


def client_capabilities(descriptor: ServerDescriptor) -> Dict[str, Any]:
    """Client capabilities for ``descriptor`` with its overrides merged in."""
    return deep_merge(DEFAULT_CLIENT_CAPABILITIES, descriptor.capabilities)


def _lookup(capabilities: Mapping[str, Any], dotted_key: str) -> Any:
    value: Any = capabilities
    for part in dotted_key.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _is_supported(value: Any) -> bool:
    return value is not None and value is not False


@dataclass(frozen=True)
class CapabilitySet:
    """Read-only result of capability negotiation for one server instance."""

    raw: Mapping[str, Any] = field(default_factory=dict)
    disabled: FrozenSet[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", freeze(self.raw))
        object.__setattr__(self, "disabled", frozenset(self.disabled))

    @classmethod
    def from_server(
        cls,
        capabilities: Optional[Mapping[str, Any]],
        disabled: Iterable[str] = (),
    ) -> "CapabilitySet":
        return cls(raw=capabilities or {}, disabled=frozenset(disabled))

    def get(self, capability: str) -> Any:
        """Value of a (dotted) capability key, ``None`` when masked or absent."""
        if capability in self.disabled or capability.split(".", 1)[0] in self.disabled:
            return None
        return _lookup(self.raw, capability)

    def has(self, capability: str) -> bool:
        return _is_supported(self.get(capability))

    def supports(self, method: str) -> bool:
        """Whether the server confirmed support for protocol ``method``."""
        capability = METHOD_TO_CAPABILITY.get(method)
        if capability is None:
            return False
        return self.has(capability)

    def supported_methods(self) -> FrozenSet[str]:
        return frozenset(method for method in METHOD_TO_CAPABILITY if self.supports(method))


def supports_method(
    capabilities: Mapping[str, Any],
    method: str,
    opts: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Positional form of the capability check, for clients without a method.

    ``opts`` may carry the ``document`` the check is made for; static
    capabilities apply to every document, so it is accepted for signature
    compatibility only.
    """
    capability = METHOD_TO_CAPABILITY.get(method)
    if capability is None:
        return False
    return _is_supported(_lookup(capabilities, capability))


class CapabilityCheck(Protocol):
    name: str

    def __call__(self, client: Any, method: str, document: Optional[Path]) -> bool:
        ...


class MethodCallCheck:
    """``client.supports_method(method, document)``."""

    name = "method-call"

    def __call__(self, client: Any, method: str, document: Optional[Path]) -> bool:
        return bool(client.supports_method(method, document))


class PositionalCheck:
    """``supports_method(client.server_capabilities, method, {"document": ...})``."""

    name = "positional"

    def __call__(self, client: Any, method: str, document: Optional[Path]) -> bool:
        capabilities = getattr(client, "server_capabilities", None) or {}
        return supports_method(capabilities, method, {"document": document})


def select_check(client_type: type) -> CapabilityCheck:
    """Pick the capability-check strategy matching ``client_type``."""
    if callable(getattr(client_type, "supports_method", None)):
        return MethodCallCheck()
    return PositionalCheck()


__all__ = [
    "CapabilityCheck",
    "CapabilitySet",
    "DEFAULT_CLIENT_CAPABILITIES",
    "METHOD_TO_CAPABILITY",
    "MethodCallCheck",
    "PositionalCheck",
    "client_capabilities",
    "select_check",
    "supports_method",
]
