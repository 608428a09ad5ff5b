"""Tests for the capability-gated feature binder."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from lsp_orchestrator.lsp.capabilities import CapabilitySet
from lsp_orchestrator.lsp.descriptors import ServerDescriptor
from lsp_orchestrator.lsp.errors import RegistryError
from lsp_orchestrator.lsp.features import FEATURES, FeatureBinder, build_params
from lsp_orchestrator.lsp.sessions import DocumentSession, SessionState


def _session(tmp_path: Path, capabilities=None) -> DocumentSession:
    session = DocumentSession(
        document=tmp_path / "main.rs",
        filetype="rust",
        descriptor=ServerDescriptor(id="alpha", filetypes=frozenset({"rust"})),
        root=tmp_path,
    )
    if capabilities is not None:
        session.transition(SessionState.STARTING)
        session.transition(SessionState.NEGOTIATING)
        session.activate(CapabilitySet.from_server(capabilities))
    return session


def _client(capabilities) -> MagicMock:
    negotiated = CapabilitySet.from_server(capabilities)
    client = MagicMock()
    client.supports_method.side_effect = lambda method, document=None: negotiated.supports(method)
    client.request = AsyncMock(return_value=[{"uri": "file:///x"}])
    return client


def test_catalog_keys_and_descriptions() -> None:
    keys = {feature.name: feature.keys for feature in FEATURES}

    assert keys == {
        "rename": "grn",
        "code_action": "gra",
        "references": "grr",
        "implementation": "gri",
        "definition": "grd",
        "declaration": "grD",
        "document_symbols": "gO",
        "workspace_symbols": "gW",
        "type_definition": "grt",
        "toggle_inlay_hints": "<leader>th",
        "document_highlight": "",
    }
    code_action = next(feature for feature in FEATURES if feature.name == "code_action")
    assert code_action.modes == ("n", "x")


def test_document_highlight_disabled_by_default() -> None:
    assert "document_highlight" not in {f.name for f in FeatureBinder().catalog}
    assert "document_highlight" in {f.name for f in FeatureBinder(enable=["document_highlight"]).catalog}


def test_unknown_feature_names_rejected() -> None:
    with pytest.raises(RegistryError, match="teleport"):
        FeatureBinder(disable=["teleport"])


def test_bind_only_supported_features(tmp_path: Path) -> None:
    capabilities = {"renameProvider": True, "definitionProvider": True, "inlayHintProvider": True}
    session = _session(tmp_path, capabilities)
    binder = FeatureBinder()

    bound = binder.bind(session, _client(capabilities))

    assert set(bound) == {"rename", "definition", "toggle_inlay_hints"}
    assert bound["rename"].description == "LSP: [R]e[n]ame"
    assert binder.keymap(session) == {
        "grn": "LSP: [R]e[n]ame",
        "grd": "LSP: [G]oto [D]efinition",
        "<leader>th": "LSP: [T]oggle Inlay [H]ints",
    }


def test_bind_requires_client_confirmation(tmp_path: Path) -> None:
    session = _session(tmp_path, {"renameProvider": True, "definitionProvider": True})
    client = _client({"definitionProvider": True})

    bound = FeatureBinder().bind(session, client)

    assert set(bound) == {"definition"}


def test_bind_ignores_inactive_session(tmp_path: Path) -> None:
    session = _session(tmp_path)

    assert dict(FeatureBinder().bind(session, _client({"renameProvider": True}))) == {}


def test_check_selected_once_from_client_type() -> None:
    class Legacy:
        server_capabilities = {}

    assert FeatureBinder(client_type=Legacy).check.name == "positional"
    assert FeatureBinder().check.name == "method-call"


@pytest.mark.asyncio
async def test_invoke_sends_request(tmp_path: Path) -> None:
    capabilities = {"renameProvider": True}
    session = _session(tmp_path, capabilities)
    client = _client(capabilities)
    binder = FeatureBinder()
    binder.bind(session, client)

    result = await binder.invoke(session, client, "rename", line=3, character=7, new_name="renamed")

    assert result == [{"uri": "file:///x"}]
    method, params = client.request.await_args.args
    assert method == "textDocument/rename"
    assert params["position"] == {"line": 3, "character": 7}
    assert params["newName"] == "renamed"


@pytest.mark.asyncio
async def test_invoke_unbound_feature_is_noop(tmp_path: Path) -> None:
    session = _session(tmp_path, {"definitionProvider": True})
    client = _client({"definitionProvider": True})
    binder = FeatureBinder()
    binder.bind(session, client)

    assert await binder.invoke(session, client, "rename", new_name="x") is None
    assert await binder.invoke(session, client, "no_such_feature") is None
    client.request.assert_not_awaited()


@pytest.mark.asyncio
async def test_toggle_inlay_hints_flips_session_flag(tmp_path: Path) -> None:
    capabilities = {"inlayHintProvider": True}
    session = _session(tmp_path, capabilities)
    client = _client(capabilities)
    binder = FeatureBinder()
    binder.bind(session, client)

    assert await binder.invoke(session, client, "toggle_inlay_hints") is True
    assert await binder.invoke(session, client, "toggle_inlay_hints") is False
    client.request.assert_not_awaited()


def test_unbind_clears_features(tmp_path: Path) -> None:
    capabilities = {"renameProvider": True}
    session = _session(tmp_path, capabilities)
    binder = FeatureBinder()
    binder.bind(session, _client(capabilities))
    session.inlay_hints_enabled = True

    binder.unbind(session)

    assert session.features == {}
    assert session.inlay_hints_enabled is False


def test_build_params_shapes(tmp_path: Path) -> None:
    by_name = {feature.name: feature for feature in FEATURES}
    document = tmp_path / "main.rs"

    assert build_params(by_name["workspace_symbols"], document, query="Foo") == {"query": "Foo"}
    assert set(build_params(by_name["document_symbols"], document)) == {"textDocument"}

    code_action = build_params(by_name["code_action"], document, line=1, character=2, end_line=4)
    assert code_action["range"] == {"start": {"line": 1, "character": 2}, "end": {"line": 4, "character": 2}}

    references = build_params(by_name["references"], document, include_declaration=False)
    assert references["context"] == {"includeDeclaration": False}
    assert references["textDocument"]["uri"].startswith("file://")
