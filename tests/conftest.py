"""Shared pytest fixtures: fake protocol clients standing in for server processes."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from lsp_orchestrator.lsp.capabilities import CapabilitySet
from lsp_orchestrator.lsp.descriptors import MarkerRoot, ServerDescriptor
from lsp_orchestrator.lsp.errors import SpawnFailure
from lsp_orchestrator.lsp.registry import Registry

FULL_CAPABILITIES: Dict[str, Any] = {
    "renameProvider": True,
    "codeActionProvider": True,
    "referencesProvider": True,
    "implementationProvider": True,
    "definitionProvider": True,
    "declarationProvider": True,
    "documentSymbolProvider": True,
    "workspaceSymbolProvider": True,
    "typeDefinitionProvider": True,
    "inlayHintProvider": {"resolveProvider": False},
    "documentHighlightProvider": True,
}


class FakeClient:
    """Protocol client double with the method-call capability check."""

    def __init__(
        self,
        descriptor: ServerDescriptor,
        root: Path,
        server_capabilities: Optional[Dict[str, Any]] = None,
        on_exit=None,
        gate: Optional[asyncio.Event] = None,
        init_error: Optional[Exception] = None,
    ):
        self.descriptor = descriptor
        self.root = root
        self.server_id = descriptor.id
        self.raw_capabilities = dict(FULL_CAPABILITIES if server_capabilities is None else server_capabilities)
        self.capabilities = CapabilitySet()
        self.on_exit = on_exit
        self.gate = gate
        self.init_error = init_error
        self.initialize_calls = 0
        self.opened: List[Path] = []
        self.closed: List[Path] = []
        self.requests: List[tuple] = []
        self.diagnostics: Dict[Path, list] = {}
        self.shutdown_called = False

    async def initialize(self, client_capabilities, initialization_options=None) -> CapabilitySet:
        self.initialize_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.init_error is not None:
            raise self.init_error
        self.capabilities = CapabilitySet.from_server(
            self.raw_capabilities, self.descriptor.disabled_capabilities
        )
        return self.capabilities

    def supports_method(self, method: str, document: Optional[Path] = None) -> bool:
        return self.capabilities.supports(method)

    async def request(self, method: str, params: Any = None) -> Any:
        self.requests.append((method, params))
        return {"method": method}

    async def did_open(self, path: Path, language_id: str, text: Optional[str] = None) -> None:
        self.opened.append(path)

    async def did_close(self, path: Path) -> None:
        self.closed.append(path)

    def get_diagnostics(self, path: Path) -> list:
        return self.diagnostics.get(path, [])

    async def shutdown(self, timeout: float = 5.0) -> None:
        self.shutdown_called = True

    def crash(self) -> None:
        if self.on_exit is not None:
            self.on_exit(self)


class LegacyClient(FakeClient):
    """Client double that only exposes raw ``server_capabilities``."""

    supports_method = None  # type: ignore[assignment]

    @property
    def server_capabilities(self):
        return self.capabilities.raw


class FakeLauncher:
    """Launcher double recording every spawn."""

    client_type = FakeClient

    def __init__(
        self,
        capabilities: Optional[Dict[str, Dict[str, Any]]] = None,
        fail: tuple = (),
        gate: Optional[asyncio.Event] = None,
        init_error: Optional[Exception] = None,
        spawn_gate: Optional[asyncio.Event] = None,
    ):
        self.capabilities = capabilities or {}
        self.fail = set(fail)
        self.gate = gate
        self.init_error = init_error
        self.spawn_gate = spawn_gate
        self.spawns: List[tuple] = []
        self.clients: List[FakeClient] = []

    async def __call__(self, descriptor: ServerDescriptor, root: Path, on_exit=None) -> FakeClient:
        self.spawns.append((descriptor.id, root))
        # Yield so concurrent activations overlap with the spawn
        await asyncio.sleep(0)
        if self.spawn_gate is not None:
            await self.spawn_gate.wait()
        if descriptor.id in self.fail:
            raise SpawnFailure(descriptor.id, root, "executable not found")
        client = self.client_type(
            descriptor,
            root,
            self.capabilities.get(descriptor.id),
            on_exit=on_exit,
            gate=self.gate,
            init_error=self.init_error,
        )
        self.clients.append(client)
        return client


class LegacyLauncher(FakeLauncher):
    client_type = LegacyClient


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A workspace with a Rust crate and a Vue app."""
    crate = tmp_path / "crate"
    (crate / "src").mkdir(parents=True)
    (crate / "Cargo.toml").write_text("[package]\nname = \"demo\"\n", encoding="utf-8")
    (crate / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
    (crate / "src" / "lib.rs").write_text("pub fn lib() {}\n", encoding="utf-8")

    app = tmp_path / "app"
    app.mkdir()
    (app / "package.json").write_text("{}", encoding="utf-8")
    (app / "App.vue").write_text("<template></template>\n", encoding="utf-8")
    (app / "main.ts").write_text("export {};\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def registry() -> Registry:
    return Registry(
        [
            ServerDescriptor(
                id="alpha",
                filetypes=frozenset({"rust"}),
                command=("alpha-ls",),
                root_rule=MarkerRoot(("Cargo.toml",)),
            ),
            ServerDescriptor(
                id="beta",
                filetypes=frozenset({"vue"}),
                command=("beta-ls", "--stdio"),
                root_rule=MarkerRoot(("package.json",)),
            ),
        ]
    )


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def notifications() -> List[tuple]:
    return []


@pytest.fixture
def notify(notifications):
    def _notify(message: str, level: int) -> None:
        notifications.append((message, level))

    return _notify


@pytest.fixture
def make_launcher():
    """Factory for launchers with per-server capabilities, failures and spawn or negotiation gates."""
    return FakeLauncher


@pytest.fixture
def make_legacy_launcher():
    return LegacyLauncher
