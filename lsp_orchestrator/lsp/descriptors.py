"""Language server descriptors and the built-in server table."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from lsp_orchestrator.core.utils.constants import GENERIC_ROOT_MARKERS
from lsp_orchestrator.lsp.errors import ConfigurationError

RootResolver = Callable[[Path, Path], Path]


def freeze(value: Any) -> Any:
    """Return a read-only deep copy of a settings document."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`, producing JSON-serialisable containers."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into ``base``; nested tables are merged key by key."""
    merged = thaw(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = thaw(value)
    return merged


@dataclass(frozen=True)
class MarkerRoot:
    """Resolve the root by walking up from the document to the first marker."""

    markers: Tuple[str, ...] = GENERIC_ROOT_MARKERS

    def __call__(self, document: Path, workspace: Path) -> Path:
        current = document if document.is_dir() else document.parent

        while current != current.parent:
            for marker in self.markers:
                if (current / marker).exists():
                    return current
            current = current.parent

        return workspace


@dataclass(frozen=True)
class CwdRoot:
    """Always scope the server to the working directory."""

    def __call__(self, document: Path, workspace: Path) -> Path:
        return Path(os.getcwd())


@dataclass(frozen=True)
class ServerDescriptor:
    """Static description of how to start and configure one language server.

    Equality and hashing only consider ``id``, ``command`` and ``filetypes``;
    the remaining fields are read-only payloads.
    """

    id: str
    filetypes: FrozenSet[str]
    command: Optional[Tuple[str, ...]] = None
    root_rule: RootResolver = field(default_factory=MarkerRoot, compare=False)
    capabilities: Mapping[str, Any] = field(default_factory=dict, compare=False)
    disabled_capabilities: FrozenSet[str] = field(default_factory=frozenset, compare=False)
    settings: Mapping[str, Any] = field(default_factory=dict, compare=False)
    init_options: Mapping[str, Any] = field(default_factory=dict, compare=False)
    single_file_support: bool = field(default=False, compare=False)
    package: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigurationError("Server descriptor requires an id")
        object.__setattr__(self, "filetypes", frozenset(self.filetypes))
        if self.command is not None:
            object.__setattr__(self, "command", tuple(self.command))
        object.__setattr__(self, "disabled_capabilities", frozenset(self.disabled_capabilities))
        for name in ("capabilities", "settings", "init_options"):
            object.__setattr__(self, name, freeze(getattr(self, name)))

    @property
    def tool_id(self) -> str:
        """Identifier handed to the package manager."""
        return self.package or self.id

    def start_command(self) -> Tuple[str, ...]:
        """Command used to spawn the server (override, then default)."""
        if self.command:
            return self.command
        default = DEFAULT_COMMANDS.get(self.id)
        if not default:
            raise ConfigurationError(f"No start command known for server '{self.id}'")
        return default

    def resolve_root(self, document: Path, workspace: Path) -> Path:
        """Root directory a session for ``document`` is scoped to."""
        return Path(self.root_rule(document, workspace)).resolve()

    def handles(self, filetype: str) -> bool:
        return filetype in self.filetypes


# Default start commands, used when a descriptor carries no override
DEFAULT_COMMANDS: Dict[str, Tuple[str, ...]] = {
    "rust_analyzer": ("rust-analyzer",),
    "lua_ls": ("lua-language-server",),
    "vtsls": ("vtsls", "--stdio"),
    "ts_ls": ("typescript-language-server", "--stdio"),
    "tinymist": ("tinymist",),
    "pyright": ("pyright-langserver", "--stdio"),
    "gopls": ("gopls",),
    "clangd": ("clangd", "--background-index"),
}

DEFAULT_FILETYPES: Dict[str, Tuple[str, ...]] = {
    "rust_analyzer": ("rust",),
    "lua_ls": ("lua",),
    "vtsls": ("javascript", "javascriptreact", "typescript", "typescriptreact", "vue"),
    "ts_ls": ("javascript", "javascriptreact", "typescript", "typescriptreact"),
    "tinymist": ("typst",),
    "pyright": ("python",),
    "gopls": ("go", "gomod", "gowork", "gotmpl"),
    "clangd": ("c", "cpp", "objc", "objcpp", "cuda"),
}

DEFAULT_ROOT_MARKERS: Dict[str, Tuple[str, ...]] = {
    "rust_analyzer": ("Cargo.toml", "rust-project.json", ".git"),
    "lua_ls": (".luarc.json", ".luarc.jsonc", ".luacheckrc", ".stylua.toml", "stylua.toml", "selene.toml", ".git"),
    "vtsls": ("tsconfig.json", "jsconfig.json", "package.json", ".git"),
    "ts_ls": ("tsconfig.json", "jsconfig.json", "package.json", ".git"),
    "pyright": ("pyproject.toml", "setup.py", "setup.cfg", "requirements.txt", "pyrightconfig.json", ".git"),
    "gopls": ("go.work", "go.mod", ".git"),
    "clangd": ("compile_commands.json", "compile_flags.txt", ".clangd", ".git"),
}


def _root_rule_from(value: Any, server_id: str) -> RootResolver:
    if value is None:
        return MarkerRoot(DEFAULT_ROOT_MARKERS.get(server_id, GENERIC_ROOT_MARKERS))
    if callable(value):
        return value
    if value == "cwd":
        return CwdRoot()
    if isinstance(value, str):
        return MarkerRoot((value,))
    if isinstance(value, Sequence):
        return MarkerRoot(tuple(str(item) for item in value))
    raise ConfigurationError(f"Invalid root_dir for server '{server_id}': {value!r}")


def descriptor_from_mapping(
    server_id: str,
    data: Mapping[str, Any],
    base: Optional[ServerDescriptor] = None,
) -> ServerDescriptor:
    """Build a descriptor from a configuration table.

    When ``base`` is given the table is layered on top of it: ``settings``,
    ``capabilities`` and ``init_options`` are deep-merged, every other key
    replaces the base value.

    Args:
        server_id: Descriptor identifier
        data: Table with the keys ``cmd``, ``filetypes``, ``root_dir``,
            ``capabilities``, ``disabled_capabilities``, ``settings``,
            ``init_options``, ``single_file_support`` and ``package``
        base: Existing descriptor to extend

    Returns:
        The new descriptor
    """
    data = {key.replace("-", "_"): value for key, value in data.items()}
    command = data.get("cmd", data.get("command"))
    if isinstance(command, str):
        command = (command,)

    if base is not None:
        filetypes = data.get("filetypes", base.filetypes)
        root_rule = _root_rule_from(data["root_dir"], server_id) if "root_dir" in data else base.root_rule
        return ServerDescriptor(
            id=server_id,
            filetypes=frozenset(filetypes),
            command=tuple(command) if command else base.command,
            root_rule=root_rule,
            capabilities=deep_merge(base.capabilities, data.get("capabilities", {})),
            disabled_capabilities=frozenset(
                data.get("disabled_capabilities", base.disabled_capabilities)
            ),
            settings=deep_merge(base.settings, data.get("settings", {})),
            init_options=deep_merge(base.init_options, data.get("init_options", {})),
            single_file_support=bool(data.get("single_file_support", base.single_file_support)),
            package=data.get("package", base.package),
        )

    filetypes = data.get("filetypes", DEFAULT_FILETYPES.get(server_id))
    if not filetypes:
        raise ConfigurationError(f"Server '{server_id}' needs at least one filetype")

    return ServerDescriptor(
        id=server_id,
        filetypes=frozenset(filetypes),
        command=tuple(command) if command else None,
        root_rule=_root_rule_from(data.get("root_dir"), server_id),
        capabilities=data.get("capabilities", {}),
        disabled_capabilities=frozenset(data.get("disabled_capabilities", ())),
        settings=data.get("settings", {}),
        init_options=data.get("init_options", {}),
        single_file_support=bool(data.get("single_file_support", False)),
        package=data.get("package"),
    )


def vue_typescript_plugin(packages_dir: Path) -> Dict[str, Any]:
    """Global tsserver plugin that teaches vtsls about ``.vue`` files."""
    location = packages_dir / "vue-language-server" / "node_modules" / "@vue" / "language-server"
    return {
        "name": "@vue/typescript-plugin",
        "location": str(location),
        "languages": ["vue"],
        "configNamespace": "typescript",
    }


def builtin_descriptors(packages_dir: Optional[Path] = None) -> Tuple[ServerDescriptor, ...]:
    """Servers enabled out of the box.

    ``vtsls`` is deliberately limited to ``vue``: a general TypeScript server
    may be attached to the other TypeScript filetypes without both servers
    answering for the same document.
    """
    packages_dir = packages_dir or Path.home() / ".lsp-orchestrator" / "packages"

    return (
        descriptor_from_mapping(
            "rust_analyzer",
            {"settings": {"rust-analyzer": {"check": {"command": "clippy"}}}},
        ),
        descriptor_from_mapping(
            "lua_ls",
            {"settings": {"Lua": {"completion": {"callSnippet": "Replace"}}}},
        ),
        descriptor_from_mapping(
            "vtsls",
            {
                "filetypes": ["vue"],
                "settings": {
                    "typescript": {"tsserver": {"maxTsServerMemory": 8192}},
                    "vtsls": {"tsserver": {"globalPlugins": [vue_typescript_plugin(packages_dir)]}},
                },
            },
        ),
        descriptor_from_mapping(
            "tinymist",
            {
                "single_file_support": True,
                "root_dir": "cwd",
                "settings": {"exportPdf": "never"},
            },
        ),
    )


def merge_descriptors(
    base: Iterable[ServerDescriptor],
    overrides: Mapping[str, Mapping[str, Any]],
) -> Tuple[ServerDescriptor, ...]:
    """Layer configuration tables over ``base``; unknown ids add new servers."""
    merged: Dict[str, ServerDescriptor] = {descriptor.id: descriptor for descriptor in base}
    for server_id, table in overrides.items():
        merged[server_id] = descriptor_from_mapping(server_id, table, merged.get(server_id))
    return tuple(merged.values())


__all__ = [
    "CwdRoot",
    "DEFAULT_COMMANDS",
    "MarkerRoot",
    "RootResolver",
    "ServerDescriptor",
    "builtin_descriptors",
    "deep_merge",
    "descriptor_from_mapping",
    "freeze",
    "merge_descriptors",
    "thaw",
    "vue_typescript_plugin",
]
