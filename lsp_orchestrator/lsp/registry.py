"""Read-only registry of language server descriptors."""
from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, Iterator, Mapping, Optional, Tuple

import yaml
from jsonschema import Draft7Validator

from lsp_orchestrator.core.utils.logger import get_logger
from lsp_orchestrator.lsp.descriptors import ServerDescriptor, builtin_descriptors, merge_descriptors
from lsp_orchestrator.lsp.errors import ConfigurationError, RegistryError

if TYPE_CHECKING:
    from lsp_orchestrator.core.utils.config import Settings

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for <3.11
    import tomli as tomllib

LOGGER = get_logger(__name__)

# File suffix -> editor filetype
EXTENSION_FILETYPES: Dict[str, str] = {
    ".rs": "rust",
    ".lua": "lua",
    ".vue": "vue",
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "typescriptreact",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascriptreact",
    ".typ": "typst",
    ".py": "python",
    ".pyi": "python",
    ".go": "go",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".cu": "cuda",
    ".m": "objc",
    ".mm": "objcpp",
    ".java": "java",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "cs",
    ".sh": "sh",
    ".bash": "bash",
    ".zsh": "zsh",
    ".json": "json",
    ".jsonc": "jsonc",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".md": "markdown",
    ".html": "html",
    ".css": "css",
    ".scss": "scss",
}

# Exact file names that carry a filetype of their own
FILENAME_FILETYPES: Dict[str, str] = {
    "go.mod": "gomod",
    "go.work": "gowork",
    "Dockerfile": "dockerfile",
    "Makefile": "make",
    "CMakeLists.txt": "cmake",
}

SERVER_TABLE_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "additionalProperties": {
        "type": "object",
        "properties": {
            "cmd": {
                "oneOf": [
                    {"type": "string"},
                    {"type": "array", "items": {"type": "string"}, "minItems": 1},
                ]
            },
            "filetypes": {"type": "array", "items": {"type": "string"}, "minItems": 1},
            "root_dir": {
                "oneOf": [
                    {"type": "string"},
                    {"type": "array", "items": {"type": "string"}},
                ]
            },
            "capabilities": {"type": "object"},
            "disabled_capabilities": {"type": "array", "items": {"type": "string"}},
            "settings": {"type": "object"},
            "init_options": {"type": "object"},
            "single_file_support": {"type": "boolean"},
            "package": {"type": "string"},
        },
        "additionalProperties": False,
    },
}

_SERVER_TABLE_VALIDATOR = Draft7Validator(SERVER_TABLE_SCHEMA)


def filetype_for(path: Path) -> Optional[str]:
    """Detect the editor filetype of ``path`` from its name or suffix."""
    if path.name in FILENAME_FILETYPES:
        return FILENAME_FILETYPES[path.name]
    return EXTENSION_FILETYPES.get(path.suffix.lower())


def validate_server_tables(tables: Mapping[str, Any], source: str = "configuration") -> None:
    """Raise :class:`ConfigurationError` when server tables do not match the schema."""
    normalised = {
        server_id: {key.replace("-", "_"): value for key, value in table.items()}
        if isinstance(table, Mapping)
        else table
        for server_id, table in tables.items()
    }
    errors = sorted(_SERVER_TABLE_VALIDATOR.iter_errors(normalised), key=lambda exc: list(exc.path))
    if errors:
        first = errors[0]
        location = "/".join(str(part) for part in first.path) or "<root>"
        raise ConfigurationError(f"Invalid server table in {source} at {location}: {first.message}")


def load_servers_file(path: Path) -> Dict[str, Any]:
    """Load server tables from a YAML or TOML file.

    Both formats accept either a top-level ``servers`` table or the server
    tables directly at the top level.
    """
    if not path.is_file():
        raise ConfigurationError(f"Servers file not found: {path}")

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        else:
            with path.open("rb") as handle:
                data = tomllib.load(handle)
    except (yaml.YAMLError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"Could not parse servers file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Servers file {path} must contain a table")
    servers = data.get("servers", data)
    validate_server_tables(servers, source=str(path))
    return dict(servers)


class Registry:
    """Immutable table of server descriptors, built once at startup."""

    def __init__(self, descriptors: Iterable[ServerDescriptor]):
        table: Dict[str, ServerDescriptor] = {}
        by_filetype: Dict[str, set] = {}
        for descriptor in descriptors:
            if descriptor.id in table:
                raise RegistryError(f"Duplicate server descriptor: {descriptor.id}")
            table[descriptor.id] = descriptor
            for filetype in descriptor.filetypes:
                by_filetype.setdefault(filetype, set()).add(descriptor)

        self._descriptors: Mapping[str, ServerDescriptor] = MappingProxyType(table)
        self._by_filetype: Mapping[str, FrozenSet[ServerDescriptor]] = MappingProxyType(
            {filetype: frozenset(items) for filetype, items in by_filetype.items()}
        )

    @classmethod
    def from_config(cls, settings: "Settings", packages_dir: Optional[Path] = None) -> "Registry":
        """Built-in servers, overridden by the servers file and then the settings tables.

        Args:
            settings: Loaded settings
            packages_dir: Directory holding installed server packages

        Returns:
            The registry
        """
        overrides: Dict[str, Any] = {}
        if settings.servers_file is not None:
            overrides.update(load_servers_file(settings.servers_file))
        if settings.servers:
            validate_server_tables(settings.servers)
            overrides.update(settings.servers)

        if packages_dir is None:
            packages_dir = settings.bin_dir.parent / "packages"
        descriptors = merge_descriptors(builtin_descriptors(packages_dir), overrides)
        disabled = set(settings.disabled_servers)
        unknown = disabled.difference(descriptor.id for descriptor in descriptors)
        if unknown:
            LOGGER.warning("Ignoring unknown disabled servers: %s", ", ".join(sorted(unknown)))

        registry = cls(descriptor for descriptor in descriptors if descriptor.id not in disabled)
        LOGGER.debug("Registry built with servers: %s", ", ".join(registry.ids()))
        return registry

    def lookup(self, filetype: Optional[str]) -> FrozenSet[ServerDescriptor]:
        """Every descriptor that applies to ``filetype`` (possibly none)."""
        if not filetype:
            return frozenset()
        return self._by_filetype.get(filetype, frozenset())

    def lookup_path(self, path: Path) -> FrozenSet[ServerDescriptor]:
        return self.lookup(filetype_for(path))

    def filetype_for(self, path: Path) -> Optional[str]:
        return filetype_for(path)

    def get(self, server_id: str) -> ServerDescriptor:
        if server_id not in self._descriptors:
            raise RegistryError(f"Server '{server_id}' is not registered")
        return self._descriptors[server_id]

    def ids(self) -> Tuple[str, ...]:
        return tuple(sorted(self._descriptors))

    def filetypes(self) -> Tuple[str, ...]:
        return tuple(sorted(self._by_filetype))

    def __contains__(self, server_id: object) -> bool:
        return server_id in self._descriptors

    def __iter__(self) -> Iterator[ServerDescriptor]:
        return iter(self._descriptors[server_id] for server_id in self.ids())

    def __len__(self) -> int:
        return len(self._descriptors)


__all__ = [
    "EXTENSION_FILETYPES",
    "Registry",
    "SERVER_TABLE_SCHEMA",
    "filetype_for",
    "load_servers_file",
    "validate_server_tables",
]
