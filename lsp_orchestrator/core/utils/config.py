"""Configuration loading utilities for the orchestrator."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .constants import (
    DEFAULT_BIN_DIR,
    DEFAULT_EXTRA_TOOLS,
    DEFAULT_NEGOTIATION_TIMEOUT,
    DEFAULT_SHUTDOWN_TIMEOUT,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for <3.11
    import tomli as tomllib


CONFIG_FILENAMES: tuple[str, ...] = (".lsp-orchestrator.toml", "lsp-orchestrator.toml")
DEFAULT_CONFIG_PATHS = (
    Path.home() / ".config" / "lsp-orchestrator" / "config.toml",
    Path.home() / ".lsp-orchestrator.toml",
)
ENV_PREFIX = "LSP_ORCHESTRATOR_"

_BOOL_FIELDS = frozenset(
    {
        "structured_logging",
        "auto_install",
        "have_nerd_font",
        "enable_document_highlight",
    }
)
_FLOAT_FIELDS = frozenset({"negotiation_timeout", "shutdown_timeout"})
_PATH_FIELDS = frozenset({"workspace_root", "servers_file", "bin_dir"})
_TUPLE_FIELDS = frozenset({"extra_tools", "disabled_servers"})
_MAPPING_FIELDS = frozenset({"servers", "diagnostics"})


def find_config_in_parents(
    start_path: Path, config_name: str | Sequence[str] = ".lsp-orchestrator.toml"
) -> Path | None:
    """Search parent directories starting from ``start_path`` for configuration files."""

    if isinstance(config_name, str):
        candidate_names: tuple[str, ...] = (config_name,)
    else:
        candidate_names = tuple(config_name)

    current = start_path.resolve()
    if current.is_file():
        current = current.parent

    while True:
        for name in candidate_names:
            candidate = current / name
            if candidate.is_file():
                return candidate.resolve()
        if current.parent == current:
            break
        current = current.parent
    return None


@dataclass
class Settings:
    """Runtime configuration for the orchestration layer."""

    workspace_root: Path = Path()
    log_level: str = "INFO"
    structured_logging: bool = False
    negotiation_timeout: float = DEFAULT_NEGOTIATION_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    auto_install: bool = True
    extra_tools: tuple[str, ...] = DEFAULT_EXTRA_TOOLS
    have_nerd_font: bool = False
    # Reference highlighting stays off unless explicitly requested
    enable_document_highlight: bool = False
    disabled_servers: tuple[str, ...] = ()
    servers: dict[str, Any] = field(default_factory=dict)
    servers_file: Path | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)
    bin_dir: Path = DEFAULT_BIN_DIR


def _cast_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"1", "true", "on", "yes", "y"}
    return bool(value)


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(filter(None, (item.strip() for item in value.split(","))))


def _load_from_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    return {k.replace("-", "_"): v for k, v in data.items()}


def _load_from_env(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    env: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        field_name = key[len(prefix) :].lower()
        if field_name in _BOOL_FIELDS:
            env[field_name] = _cast_bool(value)
        elif field_name in _FLOAT_FIELDS:
            env[field_name] = float(value)
        elif field_name in _PATH_FIELDS:
            env[field_name] = Path(value)
        elif field_name in _TUPLE_FIELDS:
            env[field_name] = _split_csv(value)
        elif field_name in _MAPPING_FIELDS:
            try:
                env[field_name] = json.loads(value)
            except json.JSONDecodeError:
                env[field_name] = {}
        else:
            env[field_name] = value
    return env


def _normalise(merged: dict[str, Any]) -> dict[str, Any]:
    for key in _PATH_FIELDS:
        if isinstance(merged.get(key), str):
            merged[key] = Path(merged[key]).expanduser()
    for key in _TUPLE_FIELDS:
        value = merged.get(key)
        if value is None or isinstance(value, tuple):
            continue
        merged[key] = _split_csv(value) if isinstance(value, str) else tuple(value)
    for key in _FLOAT_FIELDS:
        if key in merged:
            merged[key] = float(merged[key])
    for key in _BOOL_FIELDS:
        if key in merged:
            merged[key] = _cast_bool(merged[key])
    for key in _MAPPING_FIELDS:
        value = merged.get(key)
        if value is not None and not isinstance(value, dict):
            merged[key] = dict(value)
    return merged


def load_settings(explicit_path: Path | None = None) -> Settings:
    """Load configuration, merging file and environment sources."""

    file_data: dict[str, Any] = {}
    if explicit_path:
        file_data.update(_load_from_file(explicit_path))
    else:
        search_paths = []
        cwd = Path.cwd()
        project_config = find_config_in_parents(cwd, CONFIG_FILENAMES)
        if project_config:
            search_paths.append(project_config)
        search_paths.extend(DEFAULT_CONFIG_PATHS)
        seen_paths = set()
        for candidate in search_paths:
            if candidate in seen_paths:
                continue
            seen_paths.add(candidate)
            file_data = _load_from_file(candidate)
            if file_data:
                break

    merged = _normalise({**file_data, **_load_from_env()})

    known_fields = set(Settings.__dataclass_fields__)
    settings = Settings(**{key: value for key, value in merged.items() if key in known_fields})
    if not settings.workspace_root.is_absolute():
        settings.workspace_root = (Path.cwd() / settings.workspace_root).resolve()
    if settings.servers_file is not None and not settings.servers_file.is_absolute():
        settings.servers_file = (settings.workspace_root / settings.servers_file).resolve()
    return settings


__all__ = ["CONFIG_FILENAMES", "Settings", "find_config_in_parents", "load_settings"]
