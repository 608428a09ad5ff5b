"""CLI package exposing the orchestrator command entry points."""

from __future__ import annotations

from lsp_orchestrator.core.utils.config import Settings, load_settings

# main registers the commands on import
from .main import CLIState, cli, get_cli_state
from .commands import (
    attach_command,
    diagnostics_command,
    ensure_installed_command,
    keymaps_command,
    servers_command,
)

__all__ = [
    "CLIState",
    "Settings",
    "attach_command",
    "cli",
    "diagnostics_command",
    "ensure_installed_command",
    "get_cli_state",
    "keymaps_command",
    "load_settings",
    "servers_command",
]
