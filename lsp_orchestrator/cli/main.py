"""CLI entrypoint preparing shared state and delegating to commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click

from lsp_orchestrator.core.utils.config import Settings, load_settings
from lsp_orchestrator.core.utils.logger import configure_logging, get_logger
from lsp_orchestrator.lsp.errors import OrchestrationError
from lsp_orchestrator.lsp.registry import Registry

LOGGER = get_logger(__name__)


@dataclass
class CLIState:
    """Holds shared objects for CLI commands."""

    settings: Settings
    registry: Registry
    json_output: bool = False


def _resolve_log_level(verbose: int, quiet: bool, default: str) -> str:
    """Resolve log level based on verbosity flags."""
    if quiet:
        return "ERROR"
    if verbose >= 2:
        return "DEBUG"
    if verbose == 1:
        return "INFO"
    return default


def get_cli_state(ctx: click.Context) -> CLIState:
    """Retrieve CLIState from context, ensuring it exists."""
    state = ctx.obj.get("cli_state") if ctx.obj else None
    if state is None:
        raise click.ClickException("CLI state missing; CLI not initialised correctly.")
    return state


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="Path to configuration file.",
)
@click.option("-v", "--verbose", count=True, help="Verbosity: -v (info), -vv (debug)")
@click.option("-q", "--quiet", is_flag=True, help="Only report errors")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[Path],
    verbose: int,
    quiet: bool,
    json_output: bool,
) -> None:
    """Language server orchestration: install, attach and inspect servers."""
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config_path)
    except (OSError, ValueError, OrchestrationError) as exc:
        raise click.ClickException(f"Failed to load configuration: {exc}") from exc

    settings.log_level = _resolve_log_level(verbose, quiet, settings.log_level)
    configure_logging(settings.log_level, structured=settings.structured_logging)

    try:
        registry = Registry.from_config(settings)
    except OrchestrationError as exc:
        raise click.ClickException(str(exc)) from exc

    LOGGER.debug("Registry loaded with %d server(s) from %s", len(registry), settings.workspace_root)
    ctx.obj["cli_state"] = CLIState(settings=settings, registry=registry, json_output=json_output)


def _register_commands() -> None:
    """Register CLI commands (lazy import to avoid cycles)."""
    from .commands import (
        attach_command,
        diagnostics_command,
        ensure_installed_command,
        keymaps_command,
        servers_command,
    )

    for command in (
        servers_command,
        ensure_installed_command,
        attach_command,
        keymaps_command,
        diagnostics_command,
    ):
        if command.name not in cli.commands:
            cli.add_command(command)


_register_commands()


__all__ = ["CLIState", "cli", "get_cli_state"]
