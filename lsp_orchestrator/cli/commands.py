"""CLI command implementations."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from lsp_orchestrator.core.utils.logger import get_logger
from lsp_orchestrator.lsp.diagnostics import DiagnosticsConfig
from lsp_orchestrator.lsp.dispatcher import ActivationDispatcher
from lsp_orchestrator.lsp.errors import OrchestrationError
from lsp_orchestrator.lsp.features import FEATURES, FeatureBinder
from lsp_orchestrator.lsp.installer import CommandPackageManager, InstallerBridge
from lsp_orchestrator.lsp.servers import ServerLauncher

from .main import CLIState, get_cli_state

LOGGER = get_logger(__name__)


def _echo_notifier(message: str, level: int = logging.WARNING) -> None:
    LOGGER.log(level, "%s", message)
    if level >= logging.WARNING:
        click.echo(message, err=True)


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


def _dispatcher(state: CLIState) -> ActivationDispatcher:
    settings = state.settings
    installer = None
    if settings.auto_install:
        installer = InstallerBridge(CommandPackageManager(settings.bin_dir), notify=_echo_notifier)
    return ActivationDispatcher.from_settings(
        settings,
        state.registry,
        launcher=ServerLauncher(bin_dir=settings.bin_dir),
        installer=installer,
        notify=_echo_notifier,
    )


def _install_for(dispatcher: ActivationDispatcher, path: Path) -> None:
    """Install the tools of the servers matching ``path`` before attaching."""
    if dispatcher.installer is None:
        return
    descriptors = dispatcher.registry.lookup_path(path)
    if descriptors:
        dispatcher.installer.install(descriptors, extra_tools=())


@click.command(name="servers")
@click.pass_context
def servers_command(ctx: click.Context) -> None:
    """List registered language servers and whether their tool is installed."""
    state = get_cli_state(ctx)
    package_manager = CommandPackageManager(state.settings.bin_dir)

    rows: List[Dict[str, Any]] = []
    for descriptor in state.registry:
        rows.append(
            {
                "id": descriptor.id,
                "filetypes": list(descriptor.filetypes),
                "tool": descriptor.tool_id,
                "installed": package_manager.is_installed(descriptor.tool_id),
            }
        )

    if state.json_output:
        _emit(rows)
        return

    if not rows:
        click.echo("No language servers registered.")
        return
    for row in rows:
        status = "installed" if row["installed"] else "missing"
        click.echo(f"{row['id']:<16} {', '.join(row['filetypes']):<32} {row['tool']} ({status})")


@click.command(name="ensure-installed")
@click.option("--dry-run", is_flag=True, help="Only report which tools are missing")
@click.pass_context
def ensure_installed_command(ctx: click.Context, dry_run: bool) -> None:
    """Install every tool the registered servers need."""
    state = get_cli_state(ctx)
    bridge = InstallerBridge(CommandPackageManager(state.settings.bin_dir), notify=_echo_notifier)
    report = bridge.install(state.registry, extra_tools=state.settings.extra_tools, dry_run=dry_run)

    if state.json_output:
        _emit(report.to_dict())
    else:
        click.echo(f"Requested: {', '.join(sorted(report.requested)) or '-'}")
        click.echo(f"Present: {', '.join(report.present) or '-'}")
        if dry_run:
            click.echo(f"Missing: {', '.join(report.missing) or '-'}")
        else:
            click.echo(f"Installed: {', '.join(report.installed) or '-'}")
        for tool_id, failure in sorted(report.failures.items()):
            click.echo(f"Failed: {tool_id}: {failure.reason}")

    if not report.ok:
        ctx.exit(1)


async def _attach(dispatcher: ActivationDispatcher, path: Path, filetype: Optional[str]) -> List[Dict[str, Any]]:
    try:
        _install_for(dispatcher, path)
        sessions = await dispatcher.open_document(path, filetype)
        result = []
        for session in sessions:
            entry = session.to_dict()
            entry["keymap"] = FeatureBinder.keymap(session)
            result.append(entry)
        return result
    finally:
        await dispatcher.shutdown()


@click.command(name="attach")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--filetype", help="Override the filetype detected from the file name")
@click.pass_context
def attach_command(ctx: click.Context, file: Path, filetype: Optional[str]) -> None:
    """Open FILE, attach matching servers and report bound features."""
    state = get_cli_state(ctx)
    try:
        sessions = asyncio.run(_attach(_dispatcher(state), file, filetype))
    except OrchestrationError as exc:
        raise click.ClickException(str(exc)) from exc

    if state.json_output:
        _emit(sessions)
        return

    if not sessions:
        click.echo(f"No language server handles {file}.")
        return
    for session in sessions:
        line = f"{session['server']} [{session['state']}] root={session['root']}"
        if session["error"]:
            line += f" ({session['error']})"
        click.echo(line)
        for keys, description in sorted(session["keymap"].items()):
            click.echo(f"  {keys:<12} {description}")


@click.command(name="keymaps")
@click.pass_context
def keymaps_command(ctx: click.Context) -> None:
    """Show the feature catalog and its default keybindings."""
    state = get_cli_state(ctx)
    enabled = {
        feature.name
        for feature in FeatureBinder(
            enable=("document_highlight",) if state.settings.enable_document_highlight else ()
        ).catalog
    }
    rows = [
        {
            "name": feature.name,
            "keys": feature.keys,
            "method": feature.method,
            "modes": list(feature.modes),
            "description": feature.description,
            "enabled": feature.name in enabled,
        }
        for feature in FEATURES
    ]

    if state.json_output:
        _emit(rows)
        return

    for row in rows:
        marker = "" if row["enabled"] else " (disabled)"
        keys = row["keys"] or "-"
        click.echo(f"{keys:<12} {row['description']:<32} {row['method']}{marker}")


async def _collect_diagnostics(
    dispatcher: ActivationDispatcher,
    path: Path,
    wait: float,
) -> List[Any]:
    try:
        _install_for(dispatcher, path)
        sessions = await dispatcher.open_document(path)
        if wait > 0 and any(session.is_active for session in sessions):
            await asyncio.sleep(wait)
        return dispatcher.diagnostics_for(path)
    finally:
        await dispatcher.shutdown()


@click.command(name="diagnostics")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--wait", type=float, default=2.0, show_default=True, help="Seconds to wait for diagnostics")
@click.pass_context
def diagnostics_command(ctx: click.Context, file: Path, wait: float) -> None:
    """Attach servers to FILE and print the diagnostics they publish."""
    state = get_cli_state(ctx)
    try:
        config = DiagnosticsConfig.from_settings(state.settings.have_nerd_font, state.settings.diagnostics)
        diagnostics = asyncio.run(_collect_diagnostics(_dispatcher(state), file, wait))
    except OrchestrationError as exc:
        raise click.ClickException(str(exc)) from exc

    ordered = config.sort(diagnostics)
    if state.json_output:
        _emit([diagnostic.to_dict() for diagnostic in ordered])
        return

    if not ordered:
        click.echo(f"No diagnostics for {file}.")
        return
    for line, text in sorted(config.render(ordered).items()):
        click.echo(f"{file}:{line + 1}:{text}")


__all__ = [
    "attach_command",
    "diagnostics_command",
    "ensure_installed_command",
    "keymaps_command",
    "servers_command",
]
