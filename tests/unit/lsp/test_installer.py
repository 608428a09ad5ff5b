"""Tests for the installer bridge."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from lsp_orchestrator.lsp.descriptors import ServerDescriptor, builtin_descriptors
from lsp_orchestrator.lsp.errors import InstallFailure
from lsp_orchestrator.lsp.installer import (
    CommandPackageManager,
    InstallerBridge,
    InstallRecipe,
    ensure_installed,
)


def test_ensure_installed_from_builtins(tmp_path: Path) -> None:
    tools = ensure_installed(builtin_descriptors(tmp_path))

    assert tools == frozenset({"rust_analyzer", "lua_ls", "vtsls", "tinymist", "stylua"})


def test_ensure_installed_is_deterministic(tmp_path: Path) -> None:
    descriptors = builtin_descriptors(tmp_path)

    assert ensure_installed(descriptors) == ensure_installed(reversed(descriptors))


def test_ensure_installed_uses_package_names() -> None:
    descriptors = [ServerDescriptor(id="vtsls", filetypes=frozenset({"vue"}), package="vtsls-pkg")]

    assert ensure_installed(descriptors, extra_tools=()) == frozenset({"vtsls-pkg"})


def test_bridge_installs_missing_tools_in_order(registry, notify) -> None:
    package_manager = MagicMock()
    package_manager.is_installed.side_effect = lambda tool: tool == "alpha"

    report = InstallerBridge(package_manager, notify=notify).install(registry, extra_tools=("stylua",))

    assert report.present == ("alpha",)
    assert report.installed == ("beta", "stylua")
    assert report.ok
    assert [c.args[0] for c in package_manager.install.call_args_list] == ["beta", "stylua"]


def test_bridge_records_failures_without_raising(registry, notify, notifications) -> None:
    package_manager = MagicMock()
    package_manager.is_installed.return_value = False

    def install(tool: str) -> None:
        if tool == "beta":
            raise InstallFailure(tool, "registry unreachable")

    package_manager.install.side_effect = install
    bridge = InstallerBridge(package_manager, notify=notify)

    report = bridge.install(registry, extra_tools=())

    assert report.installed == ("alpha",)
    assert set(report.failures) == {"beta"}
    assert not report.ok
    assert report.missing == ("beta",)
    assert bridge.failed_tools == frozenset({"beta"})
    assert bridge.is_usable(registry.get("alpha"))
    assert not bridge.is_usable(registry.get("beta"))
    assert notifications == [("Failed to install beta: registry unreachable", logging.WARNING)]


def test_bridge_dry_run_installs_nothing(registry, notify) -> None:
    package_manager = MagicMock()
    package_manager.is_installed.return_value = False

    report = InstallerBridge(package_manager, notify=notify).install(registry, extra_tools=(), dry_run=True)

    package_manager.install.assert_not_called()
    assert report.missing == ("alpha", "beta")
    assert report.to_dict()["dry_run"] is True


def test_later_success_clears_failure(registry, notify) -> None:
    package_manager = MagicMock()
    package_manager.is_installed.return_value = False
    package_manager.install.side_effect = InstallFailure("alpha", "offline")
    bridge = InstallerBridge(package_manager, notify=notify)
    bridge.install([registry.get("alpha")], extra_tools=())

    package_manager.install.side_effect = None
    bridge.install([registry.get("alpha")], extra_tools=())

    assert bridge.failed_tools == frozenset()


def test_command_package_manager_unknown_tool(tmp_path: Path) -> None:
    manager = CommandPackageManager(tmp_path, recipes={})

    with pytest.raises(InstallFailure, match="no install recipe"):
        manager.install("mystery")


def test_command_package_manager_missing_installer(tmp_path: Path) -> None:
    manager = CommandPackageManager(tmp_path, recipes={"tool": InstallRecipe("tool", ("nope-pm", "install"))})

    with patch("lsp_orchestrator.lsp.installer.shutil.which", return_value=None):
        with pytest.raises(InstallFailure, match="nope-pm is not available"):
            manager.install("tool")


def test_command_package_manager_runs_recipe(tmp_path: Path) -> None:
    recipe = InstallRecipe("gopls", ("go", "install", "gopls"), env={"GOBIN": "{bin_dir}"})
    manager = CommandPackageManager(tmp_path / "bin", recipes={"gopls": recipe})

    with patch("lsp_orchestrator.lsp.installer.shutil.which", return_value="/usr/bin/go"), patch(
        "lsp_orchestrator.lsp.installer.subprocess.run",
        return_value=subprocess.CompletedProcess(["go"], 0, "", ""),
    ) as run:
        manager.install("gopls")

    args, kwargs = run.call_args
    assert args[0] == ["go", "install", "gopls"]
    assert kwargs["env"]["GOBIN"] == str(tmp_path / "bin")
    assert (tmp_path / "bin").is_dir()


def test_command_package_manager_nonzero_exit(tmp_path: Path) -> None:
    manager = CommandPackageManager(tmp_path, recipes={"tool": InstallRecipe("tool", ("pm", "add", "tool"))})

    with patch("lsp_orchestrator.lsp.installer.shutil.which", return_value="/usr/bin/pm"), patch(
        "lsp_orchestrator.lsp.installer.subprocess.run",
        return_value=subprocess.CompletedProcess(["pm"], 2, "", "resolving...\nerror: package not found\n"),
    ):
        with pytest.raises(InstallFailure, match="error: package not found"):
            manager.install("tool")


def test_command_package_manager_is_installed(tmp_path: Path) -> None:
    binary = tmp_path / "stylua"
    binary.write_text("#!/bin/sh\n", encoding="utf-8")
    binary.chmod(0o755)
    manager = CommandPackageManager(tmp_path)

    with patch("lsp_orchestrator.lsp.servers.shutil.which", return_value=None):
        assert manager.is_installed("stylua")
        assert not manager.is_installed("rust_analyzer")
