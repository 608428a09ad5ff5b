"""Installer bridge: derive the tools to install and delegate to a package manager."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Protocol, Tuple

from lsp_orchestrator.core.utils.constants import DEFAULT_BIN_DIR, DEFAULT_EXTRA_TOOLS
from lsp_orchestrator.core.utils.logger import get_logger
from lsp_orchestrator.lsp.descriptors import ServerDescriptor
from lsp_orchestrator.lsp.errors import InstallFailure
from lsp_orchestrator.lsp.events import Notifier, log_notifier
from lsp_orchestrator.lsp.servers import find_binary

LOGGER = get_logger(__name__)


def ensure_installed(
    descriptors: Iterable[ServerDescriptor],
    extra_tools: Iterable[str] = DEFAULT_EXTRA_TOOLS,
) -> FrozenSet[str]:
    """Tool identifiers that must be present locally.

    Pure derivation: one tool per descriptor plus the auxiliary tools.
    """
    return frozenset(descriptor.tool_id for descriptor in descriptors) | frozenset(extra_tools)


class PackageManager(Protocol):
    """External collaborator that acquires tools."""

    def is_installed(self, tool_id: str) -> bool:
        ...

    def install(self, tool_id: str) -> None:
        """Install ``tool_id``; raises :class:`InstallFailure` on error."""
        ...


@dataclass(frozen=True)
class InstallRecipe:
    binary: str
    command: Tuple[str, ...]
    # Extra environment, ``{bin_dir}`` is substituted
    env: Mapping[str, str] = field(default_factory=dict)


DEFAULT_RECIPES: Dict[str, InstallRecipe] = {
    "rust_analyzer": InstallRecipe("rust-analyzer", ("rustup", "component", "add", "rust-analyzer")),
    "lua_ls": InstallRecipe("lua-language-server", ("brew", "install", "lua-language-server")),
    "vtsls": InstallRecipe("vtsls", ("npm", "install", "-g", "@vtsls/language-server")),
    "vue-language-server": InstallRecipe(
        "vue-language-server", ("npm", "install", "-g", "@vue/language-server")
    ),
    "ts_ls": InstallRecipe(
        "typescript-language-server",
        ("npm", "install", "-g", "typescript-language-server", "typescript"),
    ),
    "tinymist": InstallRecipe("tinymist", ("cargo", "install", "--locked", "tinymist")),
    "pyright": InstallRecipe("pyright-langserver", ("npm", "install", "-g", "pyright")),
    "gopls": InstallRecipe(
        "gopls",
        ("go", "install", "golang.org/x/tools/gopls@latest"),
        env={"GOBIN": "{bin_dir}"},
    ),
    "stylua": InstallRecipe("stylua", ("cargo", "install", "stylua")),
}


class CommandPackageManager:
    """Installs tools by running their package manager commands."""

    def __init__(
        self,
        bin_dir: Path = DEFAULT_BIN_DIR,
        recipes: Optional[Mapping[str, InstallRecipe]] = None,
        timeout: Optional[float] = 600.0,
    ):
        self.bin_dir = Path(bin_dir)
        self.recipes: Dict[str, InstallRecipe] = dict(DEFAULT_RECIPES if recipes is None else recipes)
        self.timeout = timeout

    def _recipe(self, tool_id: str) -> InstallRecipe:
        recipe = self.recipes.get(tool_id)
        if recipe is None:
            raise InstallFailure(tool_id, "no install recipe known")
        return recipe

    def is_installed(self, tool_id: str) -> bool:
        recipe = self.recipes.get(tool_id)
        binary = recipe.binary if recipe else tool_id
        return find_binary(binary, self.bin_dir) is not None

    def install(self, tool_id: str) -> None:
        recipe = self._recipe(tool_id)
        if not shutil.which(recipe.command[0]):
            raise InstallFailure(tool_id, f"{recipe.command[0]} is not available")

        self.bin_dir.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        env.update({key: value.format(bin_dir=self.bin_dir) for key, value in recipe.env.items()})

        LOGGER.info("Installing %s: %s", tool_id, " ".join(recipe.command))
        try:
            result = subprocess.run(
                list(recipe.command),
                capture_output=True,
                text=True,
                env=env,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise InstallFailure(tool_id, str(exc)) from exc

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip().splitlines()
            raise InstallFailure(tool_id, detail[-1] if detail else f"exit code {result.returncode}")


@dataclass
class InstallReport:
    """Outcome of one installation pass, per tool."""

    requested: FrozenSet[str]
    present: Tuple[str, ...] = ()
    installed: Tuple[str, ...] = ()
    failures: Dict[str, InstallFailure] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def missing(self) -> Tuple[str, ...]:
        """Tools that would be installed (dry run) or failed to install."""
        done = set(self.present) | set(self.installed)
        return tuple(sorted(self.requested - done))

    def to_dict(self) -> Dict[str, object]:
        return {
            "requested": sorted(self.requested),
            "present": list(self.present),
            "installed": list(self.installed),
            "failed": {tool: failure.reason for tool, failure in sorted(self.failures.items())},
            "dry_run": self.dry_run,
        }


class InstallerBridge:
    """Ensures the registry's tools are present, one tool at a time.

    Failures are recorded and reported, never raised: the affected server
    stays registered but unusable until the tool is installed.
    """

    def __init__(self, package_manager: PackageManager, notify: Optional[Notifier] = None):
        self.package_manager = package_manager
        self.notify = notify or log_notifier
        self._failed: Dict[str, InstallFailure] = {}

    @property
    def failed_tools(self) -> FrozenSet[str]:
        return frozenset(self._failed)

    def is_usable(self, descriptor: ServerDescriptor) -> bool:
        return descriptor.tool_id not in self._failed

    def install(
        self,
        descriptors: Iterable[ServerDescriptor],
        extra_tools: Iterable[str] = DEFAULT_EXTRA_TOOLS,
        dry_run: bool = False,
    ) -> InstallReport:
        """Install every missing tool derived from ``descriptors``.

        Args:
            descriptors: Registry contents
            extra_tools: Auxiliary tools installed alongside the servers
            dry_run: Only check what is present

        Returns:
            Per-tool report
        """
        requested = ensure_installed(descriptors, extra_tools)
        present = []
        installed = []
        failures: Dict[str, InstallFailure] = {}

        for tool_id in sorted(requested):
            try:
                if self.package_manager.is_installed(tool_id):
                    present.append(tool_id)
                    self._failed.pop(tool_id, None)
                    continue
                if dry_run:
                    continue
                self.package_manager.install(tool_id)
            except InstallFailure as failure:
                failures[tool_id] = failure
                self._failed[tool_id] = failure
                self.notify(str(failure), logging.WARNING)
                continue

            installed.append(tool_id)
            self._failed.pop(tool_id, None)
            LOGGER.info("Installed %s", tool_id)

        return InstallReport(
            requested=requested,
            present=tuple(present),
            installed=tuple(installed),
            failures=failures,
            dry_run=dry_run,
        )


__all__ = [
    "CommandPackageManager",
    "DEFAULT_RECIPES",
    "InstallRecipe",
    "InstallReport",
    "InstallerBridge",
    "PackageManager",
    "ensure_installed",
]
