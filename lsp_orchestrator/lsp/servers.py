"""Process launching for language servers."""
from __future__ import annotations

import asyncio
import os
import shutil
import sys
from pathlib import Path
from typing import Dict, Optional, Protocol

from lsp_orchestrator.core.utils.constants import DEFAULT_BIN_DIR
from lsp_orchestrator.core.utils.logger import get_logger
from lsp_orchestrator.lsp.client import ExitCallback, LSPClient
from lsp_orchestrator.lsp.descriptors import ServerDescriptor
from lsp_orchestrator.lsp.errors import ConfigurationError, SpawnFailure

LOGGER = get_logger(__name__)


class Launcher(Protocol):
    """Starts a server process for ``descriptor`` scoped to ``root``."""

    client_type: type

    async def __call__(
        self,
        descriptor: ServerDescriptor,
        root: Path,
        on_exit: Optional[ExitCallback] = None,
    ) -> LSPClient:
        ...


def find_binary(name: str, bin_dir: Optional[Path] = None) -> Optional[Path]:
    """Locate an executable on PATH or in the private bin directory.

    Args:
        name: Binary name or path
        bin_dir: Directory the installer places binaries in

    Returns:
        Path to binary or None if not found
    """
    binary = shutil.which(name)
    if binary:
        return Path(binary)

    if bin_dir is not None:
        local_binary = bin_dir / name
        if local_binary.exists() and os.access(local_binary, os.X_OK):
            return local_binary

    if sys.platform == "win32" and bin_dir is not None:
        exe = bin_dir / f"{name}.exe"
        if exe.exists():
            return exe

    return None


def find_python_venv(root: Path) -> Optional[Path]:
    """Find the Python virtual environment serving ``root``."""
    venv = os.environ.get("VIRTUAL_ENV")
    if venv:
        return Path(venv)

    for venv_name in [".venv", "venv", "env", ".env"]:
        venv_path = root / venv_name
        if venv_path.exists() and (venv_path / "bin" / "python").exists():
            return venv_path

    return None


class ServerLauncher:
    """Spawns language servers as stdio subprocesses."""

    client_type = LSPClient

    def __init__(self, bin_dir: Path = DEFAULT_BIN_DIR):
        self.bin_dir = Path(bin_dir)

    def _environment(self, descriptor: ServerDescriptor, root: Path) -> Dict[str, str]:
        env = os.environ.copy()
        env["PATH"] = f"{self.bin_dir}{os.pathsep}{env.get('PATH', '')}"

        if descriptor.id == "pyright":
            venv_path = find_python_venv(root)
            if venv_path:
                python_path = venv_path / ("Scripts" if sys.platform == "win32" else "bin") / "python"
                if python_path.exists():
                    env["PYRIGHT_PYTHON_PATH"] = str(python_path)

        return env

    async def __call__(
        self,
        descriptor: ServerDescriptor,
        root: Path,
        on_exit: Optional[ExitCallback] = None,
    ) -> LSPClient:
        """Start the server process and wrap it in a client.

        Raises:
            SpawnFailure: The command is unknown, missing or fails to start
        """
        try:
            command = descriptor.start_command()
        except ConfigurationError as exc:
            raise SpawnFailure(descriptor.id, root, str(exc)) from exc

        binary = find_binary(command[0], self.bin_dir)
        if binary is None:
            raise SpawnFailure(descriptor.id, root, f"{command[0]} not found")

        LOGGER.info("Starting LSP server %s: %s", descriptor.id, " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                str(binary),
                *command[1:],
                cwd=root,
                env=self._environment(descriptor, root),
                stdout=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise SpawnFailure(descriptor.id, root, str(exc)) from exc

        return LSPClient(process, root, descriptor, on_exit=on_exit)


__all__ = ["Launcher", "ServerLauncher", "find_binary", "find_python_venv"]
