"""Constants used throughout the orchestrator."""

from pathlib import Path

# Timeouts (seconds)
DEFAULT_NEGOTIATION_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0

# Auxiliary tools installed alongside the language servers
DEFAULT_EXTRA_TOOLS = ("stylua",)

# Private directory for binaries the installer places itself
DEFAULT_BIN_DIR = Path.home() / ".lsp-orchestrator" / "bin"

# Description prefix for bound user actions
KEYMAP_DESC_PREFIX = "LSP: "

# Root markers shared by descriptors without a dedicated list
GENERIC_ROOT_MARKERS = (".git",)
