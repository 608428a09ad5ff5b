"""Events driving the activation dispatcher, and user notifications."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from lsp_orchestrator.core.utils.logger import get_logger

LOGGER = get_logger(__name__)

# (message, logging level) -> None
Notifier = Callable[[str, int], None]


def log_notifier(message: str, level: int = logging.WARNING) -> None:
    """Default notifier: surface the message through the log."""
    LOGGER.log(level, "%s", message)


@dataclass(frozen=True)
class DocumentOpened:
    path: Path
    filetype: Optional[str] = None
    text: Optional[str] = None


@dataclass(frozen=True)
class DocumentClosed:
    path: Path


@dataclass(frozen=True)
class ServerExited:
    descriptor_id: str
    root: Path


Event = Union[DocumentOpened, DocumentClosed, ServerExited]

__all__ = [
    "DocumentClosed",
    "DocumentOpened",
    "Event",
    "Notifier",
    "ServerExited",
    "log_notifier",
]
