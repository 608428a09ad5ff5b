"""Activation dispatcher: document events -> server processes -> sessions."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from lsp_orchestrator.core.utils.constants import DEFAULT_NEGOTIATION_TIMEOUT, DEFAULT_SHUTDOWN_TIMEOUT
from lsp_orchestrator.core.utils.logger import get_logger, set_correlation_id
from lsp_orchestrator.lsp.capabilities import CapabilitySet, client_capabilities
from lsp_orchestrator.lsp.client import LSPClient
from lsp_orchestrator.lsp.descriptors import ServerDescriptor
from lsp_orchestrator.lsp.diagnostics import Diagnostic
from lsp_orchestrator.lsp.errors import (
    NegotiationTimeout,
    OrchestrationError,
    SpawnFailure,
    StaleResponse,
)
from lsp_orchestrator.lsp.events import (
    DocumentClosed,
    DocumentOpened,
    Event,
    Notifier,
    ServerExited,
    log_notifier,
)
from lsp_orchestrator.lsp.features import FeatureBinder
from lsp_orchestrator.lsp.installer import InstallerBridge
from lsp_orchestrator.lsp.registry import Registry
from lsp_orchestrator.lsp.servers import Launcher, ServerLauncher
from lsp_orchestrator.lsp.sessions import DetachReason, DocumentSession, SessionState

if TYPE_CHECKING:
    from lsp_orchestrator.core.utils.config import Settings

LOGGER = get_logger(__name__)

ServerKey = Tuple[str, Path]


@dataclass(eq=False)
class ServerProcess:
    """A running server shared by every session with the same key."""

    descriptor: ServerDescriptor
    root: Path
    client: Any
    # Resolves to the negotiated CapabilitySet, shared by all sessions
    ready: asyncio.Future
    negotiation: Optional[asyncio.Task] = None
    sessions: Set[DocumentSession] = field(default_factory=set)

    @property
    def key(self) -> ServerKey:
        return (self.descriptor.id, self.root)


def _retrieve(future: asyncio.Future) -> None:
    if not future.cancelled() and future.exception() is not None:
        LOGGER.debug("Negotiation failed: %s", future.exception())


class ActivationDispatcher:
    """Drives one session per (document, matching server).

    Processes are keyed by (descriptor id, resolved root) and started at most
    once per key, including when several documents open concurrently.
    """

    def __init__(
        self,
        registry: Registry,
        launcher: Optional[Launcher] = None,
        binder: Optional[FeatureBinder] = None,
        installer: Optional[InstallerBridge] = None,
        workspace_root: Optional[Path] = None,
        negotiation_timeout: float = DEFAULT_NEGOTIATION_TIMEOUT,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        notify: Optional[Notifier] = None,
    ):
        self.registry = registry
        self.launcher = launcher or ServerLauncher()
        self.binder = binder or FeatureBinder(client_type=getattr(self.launcher, "client_type", LSPClient))
        self.installer = installer
        self.workspace_root = Path(workspace_root or Path.cwd()).resolve()
        self.negotiation_timeout = negotiation_timeout
        self.shutdown_timeout = shutdown_timeout
        self.notify = notify or log_notifier

        self._processes: Dict[ServerKey, ServerProcess] = {}
        self._spawning: Dict[ServerKey, asyncio.Task] = {}
        self._sessions: Dict[Path, List[DocumentSession]] = {}
        self._activations: Dict[DocumentSession, asyncio.Task] = {}
        self._stopping: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        registry: Registry,
        launcher: Optional[Launcher] = None,
        installer: Optional[InstallerBridge] = None,
        notify: Optional[Notifier] = None,
    ) -> "ActivationDispatcher":
        launcher = launcher or ServerLauncher(bin_dir=settings.bin_dir)
        binder = FeatureBinder(
            client_type=getattr(launcher, "client_type", LSPClient),
            enable=("document_highlight",) if settings.enable_document_highlight else (),
        )
        return cls(
            registry,
            launcher=launcher,
            binder=binder,
            installer=installer,
            workspace_root=settings.workspace_root,
            negotiation_timeout=settings.negotiation_timeout,
            shutdown_timeout=settings.shutdown_timeout,
            notify=notify,
        )

    # Queries

    @staticmethod
    def _normalise(path: Path) -> Path:
        return Path(path).expanduser().resolve()

    def sessions_for(self, path: Path) -> List[DocumentSession]:
        return list(self._sessions.get(self._normalise(path), []))

    def sessions(self) -> List[DocumentSession]:
        return [session for sessions in self._sessions.values() for session in sessions]

    def active_servers(self) -> List[ServerKey]:
        return sorted(self._processes, key=lambda key: (key[0], str(key[1])))

    def client_for(self, session: DocumentSession) -> Any:
        process = self._processes.get(session.server_key)
        if process is None or session not in process.sessions:
            return None
        return process.client

    def diagnostics_for(self, path: Path) -> List[Diagnostic]:
        """Diagnostics published for ``path`` by every attached server."""
        path = self._normalise(path)
        diagnostics: List[Diagnostic] = []
        for session in self._sessions.get(path, []):
            client = self.client_for(session)
            if session.is_active and client is not None:
                diagnostics.extend(client.get_diagnostics(path))
        return diagnostics

    # Events

    async def dispatch(self, event: Event) -> None:
        try:
            if isinstance(event, DocumentOpened):
                await self.open_document(event.path, event.filetype, event.text)
            elif isinstance(event, DocumentClosed):
                await self.close_document(event.path)
            elif isinstance(event, ServerExited):
                self.handle_server_exit(event.descriptor_id, event.root)
            else:
                LOGGER.warning("Ignoring unknown event %r", event)
        except OrchestrationError as exc:
            LOGGER.error("Failed to handle %s: %s", type(event).__name__, exc)
            self.notify(str(exc), logging.ERROR)

    async def run(self, queue: "asyncio.Queue[Optional[Event]]") -> None:
        """Consume events until a ``None`` sentinel is received."""
        while True:
            event = await queue.get()
            try:
                if event is None:
                    return
                await self.dispatch(event)
            finally:
                queue.task_done()

    async def open_document(
        self,
        path: Path,
        filetype: Optional[str] = None,
        text: Optional[str] = None,
    ) -> List[DocumentSession]:
        """Attach every matching server to ``path``.

        Args:
            path: Document being opened
            filetype: Editor filetype; derived from the path when omitted
            text: Document contents sent with ``didOpen``

        Returns:
            The document's sessions, each ACTIVE or DETACHED
        """
        path = self._normalise(path)
        filetype = filetype or self.registry.filetype_for(path)
        descriptors = sorted(self.registry.lookup(filetype), key=lambda descriptor: descriptor.id)
        if not descriptors:
            LOGGER.debug("No language server handles %s (filetype %s)", path, filetype)
            return []

        live = [session for session in self._sessions.get(path, []) if session.is_live]
        attached = {session.descriptor.id for session in live}
        created = [
            DocumentSession(
                document=path,
                filetype=filetype,
                descriptor=descriptor,
                root=descriptor.resolve_root(path, self.workspace_root),
            )
            for descriptor in descriptors
            if descriptor.id not in attached
        ]
        self._sessions[path] = live + created

        # Sessions still activating from an earlier open are awaited, not restarted
        in_flight = [
            asyncio.shield(self._activations[session]) for session in live if session in self._activations
        ]
        started = [self._start_activation(session, text) for session in created]
        await asyncio.gather(*in_flight, *started)
        return live + created

    def _start_activation(self, session: DocumentSession, text: Optional[str]) -> asyncio.Task:
        task = asyncio.ensure_future(self._activate(session, text))
        self._activations[session] = task
        task.add_done_callback(lambda _: self._activations.pop(session, None))
        return task

    async def close_document(self, path: Path) -> List[DocumentSession]:
        """Detach every session of ``path``."""
        path = self._normalise(path)
        sessions = self._sessions.pop(path, [])
        for session in sessions:
            was_active = session.is_active
            if not session.detach(DetachReason.CLOSED):
                continue
            self.binder.unbind(session)

            process = self._processes.get(session.server_key)
            if process is None or session not in process.sessions:
                continue
            process.sessions.discard(session)
            if was_active:
                try:
                    await process.client.did_close(session.document)
                except (ConnectionError, OSError) as exc:
                    LOGGER.debug("didClose for %s failed: %s", session.document, exc)

        LOGGER.debug("Closed %s (%d session(s))", path, len(sessions))
        return sessions

    def handle_server_exit(self, descriptor_id: str, root: Path) -> List[DocumentSession]:
        """Forget the process and detach every session that used it."""
        key = (descriptor_id, self._normalise(root))
        process = self._processes.pop(key, None)
        if process is None:
            LOGGER.debug("No process for %s at %s", descriptor_id, root)
            return []
        return self._drop_process(process, DetachReason.SERVER_EXITED)

    def _on_client_exit(self, client: Any) -> None:
        for key, process in list(self._processes.items()):
            if process.client is client:
                del self._processes[key]
                detached = self._drop_process(process, DetachReason.SERVER_EXITED)
                self.notify(
                    f"{process.descriptor.id} for {process.root} exited; "
                    f"{len(detached)} session(s) detached",
                    logging.WARNING,
                )
                return

    def _drop_process(self, process: ServerProcess, reason: DetachReason) -> List[DocumentSession]:
        if not process.ready.done():
            process.ready.set_exception(ConnectionError(f"{process.descriptor.id} exited"))
        if process.negotiation is not None and not process.negotiation.done():
            process.negotiation.cancel()

        detached = []
        for session in list(process.sessions):
            if session.detach(reason):
                self.binder.unbind(session)
                detached.append(session)
        process.sessions.clear()
        LOGGER.info("Dropped %s for %s, detached %d session(s)", process.descriptor.id, process.root, len(detached))
        return detached

    async def invoke(self, session: DocumentSession, feature_name: str, **params: Any) -> Any:
        """Run a bound feature of ``session``; unbound features are a no-op."""
        return await self.binder.invoke(session, self.client_for(session), feature_name, **params)

    async def shutdown(self) -> None:
        """Detach every session and stop every server process."""
        for session in self.sessions():
            if session.detach(DetachReason.SHUTDOWN):
                self.binder.unbind(session)
        self._sessions.clear()

        # Spawns in flight complete first; their clients are stopped below
        spawning = list(self._spawning.values())
        if spawning:
            await asyncio.gather(*spawning, return_exceptions=True)
        self._spawning.clear()

        processes = list(self._processes.values())
        self._processes.clear()
        for process in processes:
            if not process.ready.done():
                process.ready.set_exception(ConnectionError(f"{process.descriptor.id} is shutting down"))
            if process.negotiation is not None and not process.negotiation.done():
                process.negotiation.cancel()
            process.sessions.clear()
            await self._stop(process)

        if self._stopping:
            await asyncio.gather(*list(self._stopping), return_exceptions=True)

    async def _stop(self, process: ServerProcess) -> None:
        try:
            await process.client.shutdown(self.shutdown_timeout)
        except (OSError, ConnectionError, asyncio.TimeoutError) as exc:
            LOGGER.debug("Error stopping %s: %s", process.descriptor.id, exc)

    def _discard_process(self, process: ServerProcess) -> None:
        """Forget a process whose initialization failed and stop it in the background."""
        if self._processes.get(process.key) is process:
            del self._processes[process.key]
        LOGGER.info("Stopping %s for %s after failed initialization", process.descriptor.id, process.root)
        task = asyncio.ensure_future(self._stop(process))
        self._stopping.add(task)
        task.add_done_callback(self._stopping.discard)

    # Activation

    async def _activate(self, session: DocumentSession, text: Optional[str]) -> None:
        set_correlation_id(session.id)
        descriptor = session.descriptor
        if not session.is_live:
            LOGGER.debug("%s", StaleResponse(session.id))
            return

        if self.installer is not None and not self.installer.is_usable(descriptor):
            session.detach(DetachReason.NOT_INSTALLED, f"{descriptor.tool_id} is not installed")
            self.notify(f"{descriptor.id} is unavailable: {descriptor.tool_id} failed to install", logging.WARNING)
            return

        session.transition(SessionState.STARTING)
        try:
            process = await self._acquire(descriptor, session.root)
        except SpawnFailure as failure:
            if session.detach(DetachReason.SPAWN_FAILED, str(failure)):
                self.notify(str(failure), logging.WARNING)
            return
        except asyncio.CancelledError:
            if session.is_live:
                raise
            LOGGER.debug("Spawn for detached session %s was cancelled", session.id)
            return

        if not session.is_live:
            LOGGER.debug("%s", StaleResponse(session.id))
            return

        session.transition(SessionState.NEGOTIATING)
        process.sessions.add(session)
        try:
            capabilities: CapabilitySet = await asyncio.wait_for(
                asyncio.shield(process.ready), timeout=self.negotiation_timeout
            )
        except (asyncio.TimeoutError, NegotiationTimeout):
            failure = NegotiationTimeout(descriptor.id, self.negotiation_timeout)
            process.sessions.discard(session)
            if session.detach(DetachReason.NEGOTIATION_TIMEOUT, str(failure)):
                self.notify(str(failure), logging.WARNING)
            return
        except (OrchestrationError, ConnectionError, OSError) as exc:
            process.sessions.discard(session)
            reason = DetachReason.SERVER_EXITED if isinstance(exc, ConnectionError) else DetachReason.SPAWN_FAILED
            if session.detach(reason, str(exc)):
                self.notify(f"{descriptor.id} failed to initialize: {exc}", logging.WARNING)
            return

        # Detached while negotiating: the result belongs to nobody
        if not session.is_live or session not in process.sessions:
            LOGGER.debug("%s", StaleResponse(session.id))
            return

        session.activate(capabilities)
        self.binder.bind(session, process.client)
        try:
            await process.client.did_open(session.document, session.filetype, text)
        except (ConnectionError, OSError) as exc:
            LOGGER.debug("didOpen for %s failed: %s", session.document, exc)

    async def _acquire(self, descriptor: ServerDescriptor, root: Path) -> ServerProcess:
        key = (descriptor.id, root)
        process = self._processes.get(key)
        if process is not None:
            return process

        task = self._spawning.get(key)
        if task is None:
            task = asyncio.ensure_future(self._spawn(descriptor, root))
            self._spawning[key] = task
        return await asyncio.shield(task)

    async def _spawn(self, descriptor: ServerDescriptor, root: Path) -> ServerProcess:
        key = (descriptor.id, root)
        try:
            client = await self.launcher(descriptor, root, on_exit=self._on_client_exit)
            process = ServerProcess(
                descriptor=descriptor,
                root=root,
                client=client,
                ready=asyncio.get_running_loop().create_future(),
            )
            process.ready.add_done_callback(_retrieve)
            process.negotiation = asyncio.ensure_future(self._negotiate(process))
            self._processes[key] = process
            LOGGER.info("Started %s for %s", descriptor.id, root)
            return process
        finally:
            self._spawning.pop(key, None)

    async def _negotiate(self, process: ServerProcess) -> None:
        descriptor = process.descriptor
        try:
            capabilities = await process.client.initialize(
                client_capabilities(descriptor), descriptor.init_options or None
            )
        except (OrchestrationError, ConnectionError, OSError, asyncio.TimeoutError) as exc:
            if not process.ready.done():
                process.ready.set_exception(
                    exc if not isinstance(exc, asyncio.TimeoutError)
                    else NegotiationTimeout(descriptor.id, self.negotiation_timeout)
                )
            self._discard_process(process)
            return

        if not process.ready.done():
            process.ready.set_result(capabilities)


__all__ = ["ActivationDispatcher", "ServerKey", "ServerProcess"]
