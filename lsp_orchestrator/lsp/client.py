"""LSP client implementation with JSON-RPC communication."""
from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import quote, unquote

from lsp_orchestrator.core.utils.constants import DEFAULT_REQUEST_TIMEOUT, DEFAULT_SHUTDOWN_TIMEOUT
from lsp_orchestrator.lsp.capabilities import CapabilitySet
from lsp_orchestrator.lsp.descriptors import ServerDescriptor, thaw
from lsp_orchestrator.lsp.diagnostics import Diagnostic
from lsp_orchestrator.lsp.errors import OrchestrationError

LOGGER = logging.getLogger(__name__)

ExitCallback = Callable[["LSPClient"], None]


class ResponseError(OrchestrationError):
    """Error object returned by the server for a request."""

    def __init__(self, method: str, error: Mapping[str, Any]):
        super().__init__(f"{method} failed: {error.get('message', error)}")
        self.method = method
        self.code = error.get("code")
        self.data = error.get("data")


class JsonRpcEndpoint:
    """Minimal JSON-RPC 2.0 endpoint for LSP communication."""

    def __init__(self, reader, writer):
        self.reader = reader
        self.writer = writer
        self.request_id = 0
        self.pending_requests: Dict[int, asyncio.Future] = {}
        self._methods: Dict[int, str] = {}

    async def request(self, method: str, params: Any = None, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> Any:
        """Send a request and wait for response.

        Raises:
            asyncio.TimeoutError: No response within ``timeout`` seconds
            ResponseError: The server answered with an error object
        """
        self.request_id += 1
        req_id = self.request_id

        message = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": method,
            "params": params if params is not None else {}
        }

        future = asyncio.get_running_loop().create_future()
        self.pending_requests[req_id] = future
        self._methods[req_id] = method

        try:
            await self._write_message(message)
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Request %s timed out", method)
            raise
        finally:
            self.pending_requests.pop(req_id, None)
            self._methods.pop(req_id, None)

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification (no response expected)."""
        message = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params if params is not None else {}
        }
        await self._write_message(message)

    async def respond(self, req_id: Any, result: Any) -> None:
        """Answer a request issued by the server."""
        await self._write_message({"jsonrpc": "2.0", "id": req_id, "result": result})

    async def _read_message(self) -> Optional[Dict]:
        """Read a JSON-RPC message from the reader."""
        try:
            content_length = None
            while True:
                line = await self.reader.readline()
                if not line:
                    return None

                line = line.decode('utf-8').strip()
                if not line:
                    # Empty line marks end of headers
                    break

                if line.lower().startswith('content-length:'):
                    content_length = int(line.split(':')[1].strip())

            if content_length is None:
                return None

            content = await self.reader.readexactly(content_length)
            return json.loads(content.decode('utf-8'))

        except (asyncio.IncompleteReadError, json.JSONDecodeError) as e:
            LOGGER.debug("Error reading message: %s", e)
            return None

    async def _write_message(self, message: Dict) -> None:
        """Write a JSON-RPC message."""
        content = json.dumps(message).encode('utf-8')
        header = f"Content-Length: {len(content)}\r\n\r\n".encode('ascii')
        self.writer.write(header + content)
        await self.writer.drain()

    def resolve(self, message: Dict) -> None:
        """Complete the pending request a response message belongs to."""
        req_id = message["id"]
        future = self.pending_requests.get(req_id)
        if future is None or future.done():
            LOGGER.debug("Dropping response for unknown request %s", req_id)
            return
        if "error" in message:
            future.set_exception(ResponseError(self._methods.get(req_id, "request"), message["error"]))
        else:
            future.set_result(message.get("result"))

    def fail_pending(self, exc: BaseException) -> None:
        """Fail every outstanding request, used when the connection drops."""
        for future in self.pending_requests.values():
            if not future.done():
                future.set_exception(exc)


class LSPClient:
    """Async LSP client for one server process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        root: Path,
        descriptor: ServerDescriptor,
        on_exit: Optional[ExitCallback] = None,
    ):
        """Initialize LSP client.

        Args:
            process: The LSP server subprocess
            root: Workspace root directory
            descriptor: Descriptor the process was started from
            on_exit: Called once when the server goes away without shutdown
        """
        self.process = process
        self.root = Path(root)
        self.descriptor = descriptor
        self.server_id = descriptor.id
        self.diagnostics: Dict[Path, List[Diagnostic]] = {}
        self._exit_callbacks: List[ExitCallback] = [on_exit] if on_exit else []

        self.endpoint = JsonRpcEndpoint(process.stdout, process.stdin)

        self._open_files: Dict[Path, int] = {}  # Path -> version

        self._initialized = False
        self.capabilities = CapabilitySet()
        self._shutdown = False
        self._exited = False

        self._listen_task = asyncio.create_task(self._listen())

    @property
    def server_capabilities(self) -> Mapping[str, Any]:
        return self.capabilities.raw

    @property
    def is_running(self) -> bool:
        return not self._exited and self.process.returncode is None

    def add_exit_callback(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    async def _listen(self) -> None:
        """Listen for server messages and dispatch them."""
        try:
            while not self._shutdown:
                message = await self.endpoint._read_message()
                if message is None:
                    break
                await self._consume(message)

        except asyncio.CancelledError:
            return
        except Exception as e:
            LOGGER.error("Error in listen loop of %s: %s", self.server_id, e)

        if not self._shutdown:
            self._mark_exited()

    def _mark_exited(self) -> None:
        if self._exited:
            return
        self._exited = True
        self.endpoint.fail_pending(ConnectionError(f"{self.server_id} exited"))
        LOGGER.warning("LSP server %s for %s exited", self.server_id, self.root)
        for callback in self._exit_callbacks:
            try:
                callback(self)
            except Exception:
                LOGGER.exception("Exit callback failed for %s", self.server_id)

    async def _consume(self, message: Dict) -> None:
        if "id" in message and "method" not in message:
            self.endpoint.resolve(message)
            return

        method = message.get("method", "")
        params = message.get("params") or {}
        if "id" in message:
            await self.endpoint.respond(message["id"], self._answer_server_request(method, params))
            return

        # e.g. "textDocument/publishDiagnostics" -> "textDocument_publishDiagnostics"
        handler = getattr(self, method.replace("/", "_"), None)
        if handler:
            try:
                handler(**params)
            except Exception as e:
                LOGGER.debug("Error in notification handler %s: %s", method, e)

    def _answer_server_request(self, method: str, params: Mapping[str, Any]) -> Any:
        if method == "workspace/configuration":
            return [self._settings_section(item.get("section")) for item in params.get("items", [])]
        if method == "workspace/workspaceFolders":
            return [self._workspace_folder()]
        # client/registerCapability, window/workDoneProgress/create, ...
        return None

    def _settings_section(self, section: Optional[str]) -> Any:
        value: Any = thaw(self.descriptor.settings)
        if not section:
            return value
        for part in section.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    def _workspace_folder(self) -> Dict[str, str]:
        return {"uri": self._path_to_uri(self.root), "name": self.root.name}

    async def initialize(
        self,
        client_capabilities: Mapping[str, Any],
        initialization_options: Optional[Mapping[str, Any]] = None,
    ) -> CapabilitySet:
        """Send initialize request to server.

        Args:
            client_capabilities: Capabilities announced to the server
            initialization_options: Server-specific initialization options

        Returns:
            Negotiated server capabilities
        """
        if self._initialized:
            return self.capabilities

        params: Dict[str, Any] = {
            "processId": os.getpid(),
            "rootUri": self._path_to_uri(self.root),
            "rootPath": str(self.root),
            "capabilities": thaw(client_capabilities),
            "workspaceFolders": [self._workspace_folder()],
            "trace": "off"
        }

        if initialization_options:
            params["initializationOptions"] = thaw(initialization_options)

        result = await self.endpoint.request("initialize", params) or {}
        self.capabilities = CapabilitySet.from_server(
            result.get("capabilities", {}), self.descriptor.disabled_capabilities
        )

        await self.endpoint.notify("initialized", {})
        if self.descriptor.settings:
            await self.endpoint.notify(
                "workspace/didChangeConfiguration",
                {"settings": thaw(self.descriptor.settings)},
            )

        self._initialized = True
        LOGGER.info("LSP server %s initialized for %s", self.server_id, self.root)
        return self.capabilities

    def supports_method(self, method: str, document: Optional[Path] = None) -> bool:
        """Whether the negotiated capabilities cover ``method``."""
        return self._initialized and self.capabilities.supports(method)

    async def request(self, method: str, params: Any = None) -> Any:
        return await self.endpoint.request(method, params)

    async def did_open(self, file_path: Path, language_id: str, text: Optional[str] = None) -> None:
        """Notify server of file open.

        Args:
            file_path: Path to the file
            language_id: Language identifier
            text: Document contents (read from disk if None)
        """
        if file_path in self._open_files:
            return

        if text is None:
            text = file_path.read_text(encoding="utf-8") if file_path.is_file() else ""

        self._open_files[file_path] = 1

        await self.endpoint.notify(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": self._path_to_uri(file_path),
                    "languageId": language_id,
                    "version": 1,
                    "text": text
                }
            }
        )

    async def did_close(self, file_path: Path) -> None:
        """Notify server of file close."""
        if file_path not in self._open_files:
            return

        del self._open_files[file_path]

        await self.endpoint.notify(
            "textDocument/didClose",
            {
                "textDocument": {
                    "uri": self._path_to_uri(file_path)
                }
            }
        )

    def get_diagnostics(self, file_path: Path) -> List[Diagnostic]:
        return self.diagnostics.get(file_path, [])

    async def shutdown(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """Shutdown the LSP server."""
        self._shutdown = True
        try:
            if self._initialized and self.is_running:
                await self.endpoint.request("shutdown", None, timeout=timeout)
                await self.endpoint.notify("exit", None)
        except Exception as e:
            LOGGER.debug("Error during shutdown of %s: %s", self.server_id, e)
        finally:
            if not self._listen_task.done():
                self._listen_task.cancel()
                try:
                    await self._listen_task
                except asyncio.CancelledError:
                    pass

            if self.process.returncode is None:
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    self.process.kill()
                    await self.process.wait()

            self._initialized = False
            self._open_files.clear()

    # LSP notification handlers
    def textDocument_publishDiagnostics(self, **params) -> None:
        """Handle diagnostic notifications from server."""
        path = self._uri_to_path(params.get("uri", ""))
        if path:
            self.diagnostics[path] = [
                Diagnostic.from_lsp(d) for d in params.get("diagnostics", [])
            ]

    def window_logMessage(self, **params) -> None:
        """Handle log messages from server."""
        message = params.get("message", "")
        message_type = params.get("type", 4)  # 1=Error, 2=Warning, 3=Info, 4=Log

        log_levels = {
            1: logging.ERROR,
            2: logging.WARNING,
            3: logging.INFO,
            4: logging.DEBUG
        }
        level = log_levels.get(message_type, logging.DEBUG)
        LOGGER.log(level, "LSP server %s: %s", self.server_id, message)

    def window_showMessage(self, **params) -> None:
        self.window_logMessage(**params)

    # Helper methods
    @staticmethod
    def _path_to_uri(path: Path) -> str:
        """Convert file path to URI."""
        path_str = str(path.absolute()).replace('\\', '/')
        if not path_str.startswith('/'):
            path_str = '/' + path_str
        return f"file://{quote(path_str, safe='/:')}"

    @staticmethod
    def _uri_to_path(uri: str) -> Optional[Path]:
        """Convert URI to file path."""
        if not uri.startswith("file://"):
            return None

        path_str = unquote(uri[7:])
        # Handle Windows paths
        if len(path_str) > 2 and path_str[0] == "/" and path_str[2] == ":":
            path_str = path_str[1:]

        return Path(path_str)


__all__ = ["JsonRpcEndpoint", "LSPClient", "ResponseError"]
