"""Tests for the JSON-RPC client over in-memory streams."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from lsp_orchestrator.lsp.client import JsonRpcEndpoint, LSPClient, ResponseError
from lsp_orchestrator.lsp.descriptors import ServerDescriptor


def _frame(message: dict) -> bytes:
    body = json.dumps(message).encode("utf-8")
    return f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body


def _sent(writer: MagicMock) -> list:
    messages = []
    for call in writer.write.call_args_list:
        raw = call.args[0]
        _, body = raw.split(b"\r\n\r\n", 1)
        messages.append(json.loads(body))
    return messages


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _client(tmp_path: Path, on_exit=None, settings=None):
    reader = asyncio.StreamReader()
    writer = MagicMock()
    writer.drain = AsyncMock()
    process = MagicMock(stdout=reader, stdin=writer, returncode=None)
    process.wait = AsyncMock(return_value=0)
    descriptor = ServerDescriptor(
        id="alpha",
        filetypes=frozenset({"rust"}),
        settings=settings or {},
        disabled_capabilities=frozenset({"hoverProvider"}),
    )
    return LSPClient(process, tmp_path, descriptor, on_exit=on_exit), reader, writer


@pytest.mark.asyncio
async def test_initialize_negotiates_capabilities(tmp_path: Path) -> None:
    client, reader, writer = _client(tmp_path, settings={"alpha": {"check": "clippy"}})

    pending = asyncio.ensure_future(client.initialize({"textDocument": {}}))
    await _settle()
    reader.feed_data(
        _frame({"jsonrpc": "2.0", "id": 1, "result": {"capabilities": {"renameProvider": True, "hoverProvider": True}}})
    )
    capabilities = await pending

    assert capabilities.supports("textDocument/rename")
    assert not capabilities.supports("textDocument/hover")
    assert client.supports_method("textDocument/rename", tmp_path / "main.rs")
    methods = [message.get("method") for message in _sent(writer)]
    assert methods == ["initialize", "initialized", "workspace/didChangeConfiguration"]

    reader.feed_eof()
    await client.shutdown(timeout=0.1)


@pytest.mark.asyncio
async def test_error_response_raises(tmp_path: Path) -> None:
    client, reader, _ = _client(tmp_path)

    pending = asyncio.ensure_future(client.request("textDocument/rename", {}))
    await _settle()
    reader.feed_data(_frame({"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "no"}}))

    with pytest.raises(ResponseError, match="textDocument/rename failed"):
        await pending

    reader.feed_eof()
    await client.shutdown(timeout=0.1)


@pytest.mark.asyncio
async def test_publish_diagnostics_are_stored(tmp_path: Path) -> None:
    client, reader, _ = _client(tmp_path)
    document = tmp_path / "main.rs"

    reader.feed_data(
        _frame(
            {
                "jsonrpc": "2.0",
                "method": "textDocument/publishDiagnostics",
                "params": {
                    "uri": LSPClient._path_to_uri(document),
                    "diagnostics": [
                        {
                            "range": {"start": {"line": 2, "character": 4}, "end": {"line": 2, "character": 5}},
                            "severity": 1,
                            "message": "expected `;`",
                        }
                    ],
                },
            }
        )
    )
    await _settle()

    [diagnostic] = client.get_diagnostics(document)
    assert diagnostic.message == "expected `;`"
    assert diagnostic.line == 2

    reader.feed_eof()
    await client.shutdown(timeout=0.1)


@pytest.mark.asyncio
async def test_configuration_request_answered_from_settings(tmp_path: Path) -> None:
    client, reader, writer = _client(tmp_path, settings={"alpha": {"check": {"command": "clippy"}}})

    reader.feed_data(
        _frame(
            {
                "jsonrpc": "2.0",
                "id": 7,
                "method": "workspace/configuration",
                "params": {"items": [{"section": "alpha.check"}, {"section": "missing"}]},
            }
        )
    )
    await _settle()

    [reply] = _sent(writer)
    assert reply["id"] == 7
    assert reply["result"] == [{"command": "clippy"}, None]

    reader.feed_eof()
    await client.shutdown(timeout=0.1)


@pytest.mark.asyncio
async def test_unexpected_eof_reports_exit(tmp_path: Path) -> None:
    exits = []
    client, reader, _ = _client(tmp_path, on_exit=exits.append)

    pending = asyncio.ensure_future(client.request("textDocument/definition", {}))
    await _settle()
    reader.feed_eof()
    await _settle()

    assert exits == [client]
    assert not client.is_running
    with pytest.raises(ConnectionError):
        await pending


def test_uri_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "dir with space" / "main.rs"

    uri = LSPClient._path_to_uri(path)

    assert uri.startswith("file://")
    assert "%20" in uri
    assert LSPClient._uri_to_path(uri) == path
    assert LSPClient._uri_to_path("untitled:1") is None


@pytest.mark.asyncio
async def test_failed_write_leaves_no_pending_request() -> None:
    writer = MagicMock()
    writer.drain = AsyncMock(side_effect=BrokenPipeError("server stdin closed"))
    endpoint = JsonRpcEndpoint(asyncio.StreamReader(), writer)

    with pytest.raises(BrokenPipeError):
        await endpoint.request("textDocument/definition", {})

    assert endpoint.pending_requests == {}
    assert endpoint._methods == {}
