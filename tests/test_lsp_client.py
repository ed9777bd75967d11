"""Tests for the language server client."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from codeagent.errors import LspProtocolError, LspRequestTimeout
from codeagent.lsp.client import ClientState, LspClient, hover_text, language_id_for
from codeagent.lsp.diagnostics import Severity
from codeagent.lsp.positions import path_to_uri
from codeagent.lsp.transport import RpcTransport
from tests.utils import FakeLanguageServer, FakeProcess, diagnostic


def _make_client(server: FakeLanguageServer, root: Path, **kwargs) -> LspClient:
    transport = RpcTransport(server.reader, server.writer, name="fake", default_timeout=1.0)  # type: ignore[arg-type]
    return LspClient("fake", root, transport, process=FakeProcess(server), **kwargs)  # type: ignore[arg-type]


@pytest.fixture
async def server() -> FakeLanguageServer:
    return FakeLanguageServer()


@pytest.fixture
async def client(server, tmp_path):
    c = _make_client(server, tmp_path)
    await c.initialize()
    yield c
    await c.shutdown()


class TestHandshake:
    """initialize / initialized."""

    async def test_initialize_marks_ready(self, server, tmp_path) -> None:
        c = _make_client(server, tmp_path)
        caps = await c.initialize()
        assert c.state is ClientState.READY
        assert caps == {"textDocumentSync": 1}
        assert server.requests[0]["method"] == "initialize"
        assert server.requests[0]["params"]["rootUri"] == path_to_uri(tmp_path)
        assert server.notified("initialized") == [{}]
        await c.shutdown()

    async def test_initialize_timeout_marks_broken(self, server, tmp_path) -> None:
        server.silent.add("initialize")
        c = _make_client(server, tmp_path, initialize_timeout=0.05)
        with pytest.raises(LspRequestTimeout):
            await c.initialize()
        assert c.state is ClientState.BROKEN
        await c.shutdown()

    async def test_requests_before_ready_are_rejected(self, server, tmp_path) -> None:
        c = _make_client(server, tmp_path)
        with pytest.raises(LspProtocolError, match="starting"):
            await c.open("file:///x.py", "")


class TestDocumentSync:
    """Version tracking and didOpen/didChange/didClose."""

    async def test_versions_increase_across_open_change_reopen(self, server, client) -> None:
        uri = "file:///proj/a.py"
        assert await client.open(uri, "x = 1") == 1
        assert await client.change(uri, "x = 2") == 2
        await client.close(uri)
        assert not client.is_open(uri)
        assert await client.open(uri, "x = 3") == 3

        opened = server.notified("textDocument/didOpen")
        assert [p["textDocument"]["version"] for p in opened] == [1, 3]
        assert opened[0]["textDocument"]["languageId"] == "python"
        changed = server.notified("textDocument/didChange")
        assert changed[0]["contentChanges"] == [{"text": "x = 2"}]

    async def test_change_on_unopened_document_opens_it(self, server, client) -> None:
        uri = "file:///proj/b.ts"
        assert await client.change(uri, "let a = 1") == 1
        assert len(server.notified("textDocument/didOpen")) == 1
        assert server.notified("textDocument/didChange") == []

    async def test_save_includes_text(self, server, client) -> None:
        uri = "file:///proj/c.go"
        await client.open(uri, "package main")
        await client.save(uri, "package main")
        assert server.notified("textDocument/didSave")[0]["text"] == "package main"


class TestDiagnostics:
    """publishDiagnostics handling."""

    async def test_wait_returns_published_set(self, server, client) -> None:
        server.diagnostics_for = lambda uri, text: [diagnostic(0, 4, "undefined name")]
        uri = "file:///proj/a.py"
        await client.open(uri, "foo(")
        items = await client.wait_for_diagnostics(uri, 1.0)
        assert len(items) == 1
        assert items[0].severity is Severity.ERROR
        assert (items[0].line, items[0].column) == (1, 5)

    async def test_publish_replaces_whole_set(self, server, client) -> None:
        uri = "file:///proj/a.py"
        server.publish(uri, [diagnostic(0, 0, "a"), diagnostic(1, 0, "b")])
        await asyncio.sleep(0.01)
        assert len(client.diagnostics(uri)) == 2
        server.publish(uri, [])
        await asyncio.sleep(0.01)
        assert client.diagnostics(uri) == []

    async def test_wait_times_out_with_cached_set(self, server, client) -> None:
        """A silent server yields whatever is cached; no exception."""
        uri = "file:///proj/a.py"
        await client.open(uri, "x")
        assert await client.wait_for_diagnostics(uri, 0.05) == []

    async def test_wait_after_change_waits_for_new_publish(self, server, client) -> None:
        uri = "file:///proj/a.py"
        server.diagnostics_for = lambda uri, text: [diagnostic(0, 0, text)]
        await client.open(uri, "one")
        await client.wait_for_diagnostics(uri, 1.0)

        server.diagnostics_for = None
        await client.change(uri, "two")
        server.publish(uri, [diagnostic(0, 0, "fresh")])
        items = await client.wait_for_diagnostics(uri, 1.0)
        assert [d.message for d in items] == ["fresh"]

    async def test_listener_notified(self, server, client) -> None:
        seen = []
        client.add_diagnostics_listener(lambda uri, items: seen.append((uri, len(items))))
        server.publish("file:///proj/z.py", [diagnostic(2, 1, "w", severity=2)])
        await asyncio.sleep(0.01)
        assert seen == [("file:///proj/z.py", 1)]
        assert client.diagnostic_summary()["warnings"] == 1


class TestQueries:
    """Code intelligence requests use wire positions."""

    async def test_definition_converts_position(self, server, client) -> None:
        location = {
            "uri": "file:///proj/b.py",
            "range": {"start": {"line": 9, "character": 4}, "end": {"line": 9, "character": 8}},
        }
        server.handlers["textDocument/definition"] = lambda params: location
        result = await client.definition("file:///proj/a.py", 3, 7)
        assert result == [location]
        sent = server.requests[-1]["params"]["position"]
        assert sent == {"line": 2, "character": 6}

    async def test_references_include_declaration(self, server, client) -> None:
        server.handlers["textDocument/references"] = lambda params: []
        assert await client.references("file:///proj/a.py", 1, 1) == []
        assert server.requests[-1]["params"]["context"] == {"includeDeclaration": True}

    async def test_hover_text(self, server, client) -> None:
        server.handlers["textDocument/hover"] = lambda params: {
            "contents": {"kind": "markdown", "value": "def foo() -> int"}
        }
        assert await client.hover("file:///proj/a.py", 1, 1) == "def foo() -> int"

    async def test_symbols_tolerate_null(self, server, client) -> None:
        server.handlers["textDocument/documentSymbol"] = lambda params: None
        server.handlers["workspace/symbol"] = lambda params: [{"name": "Foo", "kind": 5}]
        assert await client.document_symbols("file:///proj/a.py") == []
        assert await client.workspace_symbols("Foo") == [{"name": "Foo", "kind": 5}]


class TestLifecycle:
    """Shutdown and crash handling."""

    async def test_shutdown_sends_shutdown_and_exit(self, server, tmp_path) -> None:
        c = _make_client(server, tmp_path)
        await c.initialize()
        await c.shutdown()
        assert c.state is ClientState.STOPPED
        assert server.requests[-1]["method"] == "shutdown"
        assert server.notified("exit") == [{}]
        assert c.transport.closed

    async def test_crash_marks_broken_and_releases_waiters(self, server, client) -> None:
        uri = "file:///proj/a.py"
        await client.open(uri, "x")
        waiter = asyncio.ensure_future(client.wait_for_diagnostics(uri, 5.0))
        await asyncio.sleep(0)
        server.crash()
        assert await asyncio.wait_for(waiter, 1.0) == []
        assert client.state is ClientState.BROKEN


class TestHelpers:
    def test_language_ids(self) -> None:
        assert language_id_for("a/b.tsx") == "typescriptreact"
        assert language_id_for("Main.java") == "java"
        assert language_id_for("notes.unknown") == "plaintext"

    def test_hover_text_shapes(self) -> None:
        assert hover_text(None) is None
        assert hover_text({"contents": "plain"}) == "plain"
        assert hover_text({"contents": ["a", {"language": "py", "value": "b"}]}) == "a\n\nb"
