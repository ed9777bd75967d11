"""Shared fakes for codeagent tests."""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from codeagent.core.llm.provider import LlmRequest, LlmResponse, ToolCall
from codeagent.lsp.framing import content_length, encode_message, parse_header


def call(id: str, name: str, **arguments: Any) -> ToolCall:
    return ToolCall.from_raw(id, name, arguments)


def reply(text: str = "", *calls: ToolCall) -> LlmResponse:
    return LlmResponse(content=text, tool_calls=list(calls), finish_reason="tool_calls" if calls else "stop")


class FakeGateway:
    """Replays a script of responses.

    Each script entry is an LlmResponse, an exception to raise, or a
    callable taking the request (sync or async) and returning either.
    """

    def __init__(self, script: list[Any] | None = None, model: str = "fake/model") -> None:
        self.script = list(script or [])
        self.requests: list[LlmRequest] = []
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, request: LlmRequest, on_delta=None) -> LlmResponse:
        self.requests.append(request)
        if not self.script:
            raise AssertionError("FakeGateway script exhausted")
        item = self.script.pop(0)
        if callable(item) and not isinstance(item, (LlmResponse, BaseException)):
            item = item(request)
            if inspect.isawaitable(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        if on_delta is not None and item.content:
            on_delta(item.content)
        return item


class FakeStreamWriter:
    """Client-side stdin of a fake server: parses frames and hands them over."""

    def __init__(self, on_message: Callable[[dict[str, Any]], None]) -> None:
        self._on_message = on_message
        self._buffer = b""
        self.closed = False
        self.messages: list[dict[str, Any]] = []

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("stdin closed")
        self._buffer += data
        while True:
            sep = self._buffer.find(b"\r\n\r\n")
            if sep < 0:
                return
            length = content_length(parse_header(self._buffer[:sep]))
            start = sep + 4
            if len(self._buffer) < start + length:
                return
            msg = json.loads(self._buffer[start : start + length])
            self._buffer = self._buffer[start + length :]
            self.messages.append(msg)
            self._on_message(msg)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        self.closed = True


class FakeLanguageServer:
    """An in-memory language server speaking real Content-Length framing.

    ``handlers`` map request methods to callables returning the result (or
    raising). Methods listed in ``silent`` never get a response. Set
    ``diagnostics_for`` to publish diagnostics automatically after
    didOpen/didChange.
    """

    def __init__(self) -> None:
        self.reader = asyncio.StreamReader()
        self.writer = FakeStreamWriter(self._handle)
        self.handlers: dict[str, Callable[[Any], Any]] = {
            "initialize": lambda params: {"capabilities": {"textDocumentSync": 1}},
            "shutdown": lambda params: None,
        }
        self.silent: set[str] = set()
        self.notifications: list[dict[str, Any]] = []
        self.requests: list[dict[str, Any]] = []
        self.responses: list[dict[str, Any]] = []
        self.diagnostics_for: Callable[[str, str], list[dict[str, Any]]] | None = None
        self._texts: dict[str, str] = {}

    def _handle(self, msg: dict[str, Any]) -> None:
        method = msg.get("method")
        if method is None:
            self.responses.append(msg)
            return
        if "id" not in msg:
            self.notifications.append(msg)
            self._on_notification(method, msg.get("params") or {})
            return
        self.requests.append(msg)
        if method in self.silent:
            return
        handler = self.handlers.get(method)
        if handler is None:
            self.send({"jsonrpc": "2.0", "id": msg["id"], "error": {"code": -32601, "message": "nope"}})
            return
        try:
            result = handler(msg.get("params"))
        except Exception as e:
            self.send({"jsonrpc": "2.0", "id": msg["id"], "error": {"code": -32000, "message": str(e)}})
            return
        self.send({"jsonrpc": "2.0", "id": msg["id"], "result": result})

    def _on_notification(self, method: str, params: dict[str, Any]) -> None:
        if method == "textDocument/didOpen":
            doc = params["textDocument"]
            self._texts[doc["uri"]] = doc["text"]
            self._maybe_publish(doc["uri"])
        elif method == "textDocument/didChange":
            uri = params["textDocument"]["uri"]
            self._texts[uri] = params["contentChanges"][-1]["text"]
            self._maybe_publish(uri)

    def _maybe_publish(self, uri: str) -> None:
        if self.diagnostics_for is not None:
            self.publish(uri, self.diagnostics_for(uri, self._texts[uri]))

    def send(self, msg: dict[str, Any]) -> None:
        self.reader.feed_data(encode_message(msg))

    def publish(self, uri: str, diagnostics: list[dict[str, Any]]) -> None:
        self.send(
            {
                "jsonrpc": "2.0",
                "method": "textDocument/publishDiagnostics",
                "params": {"uri": uri, "diagnostics": diagnostics},
            }
        )

    def crash(self) -> None:
        self.reader.feed_eof()

    def notified(self, method: str) -> list[dict[str, Any]]:
        return [n.get("params") or {} for n in self.notifications if n["method"] == method]


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process`` around a FakeLanguageServer."""

    def __init__(self, server: FakeLanguageServer) -> None:
        self.server = server
        self.stdin = server.writer
        self.stdout = server.reader
        self.stderr = None
        self.returncode: int | None = None
        self.pid = 4242

    async def wait(self) -> int:
        if self.returncode is None:
            self.returncode = 0
        return self.returncode

    def terminate(self) -> None:
        self.returncode = -15

    def kill(self) -> None:
        self.returncode = -9


class FakeSpawner:
    """Spawn primitive producing fake servers; records every spawn."""

    def __init__(self, configure: Callable[[FakeLanguageServer], None] | None = None) -> None:
        self.configure = configure
        self.spawned: list[tuple[tuple[str, ...], Path, FakeLanguageServer]] = []

    async def __call__(self, command, env, cwd) -> FakeProcess:
        server = FakeLanguageServer()
        if self.configure is not None:
            self.configure(server)
        self.spawned.append((tuple(command), Path(cwd), server))
        return FakeProcess(server)


def diagnostic(line: int, character: int, message: str, severity: int = 1) -> dict[str, Any]:
    """A wire diagnostic (0-based)."""
    return {
        "range": {
            "start": {"line": line, "character": character},
            "end": {"line": line, "character": character + 1},
        },
        "severity": severity,
        "message": message,
        "source": "fake",
    }
