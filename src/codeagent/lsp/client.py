"""Language server client: handshake, document sync, diagnostics and queries."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from codeagent.errors import AgentError, LspProtocolError
from codeagent.lsp.diagnostics import Diagnostic, summarize
from codeagent.lsp.positions import flatten_locations, path_to_uri, to_wire
from codeagent.lsp.transport import RpcTransport

_log = logging.getLogger("codeagent.lsp.client")

LANGUAGE_IDS = {
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".js": "javascript",
    ".jsx": "javascriptreact",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".java": "java",
    ".groovy": "groovy",
    ".py": "python",
    ".pyi": "python",
    ".go": "go",
    ".rs": "rust",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".scss": "scss",
    ".less": "less",
    ".md": "markdown",
}


def language_id_for(path: str | Path) -> str:
    return LANGUAGE_IDS.get(Path(path).suffix.lower(), "plaintext")


class ClientState(Enum):
    STARTING = "starting"
    READY = "ready"
    BROKEN = "broken"
    STOPPED = "stopped"


DiagnosticsListener = Callable[[str, list[Diagnostic]], None]


def _client_capabilities() -> dict[str, Any]:
    return {
        "textDocument": {
            "synchronization": {"didSave": True, "dynamicRegistration": False},
            "publishDiagnostics": {"relatedInformation": True, "versionSupport": False},
            "definition": {"linkSupport": False},
            "references": {},
            "hover": {"contentFormat": ["markdown", "plaintext"]},
            "documentSymbol": {"hierarchicalDocumentSymbolSupport": True},
        },
        "workspace": {
            "workspaceFolders": True,
            "configuration": True,
            "symbol": {},
        },
    }


def hover_text(result: Any) -> str | None:
    """Extract plain text from any of the hover content shapes."""
    if not result:
        return None
    contents = result.get("contents") if isinstance(result, dict) else result
    if isinstance(contents, str):
        return contents or None
    if isinstance(contents, dict):
        return contents.get("value") or None
    if isinstance(contents, list):
        parts = [hover_text({"contents": c}) for c in contents]
        text = "\n\n".join(p for p in parts if p)
        return text or None
    return None


class LspClient:
    """One initialized connection to a language server for a workspace root.

    Lifecycle: STARTING -> READY -> STOPPED, or BROKEN when the handshake
    fails or the transport closes underneath a live client.
    """

    def __init__(
        self,
        server_id: str,
        root: Path,
        transport: RpcTransport,
        *,
        process: asyncio.subprocess.Process | None = None,
        request_timeout: float = 5.0,
        initialize_timeout: float = 10.0,
        shutdown_timeout: float = 2.0,
        initialization_options: dict[str, Any] | None = None,
    ) -> None:
        self.server_id = server_id
        self.root = root
        self.process = process
        self.request_timeout = request_timeout
        self.initialize_timeout = initialize_timeout
        self.shutdown_timeout = shutdown_timeout
        self._initialization_options = initialization_options or {}
        self._transport = transport
        self.state = ClientState.STARTING
        self.server_capabilities: dict[str, Any] = {}

        self._versions: dict[str, int] = {}
        self._open: set[str] = set()
        self._diagnostics: dict[str, list[Diagnostic]] = {}
        self._published: dict[str, asyncio.Event] = {}
        self._listeners: list[DiagnosticsListener] = []

        transport.on_notification("textDocument/publishDiagnostics", self._on_publish_diagnostics)
        transport.on_notification("window/logMessage", self._on_log_message)
        transport.on_request("workspace/configuration", self._on_configuration)
        transport.on_request("client/registerCapability", lambda params: None)
        transport.on_request("window/workDoneProgress/create", lambda params: None)
        transport.on_request("workspace/workspaceFolders", lambda params: [self._workspace_folder()])
        transport.add_close_callback(self._on_transport_closed)

    @property
    def transport(self) -> RpcTransport:
        return self._transport

    @property
    def is_ready(self) -> bool:
        return self.state is ClientState.READY

    def add_diagnostics_listener(self, listener: DiagnosticsListener) -> None:
        self._listeners.append(listener)

    def _workspace_folder(self) -> dict[str, str]:
        return {"uri": path_to_uri(self.root), "name": self.root.name or str(self.root)}

    async def initialize(self) -> dict[str, Any]:
        """Run the initialize/initialized handshake.

        On any failure the client becomes BROKEN and the error propagates.
        """
        self._transport.start()
        params = {
            "processId": os.getpid(),
            "clientInfo": {"name": "codeagent"},
            "rootUri": path_to_uri(self.root),
            "rootPath": str(self.root),
            "capabilities": _client_capabilities(),
            "workspaceFolders": [self._workspace_folder()],
            "initializationOptions": self._initialization_options,
        }
        try:
            result = await self._transport.request(
                "initialize", params, timeout=self.initialize_timeout
            )
            if not isinstance(result, dict):
                raise LspProtocolError(
                    f"{self.server_id}: initialize returned {type(result).__name__}, expected an object"
                )
            capabilities = result.get("capabilities", {})
            self.server_capabilities = capabilities if isinstance(capabilities, dict) else {}
            await self._transport.notify("initialized", {})
        except AgentError:
            self._mark_broken()
            raise
        self.state = ClientState.READY
        _log.info("Language server %s ready for %s", self.server_id, self.root)
        return self.server_capabilities

    # Document synchronization

    def version(self, uri: str) -> int:
        """Last version sent for ``uri`` (0 if never opened)."""
        return self._versions.get(uri, 0)

    def is_open(self, uri: str) -> bool:
        return uri in self._open

    def _next_version(self, uri: str) -> int:
        version = self._versions.get(uri, 0) + 1
        self._versions[uri] = version
        return version

    def _expect_diagnostics(self, uri: str) -> None:
        event = self._published.get(uri)
        if event is None:
            self._published[uri] = asyncio.Event()
        else:
            event.clear()

    async def open(self, uri: str, text: str, language_id: str | None = None) -> int:
        self._require_ready()
        version = self._next_version(uri)
        self._expect_diagnostics(uri)
        self._open.add(uri)
        await self._transport.notify(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": uri,
                    "languageId": language_id or language_id_for(uri),
                    "version": version,
                    "text": text,
                }
            },
        )
        return version

    async def change(self, uri: str, text: str) -> int:
        """Send a full-text change. Opens the document first if needed."""
        self._require_ready()
        if uri not in self._open:
            return await self.open(uri, text)
        version = self._next_version(uri)
        self._expect_diagnostics(uri)
        await self._transport.notify(
            "textDocument/didChange",
            {
                "textDocument": {"uri": uri, "version": version},
                "contentChanges": [{"text": text}],
            },
        )
        return version

    async def save(self, uri: str, text: str | None = None) -> None:
        self._require_ready()
        params: dict[str, Any] = {"textDocument": {"uri": uri}}
        if text is not None:
            params["text"] = text
        await self._transport.notify("textDocument/didSave", params)

    async def close(self, uri: str) -> None:
        """Close a document. Its version counter is kept so reopening continues upward."""
        if uri not in self._open:
            return
        self._open.discard(uri)
        self._require_ready()
        await self._transport.notify("textDocument/didClose", {"textDocument": {"uri": uri}})

    # Diagnostics

    def diagnostics(self, uri: str) -> list[Diagnostic]:
        return list(self._diagnostics.get(uri, ()))

    def all_diagnostics(self) -> dict[str, list[Diagnostic]]:
        return {uri: list(items) for uri, items in self._diagnostics.items()}

    def diagnostic_summary(self) -> dict[str, int]:
        return summarize(d for items in self._diagnostics.values() for d in items)

    async def wait_for_diagnostics(self, uri: str, timeout: float) -> list[Diagnostic]:
        """Wait until diagnostics for ``uri`` arrive after the last open/change.

        Returns whatever is cached when the timeout elapses. Never raises.
        """
        event = self._published.get(uri)
        if event is None:
            event = self._published[uri] = asyncio.Event()
        if not event.is_set() and self.state is ClientState.READY:
            try:
                await asyncio.wait_for(event.wait(), timeout)
            except TimeoutError:
                _log.debug("%s: no diagnostics for %s within %.1fs", self.server_id, uri, timeout)
        return self.diagnostics(uri)

    def _on_publish_diagnostics(self, params: Any) -> None:
        if not isinstance(params, dict) or "uri" not in params:
            return
        uri = params["uri"]
        items = [
            Diagnostic.from_wire(uri, d)
            for d in params.get("diagnostics") or []
            if isinstance(d, dict)
        ]
        # Whole-set replacement for the URI
        self._diagnostics[uri] = items
        event = self._published.get(uri)
        if event is None:
            event = self._published[uri] = asyncio.Event()
        event.set()
        for listener in self._listeners:
            try:
                listener(uri, items)
            except Exception:
                _log.exception("Diagnostics listener failed")

    def _on_log_message(self, params: Any) -> None:
        if isinstance(params, dict):
            _log.debug("[%s] %s", self.server_id, params.get("message", ""))

    def _on_configuration(self, params: Any) -> list[Any]:
        items = params.get("items", []) if isinstance(params, dict) else []
        return [None for _ in items]

    # Code intelligence (1-based positions in, wire positions out)

    def _position_params(self, uri: str, line: int, column: int) -> dict[str, Any]:
        return {"textDocument": {"uri": uri}, "position": to_wire(line, column)}

    async def _query(self, method: str, params: dict[str, Any]) -> Any:
        self._require_ready()
        return await self._transport.request(method, params, timeout=self.request_timeout)

    async def definition(self, uri: str, line: int, column: int) -> list[dict[str, Any]]:
        result = await self._query("textDocument/definition", self._position_params(uri, line, column))
        return flatten_locations(result)

    async def references(
        self, uri: str, line: int, column: int, *, include_declaration: bool = True
    ) -> list[dict[str, Any]]:
        params = self._position_params(uri, line, column)
        params["context"] = {"includeDeclaration": include_declaration}
        return flatten_locations(await self._query("textDocument/references", params))

    async def hover(self, uri: str, line: int, column: int) -> str | None:
        result = await self._query("textDocument/hover", self._position_params(uri, line, column))
        return hover_text(result)

    async def document_symbols(self, uri: str) -> list[dict[str, Any]]:
        result = await self._query("textDocument/documentSymbol", {"textDocument": {"uri": uri}})
        return result if isinstance(result, list) else []

    async def workspace_symbols(self, query: str) -> list[dict[str, Any]]:
        result = await self._query("workspace/symbol", {"query": query})
        return result if isinstance(result, list) else []

    # Lifecycle

    def _require_ready(self) -> None:
        if self.state is not ClientState.READY:
            raise LspProtocolError(f"{self.server_id}: client is {self.state.value}")

    def _mark_broken(self) -> None:
        if self.state is ClientState.STOPPED:
            return
        self.state = ClientState.BROKEN
        for event in self._published.values():
            event.set()

    def _on_transport_closed(self, error: LspProtocolError) -> None:
        if self.state is not ClientState.STOPPED:
            _log.warning("Language server %s lost: %s", self.server_id, error)
            self._mark_broken()

    async def shutdown(self) -> None:
        """Polite shutdown (shutdown request, exit notification), then stop the process."""
        was_ready = self.state is ClientState.READY
        self.state = ClientState.STOPPED
        if was_ready and not self._transport.closed:
            try:
                await self._transport.request("shutdown", None, timeout=self.shutdown_timeout)
                await self._transport.notify("exit")
            except AgentError as e:
                _log.debug("%s: shutdown handshake failed: %s", self.server_id, e)
        await self._transport.close()
        for event in self._published.values():
            event.set()
        await self._stop_process()

    async def _stop_process(self) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return
        try:
            await asyncio.wait_for(process.wait(), self.shutdown_timeout)
            return
        except TimeoutError:
            pass
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), self.shutdown_timeout)
        except ProcessLookupError:
            return
        except TimeoutError:
            process.kill()
            await process.wait()
