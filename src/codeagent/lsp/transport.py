"""JSON-RPC 2.0 transport over a language server's stdio.

One listener task per transport reads framed messages and routes them:

- responses resolve the matching entry in the pending-request table
- notifications go to handlers registered by method
- server-to-client requests are answered by registered request handlers,
  or with a method-not-found error

On EOF or a malformed frame the transport fails every pending request,
marks itself closed and stops. It never tries to resynchronize.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from codeagent.errors import LspProtocolError, LspRequestTimeout, RpcResponseError
from codeagent.lsp.framing import DEFAULT_MAX_MESSAGE_SIZE, read_message, write_message

_log = logging.getLogger("codeagent.lsp.transport")

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

NotificationHandler = Callable[[Any], Awaitable[None] | None]
RequestHandler = Callable[[Any], Awaitable[Any] | Any]
CloseCallback = Callable[[LspProtocolError], None]


class RpcTransport:
    """Request/response and notification multiplexing over one stream pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        name: str = "lsp",
        default_timeout: float = 5.0,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.name = name
        self.default_timeout = default_timeout
        self._max_message_size = max_message_size

        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._notification_handlers: dict[str, list[NotificationHandler]] = {}
        self._request_handlers: dict[str, RequestHandler] = {}
        self._close_callbacks: list[CloseCallback] = []
        self._write_lock = asyncio.Lock()
        self._listener: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self.close_reason: LspProtocolError | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the listener task. Idempotent."""
        if self._listener is None:
            self._listener = asyncio.create_task(
                self._listen(), name=f"rpc-listener:{self.name}"
            )

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        self._notification_handlers.setdefault(method, []).append(handler)

    def on_request(self, method: str, handler: RequestHandler) -> None:
        self._request_handlers[method] = handler

    def add_close_callback(self, callback: CloseCallback) -> None:
        """Register a callback fired once when the transport closes."""
        if self._closed and self.close_reason is not None:
            callback(self.close_reason)
            return
        self._close_callbacks.append(callback)

    async def request(self, method: str, params: Any = None, *, timeout: float | None = None) -> Any:
        """Send a request and wait for its result.

        Raises:
            LspRequestTimeout: No response within ``timeout`` seconds.
            RpcResponseError: The server answered with an error object.
            LspProtocolError: The transport is or became closed.
        """
        if self._closed:
            raise LspProtocolError(f"{self.name}: transport is closed")

        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        msg: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            msg["params"] = params

        limit = self.default_timeout if timeout is None else timeout
        try:
            await self._send(msg)
            return await asyncio.wait_for(future, limit)
        except TimeoutError:
            _log.debug("%s: request %s (%s) timed out", self.name, request_id, method)
            raise LspRequestTimeout(method, limit) from None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Any = None) -> None:
        if self._closed:
            raise LspProtocolError(f"{self.name}: transport is closed")
        msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        await self._send(msg)

    async def close(self) -> None:
        """Close the transport, failing anything still pending."""
        self._fail(LspProtocolError(f"{self.name}: transport closed"))
        listener = self._listener
        if listener is not None and listener is not asyncio.current_task() and not listener.done():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        for task in list(self._handler_tasks):
            task.cancel()
        try:
            self._writer.close()
        except (OSError, RuntimeError) as e:
            _log.debug("%s: error closing writer: %s", self.name, e)

    async def _send(self, msg: dict[str, Any]) -> None:
        async with self._write_lock:
            try:
                await write_message(self._writer, msg)
            except (ConnectionError, OSError, RuntimeError) as e:
                error = LspProtocolError(f"{self.name}: write failed: {e}")
                self._fail(error)
                raise error from e

    def _fail(self, error: LspProtocolError) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_reason = error

        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(error)
            except Exception:
                _log.exception("%s: close callback failed", self.name)

    async def _listen(self) -> None:
        while True:
            try:
                msg = await read_message(self._reader, max_message_size=self._max_message_size)
            except LspProtocolError as e:
                _log.warning("%s: protocol error, closing: %s", self.name, e)
                self._fail(e)
                return
            except (ConnectionError, OSError) as e:
                self._fail(LspProtocolError(f"{self.name}: read failed: {e}"))
                return

            if msg is None:
                _log.debug("%s: server closed its output", self.name)
                self._fail(LspProtocolError(f"{self.name}: server closed the connection"))
                return

            try:
                self._dispatch(msg)
            except LspProtocolError as e:
                _log.warning("%s: malformed message, closing: %s", self.name, e)
                self._fail(e)
                return
            except Exception as e:
                _log.exception("%s: failed to dispatch message", self.name)
                self._fail(LspProtocolError(f"{self.name}: failed to dispatch message: {e}"))
                return

    def _dispatch(self, msg: dict[str, Any]) -> None:
        method = msg.get("method")
        if method is None:
            self._handle_response(msg)
        elif "id" in msg:
            task = asyncio.create_task(self._handle_server_request(msg))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        else:
            self._handle_notification(method, msg.get("params"))

    def _handle_response(self, msg: dict[str, Any]) -> None:
        request_id = msg.get("id")
        future = self._pending.get(request_id) if isinstance(request_id, int) else None
        if future is None:
            _log.debug("%s: response for unknown or expired id %r", self.name, request_id)
            return
        if future.done():
            return
        error = msg.get("error")
        if error is not None:
            code = error.get("code") if isinstance(error, dict) else None
            if not isinstance(code, int) or isinstance(code, bool):
                raise LspProtocolError(f"{self.name}: malformed error response for id {request_id}: {error!r}")
            future.set_exception(RpcResponseError(code, str(error.get("message", "")), error.get("data")))
        else:
            future.set_result(msg.get("result"))

    def _handle_notification(self, method: str, params: Any) -> None:
        handlers = self._notification_handlers.get(method)
        if not handlers:
            _log.debug("%s: unhandled notification %s", self.name, method)
            return
        for handler in handlers:
            try:
                result = handler(params)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._notification_done)
            except Exception:
                _log.exception("%s: notification handler for %s failed", self.name, method)

    def _notification_done(self, task: asyncio.Task[Any]) -> None:
        self._handler_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _log.error("%s: async notification handler failed: %s", self.name, task.exception())

    async def _handle_server_request(self, msg: dict[str, Any]) -> None:
        method = msg["method"]
        handler = self._request_handlers.get(method)
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": msg["id"]}
        if handler is None:
            reply["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}
        else:
            try:
                result = handler(msg.get("params"))
                if inspect.isawaitable(result):
                    result = await result
                reply["result"] = result
            except Exception as e:
                _log.exception("%s: request handler for %s failed", self.name, method)
                reply["error"] = {"code": INTERNAL_ERROR, "message": str(e)}
        if self._closed:
            return
        try:
            await self._send(reply)
        except LspProtocolError as e:
            _log.debug("%s: could not answer %s: %s", self.name, method, e)
