"""Tests for the JSON-RPC transport."""

from __future__ import annotations

import asyncio

import pytest

from codeagent.errors import LspProtocolError, LspRequestTimeout, RpcResponseError
from codeagent.lsp.transport import RpcTransport
from tests.utils import FakeLanguageServer


@pytest.fixture
async def server() -> FakeLanguageServer:
    return FakeLanguageServer()


@pytest.fixture
async def transport(server: FakeLanguageServer):
    t = RpcTransport(server.reader, server.writer, name="test", default_timeout=1.0)  # type: ignore[arg-type]
    t.start()
    yield t
    await t.close()


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class TestRequests:
    """Request/response correlation."""

    async def test_request_returns_result(self, server, transport) -> None:
        server.handlers["echo"] = lambda params: {"got": params}
        result = await transport.request("echo", {"x": 1})
        assert result == {"got": {"x": 1}}
        assert transport.pending_count == 0

    async def test_ids_are_unique_and_increasing(self, server, transport) -> None:
        server.handlers["ping"] = lambda params: "pong"
        await transport.request("ping")
        await transport.request("ping")
        ids = [r["id"] for r in server.requests]
        assert ids == sorted(set(ids))

    async def test_concurrent_requests_resolve_independently(self, server, transport) -> None:
        server.handlers["double"] = lambda params: params["n"] * 2
        results = await asyncio.gather(*(transport.request("double", {"n": n}) for n in range(5)))
        assert results == [0, 2, 4, 6, 8]

    async def test_error_response_raises(self, server, transport) -> None:
        def fail(params):
            raise ValueError("bad input")

        server.handlers["fail"] = fail
        with pytest.raises(RpcResponseError) as info:
            await transport.request("fail")
        assert info.value.code == -32000
        assert "bad input" in info.value.message

    async def test_timeout_removes_pending_entry(self, server, transport) -> None:
        server.silent.add("slow")
        with pytest.raises(LspRequestTimeout) as info:
            await transport.request("slow", timeout=0.05)
        assert info.value.method == "slow"
        assert transport.pending_count == 0

    async def test_late_response_is_ignored(self, server, transport) -> None:
        """A response arriving after the timeout does not disturb the transport."""
        server.silent.add("slow")
        with pytest.raises(LspRequestTimeout):
            await transport.request("slow", timeout=0.05)
        late_id = server.requests[-1]["id"]
        server.send({"jsonrpc": "2.0", "id": late_id, "result": "late"})
        server.handlers["ping"] = lambda params: "pong"
        assert await transport.request("ping") == "pong"


class TestNotifications:
    """Server-to-client notifications and client notifications."""

    async def test_notification_handler_receives_params(self, server, transport) -> None:
        received = []
        transport.on_notification("window/logMessage", received.append)
        server.send({"jsonrpc": "2.0", "method": "window/logMessage", "params": {"message": "hi"}})
        await _settle()
        assert received == [{"message": "hi"}]

    async def test_async_notification_handler(self, server, transport) -> None:
        received = asyncio.Event()

        async def handler(params) -> None:
            received.set()

        transport.on_notification("custom/event", handler)
        server.send({"jsonrpc": "2.0", "method": "custom/event"})
        await asyncio.wait_for(received.wait(), 1)

    async def test_failing_handler_does_not_stop_listener(self, server, transport) -> None:
        def broken(params) -> None:
            raise RuntimeError("boom")

        transport.on_notification("custom/event", broken)
        server.send({"jsonrpc": "2.0", "method": "custom/event"})
        server.handlers["ping"] = lambda params: "pong"
        assert await transport.request("ping") == "pong"

    async def test_notify_sends_without_id(self, server, transport) -> None:
        await transport.notify("initialized", {})
        assert server.notifications[-1] == {"jsonrpc": "2.0", "method": "initialized", "params": {}}


class TestServerRequests:
    """Requests initiated by the server."""

    async def test_unknown_method_answered_with_method_not_found(self, server, transport) -> None:
        server.send({"jsonrpc": "2.0", "id": 99, "method": "unknown/thing"})
        await _settle()
        assert server.responses[-1]["id"] == 99
        assert server.responses[-1]["error"]["code"] == -32601

    async def test_registered_handler_result_is_sent(self, server, transport) -> None:
        transport.on_request("workspace/configuration", lambda params: [None])
        server.send({"jsonrpc": "2.0", "id": 7, "method": "workspace/configuration", "params": {}})
        await _settle()
        assert server.responses[-1] == {"jsonrpc": "2.0", "id": 7, "result": [None]}

    async def test_handler_exception_becomes_internal_error(self, server, transport) -> None:
        def broken(params):
            raise RuntimeError("nope")

        transport.on_request("client/registerCapability", broken)
        server.send({"jsonrpc": "2.0", "id": 8, "method": "client/registerCapability"})
        await _settle()
        assert server.responses[-1]["error"]["code"] == -32603


class TestClose:
    """Failure propagation when the stream ends or breaks."""

    async def test_eof_fails_pending_requests(self, server, transport) -> None:
        server.silent.add("slow")
        pending = asyncio.ensure_future(transport.request("slow", timeout=5))
        await _settle()
        server.crash()
        with pytest.raises(LspProtocolError, match="closed"):
            await pending
        assert transport.closed

    async def test_close_callback_fires_once(self, server, transport) -> None:
        reasons = []
        transport.add_close_callback(reasons.append)
        server.crash()
        await _settle()
        await transport.close()
        assert len(reasons) == 1

    async def test_close_callback_after_close_fires_immediately(self, server, transport) -> None:
        server.crash()
        await _settle()
        reasons = []
        transport.add_close_callback(reasons.append)
        assert len(reasons) == 1

    async def test_malformed_frame_closes_transport(self, server, transport) -> None:
        server.reader.feed_data(b"Content-Length: nope\r\n\r\n{}")
        await _settle()
        assert transport.closed
        assert "Invalid Content-Length" in str(transport.close_reason)

    async def test_request_after_close_raises(self, server, transport) -> None:
        await transport.close()
        with pytest.raises(LspProtocolError):
            await transport.request("ping")
        with pytest.raises(LspProtocolError):
            await transport.notify("exit")


class TestMalformedResponses:
    """Responses with an unusable error object close the transport."""

    @pytest.mark.parametrize(
        "error",
        ["boom", {"code": "-32000", "message": "x"}, {"message": "no code"}, ["list"]],
    )
    async def test_bad_error_object_fails_pending(self, server, transport, error) -> None:
        reasons = []
        transport.add_close_callback(reasons.append)
        server.silent.update({"slow", "other"})
        first = asyncio.ensure_future(transport.request("slow", timeout=5))
        second = asyncio.ensure_future(transport.request("other", timeout=5))
        await _settle()

        server.send({"jsonrpc": "2.0", "id": server.requests[0]["id"], "error": error})

        for pending in (first, second):
            with pytest.raises(LspProtocolError, match="malformed error response"):
                await pending
        assert transport.closed
        assert len(reasons) == 1

    async def test_dispatch_failure_closes_transport(self, server, transport) -> None:
        server.silent.add("slow")
        pending = asyncio.ensure_future(transport.request("slow", timeout=5))
        await _settle()
        server.send({"jsonrpc": "2.0", "method": ["not", "a", "string"], "params": {}})
        with pytest.raises(LspProtocolError):
            await pending
        assert transport.closed
