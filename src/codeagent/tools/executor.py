"""Batch execution of tool calls from one model turn.

Calls are partitioned by resource key. Calls sharing a key run strictly in
issue order under a per-key lock that persists across batches; everything
else runs concurrently on the worker pool. Results always come back in the
order the calls were issued, and no handler failure escapes as an exception.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from pydantic import BaseModel, ValidationError

from codeagent.config.schema import ToolsConfig
from codeagent.core.locks import KeyedLocks
from codeagent.core.llm.provider import ToolCall
from codeagent.errors import PermissionDenied, ToolExecutionError, ToolTimeoutError
from codeagent.tools.permissions import PermissionManager
from codeagent.tools.pool import WorkerPool
from codeagent.tools.registry import ToolContext, ToolRegistry, ToolSpec
from codeagent.tools.result import ResultKind, ToolOutput, ToolResult

_log = logging.getLogger("codeagent.tools")

ToolEventCallback = Callable[[str, ToolCall, ToolResult | None], None]


@dataclass
class _Prepared:
    index: int
    call: ToolCall
    spec: ToolSpec | None = None
    args: BaseModel | None = None
    key: str | None = None
    early: ToolResult | None = None


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolExecutor:
    def __init__(
        self,
        registry: ToolRegistry,
        context: ToolContext,
        *,
        permissions: PermissionManager | None = None,
        config: ToolsConfig | None = None,
        pool: WorkerPool | None = None,
    ) -> None:
        self.registry = registry
        self.context = context
        self.permissions = permissions or PermissionManager()
        self.config = config or ToolsConfig()
        self.pool = pool or WorkerPool(self.config.max_workers, self.config.queue_size)
        self._key_locks = KeyedLocks()
        self._inflight: set[asyncio.Future[object]] = set()

    def _prepare(self, index: int, call: ToolCall) -> _Prepared:
        item = _Prepared(index, call)
        spec = self.registry.get(call.name)
        if spec is None:
            item.early = ToolResult.error(call.id, call.name, f"Error: unknown tool '{call.name}'")
            return item
        item.spec = spec
        if call.arguments is None:
            item.early = ToolResult.error(
                call.id, call.name, f"Error: arguments for '{call.name}' are not a valid JSON object"
            )
            return item
        try:
            item.args = spec.params.model_validate(call.arguments)
        except ValidationError as e:
            item.early = ToolResult.error(
                call.id, call.name, f"Error: invalid arguments: {_format_validation_error(e)}"
            )
            return item
        try:
            item.key = spec.key_for(item.args, self.context)
        except Exception as e:
            _log.exception("resource_key for %s failed", call.name)
            item.early = ToolResult.error(call.id, call.name, f"Error: {e}")
        return item

    async def execute_batch(
        self,
        calls: Sequence[ToolCall],
        *,
        plan_mode: bool = False,
        on_event: ToolEventCallback | None = None,
    ) -> list[ToolResult]:
        """Run every call in the batch and return results in call order."""
        prepared = [self._prepare(i, call) for i, call in enumerate(calls)]
        results: list[ToolResult | None] = [p.early for p in prepared]

        groups: dict[str, list[_Prepared]] = {}
        independent: list[_Prepared] = []
        for item in prepared:
            if item.early is not None:
                continue
            if item.key is None:
                independent.append(item)
            else:
                groups.setdefault(item.key, []).append(item)

        async def run_single(item: _Prepared) -> None:
            results[item.index] = await self._run(item, plan_mode, on_event)

        async def run_group(key: str, items: list[_Prepared]) -> None:
            async with self._key_locks.hold(key):
                for item in items:
                    results[item.index] = await self._run(item, plan_mode, on_event)

        futures: list[asyncio.Future[None]] = []
        try:
            for item in independent:
                futures.append(await self.pool.submit(lambda item=item: run_single(item)))
            for key, items in groups.items():
                futures.append(await self.pool.submit(lambda k=key, its=items: run_group(k, its)))
            self._inflight.update(futures)
            await asyncio.gather(*futures)
        except asyncio.CancelledError:
            for future in futures:
                future.cancel()
            raise
        finally:
            self._inflight.difference_update(futures)

        return [
            r if r is not None else ToolResult.cancelled(c.id, c.name)
            for r, c in zip(results, calls)
        ]

    def cancel(self) -> int:
        """Cancel every in-flight call and pending approval prompt."""
        cancelled = 0
        for future in list(self._inflight):
            if not future.done():
                future.cancel()
                cancelled += 1
        self.permissions.cancel_pending()
        return cancelled

    async def _run(
        self, item: _Prepared, plan_mode: bool, on_event: ToolEventCallback | None
    ) -> ToolResult:
        call, spec, args = item.call, item.spec, item.args
        assert spec is not None and args is not None

        try:
            await self.permissions.authorize(
                call.id, call.name, call.arguments or {}, spec.safety, plan_mode=plan_mode
            )
        except PermissionDenied as e:
            _log.info("Denied %s: %s", call.name, e.reason)
            return ToolResult.denied(call.id, call.name, e.reason)

        if on_event is not None:
            on_event("started", call, None)

        timeout = spec.timeout or self.config.call_timeout
        start = time.perf_counter()
        try:
            output = await asyncio.wait_for(spec.handler(args, self.context), timeout)
            result = self._to_result(call, output)
        except TimeoutError:
            error = ToolTimeoutError(call.name, timeout)
            result = ToolResult(call.id, call.name, f"Error: {error}", ResultKind.TIMEOUT)
        except ToolExecutionError as e:
            result = ToolResult.error(call.id, call.name, f"Error: {e}")
        except Exception as e:
            _log.exception("Tool %s failed", call.name)
            result = ToolResult.error(call.id, call.name, f"Error: {type(e).__name__}: {e}")
        result.duration_ms = (time.perf_counter() - start) * 1000

        if on_event is not None:
            on_event("finished", call, result)
        return result

    def _to_result(self, call: ToolCall, output: ToolOutput | str) -> ToolResult:
        if isinstance(output, str):
            output = ToolOutput(output)
        content = output.content
        limit = self.config.max_output_chars
        if len(content) > limit:
            content = content[:limit] + f"\n... (output truncated, {len(output.content) - limit} chars omitted)"
        kind = ResultKind.ERROR if output.is_error else ResultKind.OK
        return ToolResult(call.id, call.name, content, kind)

    async def close(self) -> None:
        await self.pool.close()
