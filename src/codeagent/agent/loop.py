"""The reasoning/acting loop.

Each iteration sends the conversation to the model. A reply without tool
calls ends the run. Otherwise the calls go to the tool executor and every
result is appended, in call order, before the next model request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from codeagent.config.schema import AgentConfig
from codeagent.core.llm.provider import LlmGateway, LlmRequest, LlmResponse, Message, Role, ToolCall
from codeagent.core.tokens import count_tools_tokens
from codeagent.errors import ModelError
from codeagent.agent.loop_guard import DoomLoopDetector
from codeagent.agent.protocols import (
    AgentRunResult,
    AgentState,
    AgentUpdate,
    FailureReason,
    UpdateKind,
    UpdateListener,
)
from codeagent.session.compactor import SessionCompactor
from codeagent.session.stats import SessionStats
from codeagent.session.store import ConversationStore
from codeagent.tools.executor import ToolExecutor
from codeagent.tools.result import ResultKind, ToolResult

_log = logging.getLogger("codeagent.agent")


class _Failed(Exception):
    def __init__(self, reason: FailureReason, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


class AgentLoop:
    """Drives one session. Runs are sequential; at most one model call is in flight."""

    def __init__(
        self,
        store: ConversationStore,
        gateway: LlmGateway,
        executor: ToolExecutor,
        *,
        compactor: SessionCompactor | None = None,
        stats: SessionStats | None = None,
        config: AgentConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.executor = executor
        self.compactor = compactor
        self.stats = stats
        self.config = config or AgentConfig()
        self._sleep = sleep
        self._listeners: list[UpdateListener] = []
        self._state = AgentState.IDLE
        self._task: asyncio.Task[AgentRunResult] | None = None
        self._cancel_reason: str | None = None
        self._guard = DoomLoopDetector(self.config.doom_loop_threshold)
        self._steps = 0
        self._final_text = ""

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_listener(self, listener: UpdateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unregister() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unregister

    def _emit(self, kind: UpdateKind, **payload: object) -> None:
        update = AgentUpdate(kind=kind, session_id=self.store.id, payload=dict(payload))
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                _log.exception("Update listener failed")

    def _set_state(self, state: AgentState) -> None:
        if state is not self._state:
            self._state = state
            self._emit(UpdateKind.STATE_CHANGED, state=state.value)

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Abandon the current run. Safe to call from any task; no-op when idle."""
        if not self.running:
            return False
        self._cancel_reason = reason
        self.executor.cancel()
        assert self._task is not None
        self._task.cancel()
        return True

    async def run(self, user_input: str) -> AgentRunResult:
        """Append the user's message and iterate until DONE or FAILED."""
        if self.running:
            raise RuntimeError("agent loop is already running")
        self._task = asyncio.ensure_future(self._run(user_input))
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            # The caller was cancelled; let the loop record the cancellation first
            if not self._task.done():
                self.cancel("caller cancelled")
                await asyncio.wait({self._task})
            raise

    async def _run(self, user_input: str) -> AgentRunResult:
        self._cancel_reason = None
        self._guard.reset()
        self.store.append(Message(Role.USER, user_input, originator="user"))
        self._set_state(AgentState.AWAITING_MODEL)
        try:
            final_text = await self._iterate()
            result = AgentRunResult(AgentState.DONE, final_text=final_text, steps=self._steps)
        except _Failed as e:
            _log.warning("Run failed (%s): %s", e.reason.value, e.detail)
            self._emit(UpdateKind.ERROR, reason=e.reason.value, detail=e.detail)
            result = AgentRunResult(
                AgentState.FAILED, e.reason, self._final_text, self._steps, e.detail
            )
        except asyncio.CancelledError:
            if self._cancel_reason is None:
                raise
            self._fill_cancelled_results(self._cancel_reason)
            self._emit(UpdateKind.ERROR, reason=FailureReason.CANCELLED.value, detail=self._cancel_reason)
            result = AgentRunResult(
                AgentState.FAILED,
                FailureReason.CANCELLED,
                self._final_text,
                self._steps,
                self._cancel_reason,
            )
        finally:
            self.store.save()
        self._set_state(result.state)
        return result

    async def _iterate(self) -> str:
        self._steps = 0
        self._final_text = ""
        consecutive_errors = 0

        while True:
            if self._steps >= self.config.max_steps:
                raise _Failed(
                    FailureReason.STEP_LIMIT,
                    f"stopped after reaching the limit of {self.config.max_steps} steps",
                )

            plan_mode = self.store.session.plan_mode
            tools = self.executor.registry.schemas(read_only=plan_mode)
            await self._compact_if_needed(count_tools_tokens(tools))

            request = LlmRequest(
                system_prompt=self.store.system_prompt,
                messages=self.store.conversation(),
                tools=tools,
            )
            self._steps += 1
            self.store.record_step()
            self._set_state(AgentState.AWAITING_MODEL)
            response = await self._call_model(request)
            if self.stats is not None:
                self.stats.record_usage(response.usage)
            self._final_text = response.content

            calls = response.tool_calls
            if not calls:
                self.store.append(Message(Role.ASSISTANT, response.content, originator="agent"))
                return response.content

            self.store.append(
                Message(Role.ASSISTANT, response.content, tool_calls=tuple(calls), originator="agent")
            )

            if self._guard.record(calls):
                self.store.extend(
                    ToolResult.error(c.id, c.name, "Error: not executed, identical to the previous calls").to_message()
                    for c in calls
                )
                raise _Failed(
                    FailureReason.DOOM_LOOP,
                    f"model repeated the same tool calls {self._guard.threshold} times",
                )

            self._set_state(AgentState.EXECUTING_TOOLS)
            results = await self.executor.execute_batch(
                calls, plan_mode=plan_mode, on_event=self._on_tool_event
            )
            self.store.extend(r.to_message() for r in results)

            for result in results:
                if result.counts_as_failure:
                    consecutive_errors += 1
                elif result.kind is ResultKind.OK:
                    consecutive_errors = 0
            if consecutive_errors > self.config.max_consecutive_tool_errors:
                raise _Failed(
                    FailureReason.TOOL_ERRORS,
                    f"{consecutive_errors} consecutive tool errors "
                    f"(limit {self.config.max_consecutive_tool_errors})",
                )

    async def _compact_if_needed(self, extra_tokens: int) -> None:
        if self.compactor is None:
            return
        result = await self.compactor.maybe_compact(self.store, extra_tokens)
        if result.compacted:
            self._emit(
                UpdateKind.COMPACTED,
                dropped=result.dropped,
                tokens_before=result.tokens_before,
                tokens_after=result.tokens_after,
                policy=result.policy.value if result.policy else None,
            )

    async def _call_model(self, request: LlmRequest) -> LlmResponse:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    self.gateway.complete(request, self._on_delta), self.config.model_timeout
                )
            except TimeoutError:
                error = ModelError(
                    f"model call timed out after {self.config.model_timeout:g}s", retryable=True
                )
            except ModelError as e:
                error = e

            if not error.retryable:
                raise _Failed(FailureReason.MODEL_ERROR, str(error))
            if attempt >= self.config.max_model_retries:
                raise _Failed(
                    FailureReason.MODEL_ERROR,
                    f"{error} (gave up after {attempt + 1} attempts)",
                )
            delay = min(self.config.retry_base_delay * (2**attempt), self.config.retry_max_delay)
            attempt += 1
            _log.info("Model call failed (%s); retry %d in %.1fs", error, attempt, delay)
            self._emit(UpdateKind.RETRYING, attempt=attempt, delay=delay, error=str(error))
            await self._sleep(delay)

    def _on_delta(self, text: str) -> None:
        self._emit(UpdateKind.RESPONSE_CHUNK, text=text)

    def _on_tool_event(self, event: str, call: ToolCall, result: ToolResult | None) -> None:
        if event == "started":
            self._emit(UpdateKind.TOOL_STARTED, call_id=call.id, tool=call.name)
        elif result is not None:
            self._emit(
                UpdateKind.TOOL_FINISHED,
                call_id=call.id,
                tool=call.name,
                kind=result.kind.value,
                duration_ms=result.duration_ms,
            )

    def _fill_cancelled_results(self, reason: str) -> None:
        pending = set(self.store.pending_tool_calls())
        if not pending:
            return
        last_assistant = next(
            m for m in reversed(self.store.messages) if m.role is Role.ASSISTANT
        )
        for call in last_assistant.tool_calls:
            if call.id in pending:
                self.store.append(ToolResult.cancelled(call.id, call.name, reason).to_message())
