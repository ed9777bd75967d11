"""Tests for the agent loop."""

from __future__ import annotations

import asyncio
import itertools
from pathlib import Path

import pytest
from pydantic import BaseModel

from codeagent.agent.loop import AgentLoop
from codeagent.agent.loop_guard import DoomLoopDetector
from codeagent.agent.protocols import AgentState, FailureReason, UpdateKind
from codeagent.config.schema import AgentConfig, CompactionConfig, ToolsConfig
from codeagent.core.llm.provider import Role
from codeagent.errors import ModelError
from codeagent.session.compactor import SessionCompactor
from codeagent.session.storage import MemorySessionStorage
from codeagent.session.store import ConversationStore
from codeagent.tools.builtin import files
from codeagent.tools.executor import ToolExecutor
from codeagent.tools.permissions import ApprovalDecision, ApprovalRequest, PermissionManager
from codeagent.tools.registry import ToolContext, ToolRegistry, ToolSpec
from codeagent.tools.result import ToolOutput
from tests.utils import FakeGateway, call, reply


class WaitParams(BaseModel):
    seconds: float = 0.0
    tag: str = ""


class FailParams(BaseModel):
    tag: str = ""


async def wait_tool(params: WaitParams, ctx: ToolContext) -> str:
    await asyncio.sleep(params.seconds)
    return f"waited {params.tag}"


async def fail_tool(params: FailParams, ctx: ToolContext) -> ToolOutput:
    return ToolOutput(f"failed {params.tag}", is_error=True)


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    for spec in files.TOOLS:
        registry.register(spec)
    registry.register(ToolSpec("wait", "Wait a while.", WaitParams, wait_tool))
    registry.register(ToolSpec("fail", "Always fails.", FailParams, fail_tool))
    return registry.freeze()


class Harness:
    """A loop wired to a scripted gateway and recorded sleeps."""

    def __init__(
        self,
        root: Path,
        script: list,
        *,
        approval=None,
        agent_mode: str = "build",
        compactor: SessionCompactor | None = None,
        **agent_config,
    ) -> None:
        self.gateway = FakeGateway(script)
        self.storage = MemorySessionStorage()
        self.store = ConversationStore.create(
            self.storage,
            working_directory=root,
            model=self.gateway.model,
            system_prompt="You are a coding agent.",
            agent_mode=agent_mode,
        )
        self.executor = ToolExecutor(
            _registry(),
            ToolContext(working_directory=root),
            permissions=PermissionManager(approval=approval),
            config=ToolsConfig(call_timeout=5),
        )
        self.sleeps: list[float] = []
        self.updates = []
        self.loop = AgentLoop(
            self.store,
            self.gateway,
            self.executor,
            compactor=compactor,
            config=AgentConfig(**agent_config),
            sleep=self._sleep,
        )
        self.loop.add_listener(self.updates.append)

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    def kinds(self) -> list[UpdateKind]:
        return [u.kind for u in self.updates]

    def roles(self) -> list[Role]:
        return [m.role for m in self.store.messages]


@pytest.fixture
async def harnesses():
    created: list[Harness] = []
    yield created
    for h in created:
        await h.executor.close()


@pytest.fixture
def make(tmp_path: Path, harnesses):
    def _make(script: list, **kwargs) -> Harness:
        h = Harness(tmp_path, script, **kwargs)
        harnesses.append(h)
        return h

    return _make


async def _allow(request: ApprovalRequest) -> ApprovalDecision:
    return ApprovalDecision.ALLOW


def _numbered(make_reply):
    """A script entry that builds a fresh reply on every call."""
    counter = itertools.count()
    return lambda request: make_reply(next(counter))


def _distinct_waits():
    return _numbered(lambda n: reply("", call(f"c{n}", "wait", tag=str(n))))


class TestCompletion:
    async def test_text_reply_finishes(self, make) -> None:
        h = make([reply("All done.")])
        result = await h.loop.run("say hi")
        assert result.ok
        assert result.state is AgentState.DONE
        assert result.final_text == "All done."
        assert result.steps == 1
        assert h.roles() == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
        assert h.loop.state is AgentState.DONE

    async def test_write_with_approval_reaches_done(self, make, tmp_path) -> None:
        asked: list[str] = []

        async def approve(request: ApprovalRequest) -> ApprovalDecision:
            asked.append(request.tool_name)
            return ApprovalDecision.ALLOW

        h = make(
            [
                reply("Writing it.", call("w1", "write_file", path="hello.py", content="print('hi')\n")),
                reply("Created hello.py."),
            ],
            approval=approve,
        )
        result = await h.loop.run("create hello.py")

        assert result.ok
        assert (tmp_path / "hello.py").read_text() == "print('hi')\n"
        assert asked == ["write_file"]
        assert h.roles() == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        tool_message = h.store.messages[3]
        assert tool_message.tool_call_id == "w1"
        assert tool_message.content.startswith("Created hello.py")
        # The second request carries the tool result
        second = h.gateway.requests[1]
        assert second.messages[-1].tool_call_id == "w1"
        assert second.system_prompt == "You are a coding agent."

    async def test_results_appended_in_call_order(self, make) -> None:
        h = make(
            [
                reply(
                    "",
                    call("a", "wait", seconds=0.05, tag="slow"),
                    call("b", "wait", seconds=0.0, tag="fast"),
                ),
                reply("ok"),
            ]
        )
        await h.loop.run("go")
        tool_ids = [m.tool_call_id for m in h.store.messages if m.role is Role.TOOL]
        assert tool_ids == ["a", "b"]

    async def test_session_step_count_accumulates(self, make) -> None:
        h = make([reply("", call("a", "wait")), reply("one"), reply("two")])
        await h.loop.run("first")
        await h.loop.run("second")
        assert h.store.session.step_count == 3
        assert h.storage.load_session(h.store.id).step_count == 3


class TestLimits:
    async def test_step_limit_is_exact(self, make) -> None:
        h = make([_distinct_waits()] * 10, max_steps=3)
        result = await h.loop.run("loop forever")
        assert result.state is AgentState.FAILED
        assert result.reason is FailureReason.STEP_LIMIT
        assert len(h.gateway.requests) == 3
        assert result.steps == 3
        assert h.store.pending_tool_calls() == []

    async def test_consecutive_tool_errors(self, make) -> None:
        script = [_numbered(lambda n: reply("", call(f"f{n}", "fail", tag=str(n))))] * 10
        h = make(script, max_consecutive_tool_errors=2)
        result = await h.loop.run("keep failing")
        assert result.reason is FailureReason.TOOL_ERRORS
        assert len(h.gateway.requests) == 3

    async def test_success_resets_error_count(self, make) -> None:
        h = make(
            [
                reply("", call("1", "fail", tag="1")),
                reply("", call("2", "fail", tag="2")),
                reply("", call("3", "wait", tag="3")),
                reply("", call("4", "fail", tag="4")),
                reply("", call("5", "fail", tag="5")),
                reply("recovered"),
            ],
            max_consecutive_tool_errors=2,
        )
        assert (await h.loop.run("go")).ok

    async def test_denials_do_not_count_as_errors(self, make) -> None:
        script = [
            reply("", call(f"d{i}", "write_file", path=f"f{i}.txt", content="x")) for i in range(4)
        ] + [reply("gave up writing")]
        h = make(script, max_consecutive_tool_errors=1)
        result = await h.loop.run("write files")
        assert result.ok
        denied = [m for m in h.store.messages if m.role is Role.TOOL]
        assert all(m.content.startswith("permission denied:") for m in denied)

    async def test_doom_loop(self, make) -> None:
        same = lambda r: reply("", call("x", "wait", tag="same"))  # noqa: E731
        h = make([same] * 5, doom_loop_threshold=3)
        result = await h.loop.run("repeat")
        assert result.reason is FailureReason.DOOM_LOOP
        assert len(h.gateway.requests) == 3
        assert h.store.pending_tool_calls() == []
        assert "identical to the previous calls" in h.store.messages[-1].content


class TestModelErrors:
    async def test_retryable_errors_back_off(self, make) -> None:
        h = make(
            [ModelError("rate limited", retryable=True), ModelError("503", retryable=True), reply("ok")],
            retry_base_delay=1.0,
        )
        result = await h.loop.run("hi")
        assert result.ok
        assert h.sleeps == [1.0, 2.0]
        assert h.kinds().count(UpdateKind.RETRYING) == 2

    async def test_backoff_capped(self, make) -> None:
        h = make(
            [ModelError("x", retryable=True)] * 4 + [reply("ok")],
            max_model_retries=5,
            retry_base_delay=1.0,
            retry_max_delay=3.0,
        )
        await h.loop.run("hi")
        assert h.sleeps == [1.0, 2.0, 3.0, 3.0]

    async def test_retries_exhausted(self, make) -> None:
        h = make([ModelError("down", retryable=True)] * 5, max_model_retries=2)
        result = await h.loop.run("hi")
        assert result.reason is FailureReason.MODEL_ERROR
        assert len(h.gateway.requests) == 3
        assert "gave up after 3 attempts" in result.error

    async def test_non_retryable_fails_immediately(self, make) -> None:
        h = make([ModelError("invalid api key")])
        result = await h.loop.run("hi")
        assert result.reason is FailureReason.MODEL_ERROR
        assert h.sleeps == []
        assert h.kinds()[-2:] == [UpdateKind.ERROR, UpdateKind.STATE_CHANGED]

    async def test_model_timeout_is_retried(self, make) -> None:
        async def hang(request):
            await asyncio.sleep(5)

        h = make([hang, reply("ok")], model_timeout=0.05)
        assert (await h.loop.run("hi")).ok
        assert len(h.sleeps) == 1


class TestCancellation:
    async def test_cancel_during_tools(self, make) -> None:
        h = make([reply("", call("long", "wait", seconds=10), call("short", "wait"))])
        task = asyncio.ensure_future(h.loop.run("go"))
        while h.loop.state is not AgentState.EXECUTING_TOOLS:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.02)
        assert h.loop.cancel("user pressed stop")

        result = await task
        assert result.reason is FailureReason.CANCELLED
        assert result.error == "user pressed stop"
        assert h.store.pending_tool_calls() == []
        tool_results = [m for m in h.store.messages if m.role is Role.TOOL]
        assert {m.tool_call_id for m in tool_results} == {"long", "short"}
        assert any(m.content.startswith("tool call cancelled") for m in tool_results)

    async def test_cancel_when_idle_is_noop(self, make) -> None:
        assert not make([]).loop.cancel()

    async def test_caller_cancellation_propagates(self, make) -> None:
        async def hang(request):
            await asyncio.sleep(5)

        h = make([hang])
        task = asyncio.ensure_future(h.loop.run("hi"))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not h.loop.running

    async def test_concurrent_run_rejected(self, make) -> None:
        async def slow(request):
            await asyncio.sleep(0.05)
            return reply("done")

        h = make([slow])
        first = asyncio.ensure_future(h.loop.run("one"))
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError, match="already running"):
            await h.loop.run("two")
        assert (await first).ok


class TestPlanMode:
    async def test_plan_mode_hides_and_denies_writes(self, make, tmp_path) -> None:
        h = make(
            [reply("", call("w", "write_file", path="x.txt", content="x")), reply("planned")],
            approval=_allow,
            agent_mode="plan",
        )
        result = await h.loop.run("plan it")
        assert result.ok
        advertised = {t["function"]["name"] for t in h.gateway.requests[0].tools}
        assert "write_file" not in advertised
        assert "read_file" in advertised
        assert not (tmp_path / "x.txt").exists()
        assert "plan mode" in h.store.messages[3].content


class TestUpdates:
    async def test_update_sequence(self, make) -> None:
        h = make([reply("thinking", call("a", "wait")), reply("done")])
        await h.loop.run("go")
        kinds = h.kinds()
        assert kinds[0] is UpdateKind.STATE_CHANGED
        assert UpdateKind.RESPONSE_CHUNK in kinds
        assert kinds.index(UpdateKind.TOOL_STARTED) < kinds.index(UpdateKind.TOOL_FINISHED)
        states = [u.payload["state"] for u in h.updates if u.kind is UpdateKind.STATE_CHANGED]
        assert states == ["awaiting_model", "executing_tools", "awaiting_model", "done"]
        assert all(u.session_id == h.store.id for u in h.updates)

    async def test_listener_errors_are_contained(self, make) -> None:
        h = make([reply("ok")])

        def broken(update) -> None:
            raise RuntimeError("ui crashed")

        h.loop.add_listener(broken)
        assert (await h.loop.run("hi")).ok

    async def test_unregister_listener(self, make) -> None:
        h = make([reply("ok")])
        seen = []
        unregister = h.loop.add_listener(seen.append)
        unregister()
        await h.loop.run("hi")
        assert seen == []


class TestCompactionInLoop:
    async def test_compacts_before_model_call(self, make, tmp_path) -> None:
        compactor = SessionCompactor(
            CompactionConfig(policy="truncate", keep_last=2), context_size=200
        )
        h = make(
            [reply("", call(f"c{i}", "wait", tag="t" * 200 + str(i))) for i in range(4)] + [reply("done")],
            compactor=compactor,
        )
        result = await h.loop.run("go")
        assert result.ok
        assert UpdateKind.COMPACTED in h.kinds()
        assert h.store.messages[0].content == "You are a coding agent."
        assert any(m.is_summary for m in h.store.messages)


class TestDoomLoopDetector:
    def test_threshold(self) -> None:
        detector = DoomLoopDetector(threshold=2)
        batch = [call("1", "grep", pattern="x")]
        assert not detector.record(batch)
        assert detector.record([call("2", "grep", pattern="x")])

    def test_different_arguments_reset(self) -> None:
        detector = DoomLoopDetector(threshold=2)
        detector.record([call("1", "grep", pattern="x")])
        assert not detector.record([call("2", "grep", pattern="y")])

    def test_order_insensitive(self) -> None:
        detector = DoomLoopDetector(threshold=2)
        detector.record([call("1", "a"), call("2", "b")])
        assert detector.record([call("3", "b"), call("4", "a")])
