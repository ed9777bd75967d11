"""The agent loop and the runtime that assembles a session."""

from codeagent.agent.loop import AgentLoop
from codeagent.agent.loop_guard import DoomLoopDetector
from codeagent.agent.protocols import (
    AgentRunResult,
    AgentState,
    AgentUpdate,
    FailureReason,
    UpdateKind,
)
from codeagent.agent.runtime import AgentRuntime

__all__ = [
    "AgentLoop",
    "AgentRunResult",
    "AgentRuntime",
    "AgentState",
    "AgentUpdate",
    "DoomLoopDetector",
    "FailureReason",
    "UpdateKind",
]
