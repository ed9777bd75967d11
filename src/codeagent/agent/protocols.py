"""Agent loop states, updates and results."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AgentState(Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"


class FailureReason(Enum):
    STEP_LIMIT = "step_limit"
    TOOL_ERRORS = "tool_errors"
    MODEL_ERROR = "model_error"
    DOOM_LOOP = "doom_loop"
    CANCELLED = "cancelled"


class UpdateKind(Enum):
    """Types of updates emitted while the loop runs."""

    STATE_CHANGED = "state_changed"
    RESPONSE_CHUNK = "response_chunk"
    TOOL_STARTED = "tool_started"
    TOOL_FINISHED = "tool_finished"
    COMPACTED = "compacted"
    RETRYING = "retrying"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class AgentUpdate:
    kind: UpdateKind
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


UpdateListener = Callable[[AgentUpdate], None]


@dataclass(slots=True)
class AgentRunResult:
    """Outcome of one ``AgentLoop.run``.

    Attributes:
        state: DONE or FAILED
        reason: Why the run failed (None when DONE)
        final_text: Last assistant text
        steps: Model calls made during this run
        error: Human-readable failure detail
    """

    state: AgentState
    reason: FailureReason | None = None
    final_text: str = ""
    steps: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is AgentState.DONE
