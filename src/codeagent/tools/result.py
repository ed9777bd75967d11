"""Tool outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from codeagent.core.llm.provider import Message, Role


class ResultKind(Enum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"
    DENIED = "denied"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class ToolOutput:
    """What a handler returns. A bare string is treated as a successful output."""

    content: str
    is_error: bool = False


@dataclass(slots=True)
class ToolResult:
    """The answer to exactly one ToolCall.

    Attributes:
        call_id: Id of the ToolCall this answers
        tool_name: Name the model asked for
        content: Text returned to the model
        kind: Outcome category; anything but OK is an error
        duration_ms: Handler wall time (0 when the handler never ran)
    """

    call_id: str
    tool_name: str
    content: str
    kind: ResultKind = ResultKind.OK
    duration_ms: float = 0.0

    @property
    def is_error(self) -> bool:
        return self.kind is not ResultKind.OK

    @property
    def counts_as_failure(self) -> bool:
        """Errors and timeouts count against the consecutive-error limit; policy outcomes don't."""
        return self.kind in (ResultKind.ERROR, ResultKind.TIMEOUT)

    def to_message(self) -> Message:
        return Message(
            role=Role.TOOL,
            content=self.content,
            tool_call_id=self.call_id,
            originator=f"tool:{self.tool_name}",
        )

    @classmethod
    def error(cls, call_id: str, tool_name: str, content: str) -> ToolResult:
        return cls(call_id, tool_name, content, ResultKind.ERROR)

    @classmethod
    def denied(cls, call_id: str, tool_name: str, reason: str) -> ToolResult:
        return cls(call_id, tool_name, f"permission denied: {reason}", ResultKind.DENIED)

    @classmethod
    def cancelled(cls, call_id: str, tool_name: str, reason: str = "cancelled") -> ToolResult:
        return cls(call_id, tool_name, f"tool call cancelled: {reason}", ResultKind.CANCELLED)
