"""Model gateway protocol and conversation types."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class Role(Enum):
    """Message role in a conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A structured request from the model to run a tool.

    Attributes:
        id: Model-assigned call id, echoed back on the matching tool result
        name: Registered tool name
        arguments: Parsed JSON object, or None when the model's arguments
            were not a JSON object
        raw_arguments: The argument text exactly as the model produced it
    """

    id: str
    name: str
    arguments: dict[str, Any] | None = None
    raw_arguments: str | None = None

    @classmethod
    def from_raw(cls, id: str, name: str, raw: str | dict[str, Any] | None) -> ToolCall:
        """Build a call from model output, tolerating malformed arguments."""
        if isinstance(raw, dict):
            return cls(id=id, name=name, arguments=raw, raw_arguments=json.dumps(raw))
        text = raw or "{}"
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return cls(id=id, name=name, arguments=None, raw_arguments=text)
        if not isinstance(parsed, dict):
            return cls(id=id, name=name, arguments=None, raw_arguments=text)
        return cls(id=id, name=name, arguments=parsed, raw_arguments=text)

    def signature(self) -> tuple[str, str]:
        """Stable identity of the call ignoring its id."""
        if self.arguments is not None:
            return self.name, json.dumps(self.arguments, sort_keys=True)
        return self.name, self.raw_arguments or ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name}
        if self.arguments is not None:
            data["arguments"] = self.arguments
        else:
            data["raw_arguments"] = self.raw_arguments
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        if data.get("arguments") is not None:
            return cls.from_raw(data["id"], data["name"], data["arguments"])
        return cls.from_raw(data["id"], data["name"], data.get("raw_arguments"))


@dataclass(frozen=True, slots=True)
class Message:
    """A message in an LLM conversation.

    Attributes:
        role: The role (system, user, assistant, tool)
        content: The message content
        tool_calls: Calls requested by an assistant message
        tool_call_id: For tool messages, the call this result answers
        originator: Who produced this message. Examples:
            - "user" - direct user input
            - "agent" - main agent response
            - "tool:{name}" - tool execution result
            - "compaction" - summary standing in for dropped history
            - None - unspecified
    """

    role: Role
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    originator: str | None = None

    @property
    def is_summary(self) -> bool:
        return self.originator == "compaction"

    def to_llm(self) -> dict[str, Any]:
        """Render in the chat-completions wire shape."""
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {
                        "name": c.name,
                        "arguments": (
                            json.dumps(c.arguments)
                            if c.arguments is not None
                            else (c.raw_arguments or "")
                        ),
                    },
                }
                for c in self.tool_calls
            ]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data

    def to_dict(self) -> dict[str, Any]:
        """Plain dict for persistence."""
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [c.to_dict() for c in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.originator is not None:
            data["originator"] = self.originator
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            tool_calls=tuple(ToolCall.from_dict(c) for c in data.get("tool_calls") or ()),
            tool_call_id=data.get("tool_call_id"),
            originator=data.get("originator"),
        )


@dataclass(slots=True)
class LlmRequest:
    """Everything the model sees for one turn."""

    system_prompt: str
    messages: list[Message]
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int | None = None


@dataclass(slots=True)
class LlmResponse:
    """A completed model turn."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


DeltaCallback = Callable[[str], None]


@runtime_checkable
class LlmGateway(Protocol):
    """Protocol for language model backends.

    Implementations raise ``ModelError`` on failure, with ``retryable`` set
    for transient conditions.
    """

    @property
    def model(self) -> str:
        """The model identifier being used."""
        ...

    async def complete(
        self,
        request: LlmRequest,
        on_delta: DeltaCallback | None = None,
    ) -> LlmResponse:
        """Run one completion.

        Args:
            request: System prompt, conversation and tool schemas
            on_delta: Receives response text fragments as they stream in

        Returns:
            LlmResponse with text and any tool calls
        """
        ...
