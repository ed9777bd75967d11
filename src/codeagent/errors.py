"""Exception hierarchy for codeagent.

Everything raised deliberately by the runtime derives from ``AgentError`` so
callers can tell runtime failures apart from programming errors.
"""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base class for codeagent errors."""


class ModelError(AgentError):
    """The language model gateway failed.

    ``retryable`` marks transient failures (timeouts, rate limits, connection
    resets, 5xx) that the agent loop retries with backoff.
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class RegistryError(AgentError):
    """A tool descriptor was rejected at registration time."""


class ToolExecutionError(AgentError):
    """A tool handler failed. Converted into an error tool result."""


class ToolTimeoutError(ToolExecutionError):
    """A tool call exceeded its timeout."""

    def __init__(self, tool_name: str, timeout: float) -> None:
        super().__init__(f"tool '{tool_name}' timed out after {timeout:g}s")
        self.tool_name = tool_name
        self.timeout = timeout


class PermissionDenied(AgentError):
    """A gated tool call was not approved."""

    def __init__(self, tool_name: str, reason: str) -> None:
        super().__init__(f"permission denied: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class LspServerUnavailable(AgentError):
    """No usable language server for a file (no profile, disabled, broken, spawn failure)."""


class LspProtocolError(AgentError):
    """Malformed frame, unexpected EOF, or the server process went away."""


class LspRequestTimeout(AgentError):
    """A single JSON-RPC request did not receive a response in time."""

    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"request '{method}' timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class RpcResponseError(AgentError):
    """The server answered a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data


class CompactionFailure(AgentError):
    """Summarization of dropped history failed."""


class SessionNotFound(AgentError):
    """Session storage has no session with the requested id."""
