"""Tool registry, permission gate and batch executor."""

from codeagent.tools.executor import ToolExecutor
from codeagent.tools.permissions import (
    ApprovalDecision,
    ApprovalRequest,
    PermissionManager,
    PermissionRule,
)
from codeagent.tools.pool import WorkerPool
from codeagent.tools.registry import SafetyClass, ToolContext, ToolRegistry, ToolSpec
from codeagent.tools.result import ResultKind, ToolOutput, ToolResult

__all__ = [
    "ApprovalDecision",
    "ApprovalRequest",
    "PermissionManager",
    "PermissionRule",
    "ResultKind",
    "SafetyClass",
    "ToolContext",
    "ToolExecutor",
    "ToolOutput",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "WorkerPool",
]
