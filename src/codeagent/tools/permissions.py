"""Approval gate for tools that modify the workspace or run commands."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from codeagent.config.schema import PermissionsConfig
from codeagent.errors import PermissionDenied
from codeagent.tools.registry import SafetyClass

_log = logging.getLogger("codeagent.tools.permissions")


class ApprovalDecision(Enum):
    ALLOW = "allow"
    DENY = "deny"
    ALWAYS_ALLOW = "always_allow"


@dataclass(frozen=True)
class ApprovalRequest:
    """What the user is asked to approve."""

    call_id: str
    tool_name: str
    arguments: dict[str, Any]
    safety: SafetyClass


ApprovalCallback = Callable[[ApprovalRequest], Awaitable[ApprovalDecision]]


@dataclass
class PermissionRule:
    """A rule matched against tool names with glob syntax.

    Examples:
        - "bash" matches the shell tool
        - "write_*" matches write_file
        - "*" matches everything
    """

    pattern: str
    allow: bool = True


@dataclass
class PermissionManager:
    """Decides whether a gated tool call may run.

    Order of evaluation:
        1. Plan mode denies every non-safe tool outright
        2. Tools granted "always allow" earlier in the session
        3. Configured rules (first match wins)
        4. The approval callback, bounded by ``approval_timeout``

    Without an approval callback, calls no rule allows are denied.
    Prompts are asked one at a time.
    """

    rules: list[PermissionRule] = field(default_factory=list)
    approval: ApprovalCallback | None = None
    approval_timeout: float = 300.0
    _always_allowed: set[str] = field(default_factory=set)
    _prompt_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _pending: set[asyncio.Task[ApprovalDecision]] = field(default_factory=set)

    @classmethod
    def from_config(
        cls, config: PermissionsConfig, approval: ApprovalCallback | None = None
    ) -> PermissionManager:
        return cls(
            rules=[PermissionRule(r.pattern, r.allow) for r in config.rules],
            approval=approval,
            approval_timeout=config.approval_timeout,
        )

    def add_rule(self, pattern: str, allow: bool = True) -> None:
        self.rules.append(PermissionRule(pattern=pattern, allow=allow))

    def match_rule(self, tool_name: str) -> bool | None:
        for rule in self.rules:
            if fnmatch.fnmatch(tool_name, rule.pattern):
                return rule.allow
        return None

    def grant_always(self, tool_name: str) -> None:
        self._always_allowed.add(tool_name)
        _log.debug("Granted always-allow for %s", tool_name)

    def is_always_allowed(self, tool_name: str) -> bool:
        return tool_name in self._always_allowed

    def clear_grants(self) -> None:
        self._always_allowed.clear()

    def cancel_pending(self) -> int:
        """Cancel outstanding approval prompts; each resolves as a denial."""
        pending = [t for t in self._pending if not t.done()]
        for task in pending:
            task.cancel()
        return len(pending)

    async def authorize(
        self,
        call_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        safety: SafetyClass,
        *,
        plan_mode: bool = False,
    ) -> None:
        """Return normally if the call may run.

        Raises:
            PermissionDenied: With the reason for the denial.
        """
        if safety is SafetyClass.SAFE:
            return
        if plan_mode:
            raise PermissionDenied(tool_name, f"'{tool_name}' is not available in plan mode")
        if tool_name in self._always_allowed:
            return

        rule = self.match_rule(tool_name)
        if rule is True:
            return
        if rule is False:
            raise PermissionDenied(tool_name, f"'{tool_name}' is blocked by configuration")

        if self.approval is None:
            raise PermissionDenied(tool_name, "no approval channel available")

        request = ApprovalRequest(call_id, tool_name, dict(arguments), safety)
        async with self._prompt_lock:
            # A grant may have landed while waiting for the prompt
            if tool_name in self._always_allowed:
                return
            decision = await self._ask(request)

        if decision is ApprovalDecision.ALWAYS_ALLOW:
            self.grant_always(tool_name)
            return
        if decision is ApprovalDecision.ALLOW:
            return
        raise PermissionDenied(tool_name, "user denied the request")

    async def _ask(self, request: ApprovalRequest) -> ApprovalDecision:
        assert self.approval is not None
        task = asyncio.ensure_future(self.approval(request))
        self._pending.add(task)
        try:
            done, _ = await asyncio.wait({task}, timeout=self.approval_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._pending.discard(task)

        if not done:
            task.cancel()
            raise PermissionDenied(
                request.tool_name, f"approval timed out after {self.approval_timeout:g}s"
            )
        if task.cancelled():
            raise PermissionDenied(request.tool_name, "approval request was cancelled")
        if task.exception() is not None:
            _log.error("Approval callback failed: %s", task.exception())
            raise PermissionDenied(request.tool_name, f"approval failed: {task.exception()}")
        return task.result()
