"""Closed registry of typed tool descriptors.

Every tool is declared up front with a pydantic model for its parameters,
a safety class and an async handler. The registry validates descriptors as
they are registered and is frozen before the agent starts, so the set of
tools the model can see never changes mid-session.
"""

from __future__ import annotations

import inspect
import re
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from codeagent.errors import RegistryError
from codeagent.tools.filetimes import FileTimes
from codeagent.tools.result import ToolOutput

if TYPE_CHECKING:
    from codeagent.lsp.supervisor import LspSupervisor
    from codeagent.session.stats import SessionStats
    from codeagent.terminal.executor import ShellExecutor

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class SafetyClass(Enum):
    SAFE = "safe"  # No side effects; never gated
    CONFIRM = "confirm"  # Modifies the workspace; asks first
    DANGEROUS = "dangerous"  # Arbitrary effects; asks first


@dataclass
class ToolContext:
    """Per-session services handed to every tool handler."""

    working_directory: Path
    supervisor: LspSupervisor | None = None
    shell: ShellExecutor | None = None
    max_output_chars: int = 30_000
    session_id: str | None = None
    stats: SessionStats | None = None
    file_times: FileTimes = field(default_factory=FileTimes)

    def resolve(self, path: str) -> Path:
        """Resolve a tool-supplied path against the working directory."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.working_directory / candidate
        return candidate.resolve()


Handler = Callable[[Any, ToolContext], Awaitable[ToolOutput | str]]
ResourceKeyFn = Callable[[Any, ToolContext], str | None]


@dataclass(frozen=True)
class ToolSpec:
    """A tool descriptor.

    Attributes:
        name: Unique tool name shown to the model
        description: What the tool does, shown to the model
        params: Pydantic model validating the call arguments
        handler: ``async (params, ctx) -> ToolOutput | str``
        safety: Whether calls need approval
        resource_key: Calls sharing a non-None key run one at a time, in order
        timeout: Per-tool override of the executor's call timeout
    """

    name: str
    description: str
    params: type[BaseModel]
    handler: Handler
    safety: SafetyClass = SafetyClass.SAFE
    resource_key: ResourceKeyFn | None = None
    timeout: float | None = None

    def schema(self) -> dict[str, Any]:
        """The function schema in chat-completions form."""
        parameters = self.params.model_json_schema()
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }

    def key_for(self, args: BaseModel, ctx: ToolContext) -> str | None:
        if self.resource_key is None:
            return None
        return self.resource_key(args, ctx)


@dataclass
class ToolRegistry:
    _tools: dict[str, ToolSpec] = field(default_factory=dict)
    _frozen: bool = False

    def register(self, spec: ToolSpec) -> ToolSpec:
        if self._frozen:
            raise RegistryError(f"registry is frozen; cannot register '{spec.name}'")
        if not _NAME_RE.match(spec.name):
            raise RegistryError(f"invalid tool name: {spec.name!r}")
        if spec.name in self._tools:
            raise RegistryError(f"duplicate tool name: {spec.name}")
        if not (isinstance(spec.params, type) and issubclass(spec.params, BaseModel)):
            raise RegistryError(f"{spec.name}: params must be a pydantic model class")
        if not inspect.iscoroutinefunction(spec.handler):
            raise RegistryError(f"{spec.name}: handler must be an async function")
        if not spec.description.strip():
            raise RegistryError(f"{spec.name}: description is required")
        self._tools[spec.name] = spec
        return spec

    def freeze(self) -> ToolRegistry:
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self, *, read_only: bool = False) -> list[dict[str, Any]]:
        """Schemas to advertise; ``read_only`` keeps only SAFE tools (plan mode)."""
        return [
            spec.schema()
            for spec in self._tools.values()
            if not read_only or spec.safety is SafetyClass.SAFE
        ]
