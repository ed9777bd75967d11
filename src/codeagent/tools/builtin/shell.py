"""Shell command tool."""

from __future__ import annotations

from pydantic import BaseModel, Field

from codeagent.errors import ToolExecutionError
from codeagent.tools.registry import SafetyClass, ToolContext, ToolSpec
from codeagent.tools.result import ToolOutput


class BashParams(BaseModel):
    command: str = Field(description="Command line to run with the system shell")
    timeout: float = Field(110.0, gt=0, le=600, description="Seconds before the command is killed")
    cwd: str | None = Field(None, description="Working directory (defaults to the project root)")


async def bash(params: BashParams, ctx: ToolContext) -> ToolOutput:
    if ctx.shell is None:
        raise ToolExecutionError("shell execution is not available in this session")
    cwd = str(ctx.resolve(params.cwd)) if params.cwd else str(ctx.working_directory)
    result = await ctx.shell.execute(
        params.command,
        cwd=cwd,
        timeout=params.timeout,
        output_limit=ctx.max_output_chars,
    )
    return ToolOutput(result.render(), is_error=not result.success)


TOOLS = (
    ToolSpec(
        name="bash",
        description="Run a shell command in the project directory and return its combined output and exit code.",
        params=BashParams,
        handler=bash,
        safety=SafetyClass.DANGEROUS,
        timeout=620.0,
    ),
)
