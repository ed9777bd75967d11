"""File tools: read, write, edit, list."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

from codeagent.errors import ToolExecutionError
from codeagent.lsp.diagnostics import format_for_agent
from codeagent.tools.registry import SafetyClass, ToolContext, ToolSpec
from codeagent.tools.result import ToolOutput

MAX_READ_BYTES = 2 * 1024 * 1024
DEFAULT_READ_LIMIT = 2000
MAX_LINE_CHARS = 2000

IGNORED_DIRS = frozenset(
    {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache", ".codeagent"}
)


class ReadFileParams(BaseModel):
    path: str = Field(description="File to read, absolute or relative to the working directory")
    offset: int = Field(1, ge=1, description="1-based line to start from")
    limit: int = Field(DEFAULT_READ_LIMIT, ge=1, description="Maximum number of lines to return")


class WriteFileParams(BaseModel):
    path: str = Field(description="File to create or overwrite")
    content: str = Field(description="Full new content of the file")


class EditFileParams(BaseModel):
    path: str = Field(description="File to edit")
    old_string: str = Field(description="Exact text to replace")
    new_string: str = Field(description="Replacement text")
    replace_all: bool = Field(False, description="Replace every occurrence instead of exactly one")


class ListFilesParams(BaseModel):
    path: str = Field(".", description="Directory to list")


def path_key(params: BaseModel, ctx: ToolContext) -> str:
    """Serialize writers of the same file."""
    return str(ctx.resolve(params.path))  # type: ignore[attr-defined]


def _display(path: Path, ctx: ToolContext) -> str:
    try:
        return str(path.relative_to(ctx.working_directory.resolve()))
    except ValueError:
        return str(path)


def _previous_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


async def _diagnostics_suffix(path: Path, text: str, ctx: ToolContext) -> str:
    if ctx.supervisor is None:
        return ""
    report = await ctx.supervisor.touch_file(path, text=text)
    if not report.ok:
        return ""
    return format_for_agent(report.diagnostics)


async def read_file(params: ReadFileParams, ctx: ToolContext) -> ToolOutput:
    path = ctx.resolve(params.path)
    if not path.exists():
        raise ToolExecutionError(f"file not found: {params.path}")
    if path.is_dir():
        raise ToolExecutionError(f"{params.path} is a directory; use list_files")
    if path.stat().st_size > MAX_READ_BYTES:
        raise ToolExecutionError(f"{params.path} is larger than {MAX_READ_BYTES} bytes")

    raw = path.read_bytes()
    if b"\x00" in raw[:8192]:
        raise ToolExecutionError(f"{params.path} appears to be a binary file")
    ctx.file_times.record(path)
    lines = raw.decode("utf-8", errors="replace").splitlines()
    if not lines:
        return ToolOutput("(empty file)")

    start = params.offset - 1
    if start >= len(lines):
        raise ToolExecutionError(f"offset {params.offset} is past the end of the file ({len(lines)} lines)")
    window = lines[start : start + params.limit]
    width = len(str(start + len(window)))
    rendered = []
    for number, line in enumerate(window, start=params.offset):
        if len(line) > MAX_LINE_CHARS:
            line = line[:MAX_LINE_CHARS] + "..."
        rendered.append(f"{number:>{width}}\t{line}")
    remaining = len(lines) - (start + len(window))
    if remaining > 0:
        rendered.append(f"... ({remaining} more lines, continue with offset={start + len(window) + 1})")
    return ToolOutput("\n".join(rendered))


async def write_file(params: WriteFileParams, ctx: ToolContext) -> ToolOutput:
    path = ctx.resolve(params.path)
    existed = path.exists()
    if existed and path.is_dir():
        raise ToolExecutionError(f"{params.path} is a directory")
    ctx.file_times.check_unmodified(path, params.path)
    before = _previous_text(path) if existed and ctx.stats is not None else None
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(params.content, encoding="utf-8")
    ctx.file_times.record(path)
    if ctx.stats is not None:
        ctx.stats.record_change(_display(path, ctx), before, params.content)

    verb = "Updated" if existed else "Created"
    line_count = params.content.count("\n") + (0 if params.content.endswith("\n") or not params.content else 1)
    message = f"{verb} {_display(path, ctx)} ({line_count} lines)"
    return ToolOutput(message + await _diagnostics_suffix(path, params.content, ctx))


async def edit_file(params: EditFileParams, ctx: ToolContext) -> ToolOutput:
    path = ctx.resolve(params.path)
    if not path.is_file():
        raise ToolExecutionError(f"file not found: {params.path}")
    if params.old_string == params.new_string:
        raise ToolExecutionError("old_string and new_string are identical")
    if not params.old_string:
        raise ToolExecutionError("old_string must not be empty")
    ctx.file_times.check_unmodified(path, params.path)

    text = path.read_text(encoding="utf-8")
    count = text.count(params.old_string)
    if count == 0:
        raise ToolExecutionError("old_string not found in file")
    if count > 1 and not params.replace_all:
        raise ToolExecutionError(
            f"old_string occurs {count} times; add context to make it unique or set replace_all"
        )

    updated = text.replace(params.old_string, params.new_string, -1 if params.replace_all else 1)
    path.write_text(updated, encoding="utf-8")
    ctx.file_times.record(path)
    if ctx.stats is not None:
        ctx.stats.record_change(_display(path, ctx), text, updated)
    replaced = count if params.replace_all else 1
    message = f"Edited {_display(path, ctx)} ({replaced} replacement{'s' if replaced != 1 else ''})"
    return ToolOutput(message + await _diagnostics_suffix(path, updated, ctx))


async def list_files(params: ListFilesParams, ctx: ToolContext) -> ToolOutput:
    path = ctx.resolve(params.path)
    if not path.is_dir():
        raise ToolExecutionError(f"not a directory: {params.path}")
    entries = []
    with os.scandir(path) as it:
        for entry in it:
            if entry.name in IGNORED_DIRS:
                continue
            entries.append(entry.name + ("/" if entry.is_dir() else ""))
    if not entries:
        return ToolOutput("(empty directory)")
    entries.sort(key=lambda name: (not name.endswith("/"), name.lower()))
    return ToolOutput("\n".join(entries))


TOOLS = (
    ToolSpec(
        name="read_file",
        description="Read a text file. Output lines are prefixed with 1-based line numbers.",
        params=ReadFileParams,
        handler=read_file,
    ),
    ToolSpec(
        name="write_file",
        description="Create or overwrite a file with the given content. Reports compiler diagnostics when available.",
        params=WriteFileParams,
        handler=write_file,
        safety=SafetyClass.CONFIRM,
        resource_key=path_key,
    ),
    ToolSpec(
        name="edit_file",
        description="Replace an exact string in a file. old_string must match exactly once unless replace_all is set.",
        params=EditFileParams,
        handler=edit_file,
        safety=SafetyClass.CONFIRM,
        resource_key=path_key,
    ),
    ToolSpec(
        name="list_files",
        description="List the entries of a directory.",
        params=ListFilesParams,
        handler=list_files,
    ),
)
