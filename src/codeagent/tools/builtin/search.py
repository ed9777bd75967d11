"""Search tools: glob and grep."""

from __future__ import annotations

import asyncio
import fnmatch
import os
import re
from pathlib import Path

from pydantic import BaseModel, Field

from codeagent.errors import ToolExecutionError
from codeagent.tools.builtin.files import IGNORED_DIRS
from codeagent.tools.registry import ToolContext, ToolSpec
from codeagent.tools.result import ToolOutput

MAX_GLOB_RESULTS = 200
MAX_GREP_MATCHES = 200


class GlobParams(BaseModel):
    pattern: str = Field(description='Glob pattern, e.g. "**/*.py"')
    path: str = Field(".", description="Directory to search from")


class GrepParams(BaseModel):
    pattern: str = Field(description="Regular expression to search for")
    path: str = Field(".", description="File or directory to search")
    include: str | None = Field(None, description='Only search files matching this glob, e.g. "*.ts"')
    ignore_case: bool = False


def _walk_files(root: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
        for name in sorted(filenames):
            yield Path(dirpath) / name


def _glob(root: Path, pattern: str) -> list[Path]:
    matches = [
        p
        for p in root.glob(pattern)
        if p.is_file() and not any(part in IGNORED_DIRS for part in p.relative_to(root).parts)
    ]
    matches.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return matches


async def glob_files(params: GlobParams, ctx: ToolContext) -> ToolOutput:
    root = ctx.resolve(params.path)
    if not root.is_dir():
        raise ToolExecutionError(f"not a directory: {params.path}")
    matches = await asyncio.to_thread(_glob, root, params.pattern)
    if not matches:
        return ToolOutput("No files found")
    lines = [str(p.relative_to(root)) for p in matches[:MAX_GLOB_RESULTS]]
    if len(matches) > MAX_GLOB_RESULTS:
        lines.append(f"... ({len(matches) - MAX_GLOB_RESULTS} more)")
    return ToolOutput("\n".join(lines))


def _grep(root: Path, regex: re.Pattern[str], include: str | None) -> tuple[list[str], int]:
    files = [root] if root.is_file() else _walk_files(root)
    base = root.parent if root.is_file() else root
    hits: list[str] = []
    total = 0
    for file in files:
        if include and not fnmatch.fnmatch(file.name, include):
            continue
        try:
            with open(file, encoding="utf-8") as f:
                for number, line in enumerate(f, start=1):
                    if regex.search(line):
                        total += 1
                        if len(hits) < MAX_GREP_MATCHES:
                            hits.append(f"{file.relative_to(base)}:{number}: {line.rstrip()[:300]}")
        except (UnicodeDecodeError, OSError):
            continue
    return hits, total


async def grep(params: GrepParams, ctx: ToolContext) -> ToolOutput:
    root = ctx.resolve(params.path)
    if not root.exists():
        raise ToolExecutionError(f"path not found: {params.path}")
    try:
        regex = re.compile(params.pattern, re.IGNORECASE if params.ignore_case else 0)
    except re.error as e:
        raise ToolExecutionError(f"invalid regular expression: {e}") from e

    hits, total = await asyncio.to_thread(_grep, root, regex, params.include)
    if not hits:
        return ToolOutput("No matches found")
    if total > len(hits):
        hits.append(f"... ({total - len(hits)} more matches)")
    return ToolOutput("\n".join(hits))


TOOLS = (
    ToolSpec(
        name="glob",
        description="Find files by glob pattern, newest first.",
        params=GlobParams,
        handler=glob_files,
    ),
    ToolSpec(
        name="grep",
        description="Search file contents with a regular expression. Returns path:line: text.",
        params=GrepParams,
        handler=grep,
    ),
)
