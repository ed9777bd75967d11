"""Running statistics for one session.

Token usage is summed from every model response that reports it. File
changes are counted in lines added and removed, accumulated per path across
writes and edits. Language server status is read live from the supervisor.
"""

from __future__ import annotations

import difflib
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from codeagent.lsp.supervisor import LspServerInstance, LspSupervisor

_log = logging.getLogger("codeagent.session.stats")


@dataclass(slots=True)
class FileChange:
    path: str
    additions: int = 0
    deletions: int = 0
    writes: int = 0


def line_delta(before: str | None, after: str) -> tuple[int, int]:
    """Lines added and removed going from ``before`` to ``after``."""
    old = before.splitlines() if before else []
    new = after.splitlines()
    added = removed = 0
    for tag, i1, i2, j1, j2 in difflib.SequenceMatcher(None, old, new, autojunk=False).get_opcodes():
        if tag in ("replace", "delete"):
            removed += i2 - i1
        if tag in ("replace", "insert"):
            added += j2 - j1
    return added, removed


class SessionStats:
    """Token totals, modified files and server status for the sidebar and /stats."""

    def __init__(self, session_id: str | None = None, supervisor: LspSupervisor | None = None) -> None:
        self.session_id = session_id
        self.supervisor = supervisor
        self.input_tokens = 0
        self.output_tokens = 0
        self.model_calls = 0
        self._files: dict[str, FileChange] = {}

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def record_usage(self, usage: Mapping[str, int] | None) -> None:
        """Add one model response's usage. Missing counts are treated as zero."""
        self.model_calls += 1
        if not usage:
            return
        self.input_tokens += int(usage.get("prompt_tokens", 0))
        self.output_tokens += int(usage.get("completion_tokens", 0))

    def record_change(self, path: str, before: str | None, after: str) -> FileChange:
        added, removed = line_delta(before, after)
        change = self._files.get(path)
        if change is None:
            change = self._files[path] = FileChange(path)
        change.additions += added
        change.deletions += removed
        change.writes += 1
        _log.debug("%s: +%d -%d", path, added, removed)
        return change

    @property
    def modified_files(self) -> list[FileChange]:
        return sorted(self._files.values(), key=lambda c: c.path)

    def lsp_servers(self) -> list[LspServerInstance]:
        if self.supervisor is None:
            return []
        return self.supervisor.servers()

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "tokens": {
                "input": self.input_tokens,
                "output": self.output_tokens,
                "total": self.total_tokens,
            },
            "model_calls": self.model_calls,
            "modified_files": [
                {"path": c.path, "additions": c.additions, "deletions": c.deletions}
                for c in self.modified_files
            ],
            "lsp_servers": [
                {"id": s.id, "root": str(s.root_path), "status": s.status.value}
                for s in self.lsp_servers()
            ],
        }
