"""Stale-write detection for the file tools.

Each read or write of a file records its modification stamp. Before a later
write or edit, the stamp on disk must still match; otherwise something outside
the agent changed the file and the model is working from old content. Files
the agent has never seen are not checked.
"""

from __future__ import annotations

import os
from pathlib import Path

from codeagent.errors import ToolExecutionError

Stamp = tuple[int, int]  # (mtime_ns, size)


def _stamp(path: Path) -> Stamp | None:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return st.st_mtime_ns, st.st_size


class FileTimes:
    def __init__(self) -> None:
        self._stamps: dict[Path, Stamp] = {}

    def record(self, path: Path) -> None:
        stamp = _stamp(path)
        if stamp is None:
            self._stamps.pop(path, None)
        else:
            self._stamps[path] = stamp

    def check_unmodified(self, path: Path, display: str | None = None) -> None:
        """Raise ToolExecutionError if ``path`` changed since it was last recorded."""
        recorded = self._stamps.get(path)
        if recorded is None:
            return
        current = _stamp(path)
        if current is None or current == recorded:
            return
        raise ToolExecutionError(
            f"{display or path} was modified since it was last read; read it again before writing"
        )

    def __contains__(self, path: object) -> bool:
        return path in self._stamps

    def __len__(self) -> int:
        return len(self._stamps)
