"""Detects a model stuck repeating the same tool calls."""

from __future__ import annotations

from collections.abc import Sequence

from codeagent.core.llm.provider import ToolCall


class DoomLoopDetector:
    """Counts consecutive identical tool-call batches (names and arguments, ids ignored)."""

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = threshold
        self._last: tuple[tuple[str, str], ...] | None = None
        self._repeats = 0

    def record(self, calls: Sequence[ToolCall]) -> bool:
        """Record a batch; True once the same batch has been seen ``threshold`` times in a row."""
        if not calls:
            self.reset()
            return False
        signature = tuple(sorted(call.signature() for call in calls))
        if signature == self._last:
            self._repeats += 1
        else:
            self._last = signature
            self._repeats = 1
        return self.threshold > 0 and self._repeats >= self.threshold

    def reset(self) -> None:
        self._last = None
        self._repeats = 0
