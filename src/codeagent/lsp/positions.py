"""Position and URI translation between tool-facing and wire conventions.

Tools and the model speak 1-based line/column numbers. The language server
protocol uses 0-based lines and characters. Conversion happens only here.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse


@dataclass(frozen=True, slots=True)
class Position:
    """A 1-based line/column position as shown to tools."""

    line: int
    column: int

    def __post_init__(self) -> None:
        if self.line < 1 or self.column < 1:
            raise ValueError(f"positions are 1-based, got {self.line}:{self.column}")

    def to_wire(self) -> dict[str, int]:
        return {"line": self.line - 1, "character": self.column - 1}

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Position:
        return cls(line=int(data["line"]) + 1, column=int(data["character"]) + 1)

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


def to_wire(line: int, column: int) -> dict[str, int]:
    """Translate a 1-based position into a wire ``{line, character}`` dict."""
    return Position(line, column).to_wire()


def to_external(wire: dict[str, Any]) -> tuple[int, int]:
    """Translate a wire position into a 1-based ``(line, column)`` pair."""
    pos = Position.from_wire(wire)
    return pos.line, pos.column


def path_to_uri(path: str | Path) -> str:
    return Path(path).resolve().as_uri()


def uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise ValueError(f"not a file URI: {uri}")
    return Path(unquote(parsed.path))


def format_location(location: dict[str, Any], *, root: Path | None = None) -> str:
    """Render a wire Location as ``path:line:col`` (1-based)."""
    uri = location.get("uri") or location.get("targetUri", "")
    range_ = location.get("range") or location.get("targetSelectionRange") or {}
    start = range_.get("start", {"line": 0, "character": 0})
    line, column = to_external(start)
    try:
        path = uri_to_path(uri)
    except ValueError:
        return f"{uri}:{line}:{column}"
    if root is not None:
        try:
            path = path.relative_to(root)
        except ValueError:
            pass
    return f"{path}:{line}:{column}"


def flatten_locations(result: Any) -> list[dict[str, Any]]:
    """Normalize a definition/references result to a list of Location dicts."""
    if result is None:
        return []
    if isinstance(result, dict):
        return [result]
    if isinstance(result, list):
        return [item for item in result if isinstance(item, dict)]
    return []
