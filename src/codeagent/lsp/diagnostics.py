"""Diagnostic records and their agent-facing rendering."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any


class Severity(IntEnum):
    ERROR = 1
    WARNING = 2
    INFO = 3
    HINT = 4


@dataclass(frozen=True, slots=True)
class Range:
    """A wire range (0-based, end exclusive)."""

    start_line: int
    start_character: int
    end_line: int
    end_character: int

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Range:
        start = data.get("start") or {}
        end = data.get("end") or start
        return cls(
            start_line=int(start.get("line", 0)),
            start_character=int(start.get("character", 0)),
            end_line=int(end.get("line", 0)),
            end_character=int(end.get("character", 0)),
        )


@dataclass(frozen=True, slots=True)
class Diagnostic:
    uri: str
    range: Range
    severity: Severity
    message: str
    source: str | None = None
    code: str | None = None
    related_info: tuple[dict[str, Any], ...] = field(default=())

    @classmethod
    def from_wire(cls, uri: str, data: dict[str, Any]) -> Diagnostic:
        # Severity is optional on the wire; the client treats missing as error
        raw_severity = data.get("severity") or Severity.ERROR
        try:
            severity = Severity(int(raw_severity))
        except ValueError:
            severity = Severity.ERROR
        code = data.get("code")
        return cls(
            uri=uri,
            range=Range.from_wire(data.get("range") or {}),
            severity=severity,
            message=str(data.get("message", "")),
            source=data.get("source"),
            code=str(code) if code is not None else None,
            related_info=tuple(data.get("relatedInformation") or ()),
        )

    @property
    def line(self) -> int:
        """1-based start line."""
        return self.range.start_line + 1

    @property
    def column(self) -> int:
        """1-based start column."""
        return self.range.start_character + 1


class DiagnosticsStatus(Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    BROKEN = "broken"


@dataclass(slots=True)
class DiagnosticsReport:
    """Outcome of a diagnostics request. Never carries an exception."""

    status: DiagnosticsStatus
    diagnostics: list[Diagnostic] = field(default_factory=list)
    server_id: str | None = None
    detail: str | None = None

    @classmethod
    def unavailable(cls, detail: str, server_id: str | None = None) -> DiagnosticsReport:
        return cls(DiagnosticsStatus.UNAVAILABLE, [], server_id, detail)

    @property
    def ok(self) -> bool:
        return self.status is DiagnosticsStatus.OK


def format_diagnostic(diag: Diagnostic) -> str:
    source = f"[{diag.source}] " if diag.source else ""
    code = f" ({diag.code})" if diag.code else ""
    return f"{diag.severity.name} {source}{diag.line}:{diag.column}{code} - {diag.message}"


def format_all(diagnostics: Iterable[Diagnostic], limit: int = 20) -> str:
    """Format diagnostics sorted by severity then line, capped at ``limit``."""
    ordered = sorted(diagnostics, key=lambda d: (d.severity, d.range.start_line))
    if not ordered:
        return ""
    text = "\n".join(format_diagnostic(d) for d in ordered[:limit])
    if len(ordered) > limit:
        text += f"\n... and {len(ordered) - limit} more diagnostics"
    return text


def format_for_agent(diagnostics: Iterable[Diagnostic]) -> str:
    """Render a block suitable for appending to a write/edit tool result.

    Errors take precedence; warnings are only shown when there are no errors.
    Returns an empty string when there is nothing worth reporting.
    """
    items = list(diagnostics)
    errors = [d for d in items if d.severity is Severity.ERROR]
    warnings = [d for d in items if d.severity is Severity.WARNING]

    if errors:
        header = f"\n\nThis file has {len(errors)} error(s)"
        if warnings:
            header += f" and {len(warnings)} warning(s)"
        return f"{header}, please fix:\n<file_diagnostics>\n{format_all(errors, 20)}\n</file_diagnostics>"
    if warnings:
        return (
            f"\n\nNote: {len(warnings)} warning(s) found:\n"
            f"<file_diagnostics>\n{format_all(warnings, 10)}\n</file_diagnostics>"
        )
    return ""


def summarize(diagnostics: Iterable[Diagnostic]) -> dict[str, int]:
    counts = {"errors": 0, "warnings": 0, "info": 0, "hints": 0}
    keys = {
        Severity.ERROR: "errors",
        Severity.WARNING: "warnings",
        Severity.INFO: "info",
        Severity.HINT: "hints",
    }
    for diag in diagnostics:
        counts[keys[diag.severity]] += 1
    return counts
