"""Code intelligence tool backed by the language server supervisor."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from codeagent.errors import AgentError, ToolExecutionError
from codeagent.lsp.diagnostics import format_all
from codeagent.lsp.positions import format_location, path_to_uri, to_external
from codeagent.tools.registry import ToolContext, ToolSpec
from codeagent.tools.result import ToolOutput

Operation = Literal[
    "definition",
    "references",
    "hover",
    "document_symbol",
    "workspace_symbol",
    "diagnostics",
]

_POSITIONAL = {"definition", "references", "hover"}

MAX_LOCATIONS = 50

# SymbolKind values from the protocol
_SYMBOL_KINDS = {
    1: "file", 2: "module", 3: "namespace", 4: "package", 5: "class", 6: "method",
    7: "property", 8: "field", 9: "constructor", 10: "enum", 11: "interface",
    12: "function", 13: "variable", 14: "constant", 15: "string", 16: "number",
    17: "boolean", 18: "array", 19: "object", 20: "key", 21: "null",
    22: "enum_member", 23: "struct", 24: "event", 25: "operator", 26: "type_parameter",
}


class LspParams(BaseModel):
    operation: Operation
    path: str = Field(description="File the operation applies to (any file of the project for workspace_symbol)")
    line: int | None = Field(None, ge=1, description="1-based line (definition, references, hover)")
    column: int | None = Field(None, ge=1, description="1-based column (definition, references, hover)")
    query: str = Field("", description="Symbol query for workspace_symbol")

    @model_validator(mode="after")
    def _require_position(self) -> LspParams:
        if self.operation in _POSITIONAL and (self.line is None or self.column is None):
            raise ValueError(f"{self.operation} requires line and column")
        return self


def _render_symbols(symbols: list[dict[str, Any]], depth: int = 0) -> list[str]:
    lines = []
    for symbol in symbols:
        kind = _SYMBOL_KINDS.get(symbol.get("kind", 0), "symbol")
        range_ = symbol.get("selectionRange") or symbol.get("range") or symbol.get("location", {}).get("range")
        where = ""
        if range_:
            line, column = to_external(range_["start"])
            where = f" {line}:{column}"
        lines.append(f"{'  ' * depth}{kind} {symbol.get('name', '?')}{where}")
        lines.extend(_render_symbols(symbol.get("children") or [], depth + 1))
    return lines


async def lsp(params: LspParams, ctx: ToolContext) -> ToolOutput:
    if ctx.supervisor is None:
        raise ToolExecutionError("language servers are not available in this session")
    path = ctx.resolve(params.path)
    root = ctx.working_directory.resolve()

    if params.operation == "diagnostics":
        report = await ctx.supervisor.get_diagnostics(path)
        if not report.ok:
            return ToolOutput(f"Diagnostics {report.status.value}: {report.detail or 'no server'}")
        return ToolOutput(format_all(report.diagnostics) or "No diagnostics")

    if not path.is_file():
        raise ToolExecutionError(f"file not found: {params.path}")
    report = await ctx.supervisor.touch_file(path, wait=False)
    if not report.ok:
        return ToolOutput(
            f"No language server available for {params.path}: {report.detail}", is_error=True
        )
    try:
        client = await ctx.supervisor.client_for(path)
        uri = path_to_uri(path)
        if params.operation == "definition":
            locations = await client.definition(uri, params.line, params.column)
        elif params.operation == "references":
            locations = await client.references(uri, params.line, params.column)
        elif params.operation == "hover":
            text = await client.hover(uri, params.line, params.column)
            return ToolOutput(text or "No hover information")
        elif params.operation == "document_symbol":
            symbols = await client.document_symbols(uri)
            return ToolOutput("\n".join(_render_symbols(symbols)) or "No symbols found")
        else:
            symbols = await client.workspace_symbols(params.query)
            lines = [
                f"{_SYMBOL_KINDS.get(s.get('kind', 0), 'symbol')} {s.get('name', '?')} "
                f"{format_location(s.get('location') or {}, root=root)}"
                for s in symbols[:MAX_LOCATIONS]
            ]
            return ToolOutput("\n".join(lines) or "No symbols found")
    except AgentError as e:
        raise ToolExecutionError(f"{params.operation} failed: {e}") from e

    if not locations:
        return ToolOutput("No results")
    lines = [format_location(loc, root=root) for loc in locations[:MAX_LOCATIONS]]
    if len(locations) > MAX_LOCATIONS:
        lines.append(f"... ({len(locations) - MAX_LOCATIONS} more)")
    return ToolOutput("\n".join(lines))


TOOLS = (
    ToolSpec(
        name="lsp",
        description=(
            "Query the language server: definition, references, hover, document_symbol, "
            "workspace_symbol or diagnostics. Lines and columns are 1-based."
        ),
        params=LspParams,
        handler=lsp,
    ),
)
