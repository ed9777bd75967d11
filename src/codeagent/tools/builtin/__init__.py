"""Built-in tools and the default registry."""

from __future__ import annotations

from codeagent.tools.builtin import files, lsp, search, shell
from codeagent.tools.registry import ToolRegistry


def build_default_registry(*, include_shell: bool = True, include_lsp: bool = True) -> ToolRegistry:
    """Register every built-in tool and freeze the registry."""
    registry = ToolRegistry()
    specs = [*files.TOOLS, *search.TOOLS]
    if include_shell:
        specs.extend(shell.TOOLS)
    if include_lsp:
        specs.extend(lsp.TOOLS)
    for spec in specs:
        registry.register(spec)
    return registry.freeze()


__all__ = ["build_default_registry"]
