"""Prompt text shipped with the package, stored as markdown files."""

from importlib.resources import files

_PROMPTS_PKG = files("codeagent.prompts")


def load_prompt(name: str) -> str:
    """Load a prompt by name (without .md extension)."""
    return _PROMPTS_PKG.joinpath(f"{name}.md").read_text(encoding="utf-8")


def list_prompts() -> list[str]:
    return sorted(f.name[:-3] for f in _PROMPTS_PKG.iterdir() if f.name.endswith(".md"))


def build_system_prompt(working_directory: str, *, plan_mode: bool = False) -> str:
    """The system prompt for a session rooted at ``working_directory``."""
    parts = [load_prompt("system").format(working_directory=working_directory)]
    if plan_mode:
        parts.append(load_prompt("plan"))
    return "\n\n".join(parts)


__all__ = ["build_system_prompt", "list_prompts", "load_prompt"]
