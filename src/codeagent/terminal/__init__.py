"""Shell command execution for the bash tool."""

from codeagent.terminal.executor import ShellExecutor, ShellResult

__all__ = ["ShellExecutor", "ShellResult"]
