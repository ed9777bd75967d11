"""Local shell execution with timeout, output cap and cancellation."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass

_log = logging.getLogger("codeagent.terminal")


@dataclass
class ShellResult:
    """Result of a shell command execution.

    Attributes:
        command: The command line that was run.
        exit_code: Process exit code, or None if killed on timeout.
        output: Combined stdout/stderr (may be truncated).
        truncated: True if output exceeded the output limit.
        status: "ok", "error" or "timeout".
        duration_ms: Wall time in milliseconds.
    """

    command: str
    exit_code: int | None
    output: str
    truncated: bool
    status: str
    duration_ms: float

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def render(self) -> str:
        """Text handed back to the model."""
        body = self.output.rstrip() or "(no output)"
        if self.status == "timeout":
            return body
        return f"{body}\n[exit code {self.exit_code}]"


class ShellExecutor:
    """Runs command lines through the system shell.

    The child is killed when the call times out or the awaiting task is
    cancelled, so a cancelled agent never leaves stray processes behind.
    """

    def __init__(self, default_cwd: str = ".", *, env: dict[str, str] | None = None) -> None:
        self._default_cwd = default_cwd
        self._env = env or {}

    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = 120.0,
        output_limit: int = 30_000,
    ) -> ShellResult:
        start = time.perf_counter()
        process_env = {**os.environ, **self._env}

        def elapsed() -> float:
            return (time.perf_counter() - start) * 1000

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=cwd or self._default_cwd,
                env=process_env,
            )
        except OSError as e:
            return ShellResult(command, 126, f"Failed to start shell: {e}", False, "error", elapsed())

        try:
            if timeout is not None:
                stdout_data, _ = await asyncio.wait_for(process.communicate(), timeout)
            else:
                stdout_data, _ = await process.communicate()
        except TimeoutError:
            await _kill(process)
            return ShellResult(
                command, None, f"Command timed out after {timeout:g}s", False, "timeout", elapsed()
            )
        except asyncio.CancelledError:
            await _kill(process)
            raise

        output = stdout_data.decode("utf-8", errors="replace")
        truncated = len(output) > output_limit
        if truncated:
            output = output[:output_limit] + "\n... (output truncated)"
        status = "ok" if process.returncode == 0 else "error"
        return ShellResult(command, process.returncode, output, truncated, status, elapsed())


async def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), 5.0)
    except TimeoutError:
        _log.warning("Process %s did not exit after kill", process.pid)
