"""Language server supervision.

Maps files to server profiles, spawns one server per (profile, workspace root)
on first use, and keeps servers that failed to start out of rotation until an
explicit reset. Diagnostics requests degrade to an "unavailable" report
instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from codeagent.config.schema import LspConfig
from codeagent.core.locks import KeyedLocks
from codeagent.errors import AgentError, LspServerUnavailable
from codeagent.lsp.client import ClientState, LspClient
from codeagent.lsp.diagnostics import DiagnosticsReport, DiagnosticsStatus, summarize
from codeagent.lsp.positions import path_to_uri
from codeagent.lsp.profiles import ProfileRegistry, ServerProfile, command_available, find_root
from codeagent.lsp.transport import RpcTransport

_log = logging.getLogger("codeagent.lsp")
_stderr_log = logging.getLogger("codeagent.lsp.stderr")


class ServerProcess(Protocol):
    """The parts of ``asyncio.subprocess.Process`` the supervisor relies on."""

    stdin: Any
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None
    returncode: int | None

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


SpawnFn = Callable[[Sequence[str], dict[str, str], Path], Awaitable[ServerProcess]]


async def spawn_process(command: Sequence[str], env: dict[str, str], cwd: Path) -> ServerProcess:
    """Default spawn primitive: a child process with piped stdio."""
    if not command:
        raise LspServerUnavailable("empty server command")
    if not command_available(command[0]):
        raise LspServerUnavailable(f"language server command not found: {command[0]}")
    try:
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env={**os.environ, **env},
        )
    except OSError as e:
        raise LspServerUnavailable(f"failed to start {command[0]}: {e}") from e


async def _discard(process: ServerProcess, timeout: float = 2.0) -> None:
    """Terminate a process that will never get a client, then reap it."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
        await asyncio.wait_for(process.wait(), timeout)
    except ProcessLookupError:
        return
    except TimeoutError:
        process.kill()
        await process.wait()


@dataclass(slots=True)
class LspServerInstance:
    """A snapshot of one supervised server."""

    id: str
    root_path: Path
    status: ClientState
    process_handle: ServerProcess | None = None


ServerKey = tuple[str, Path]


def instance_id(key: ServerKey) -> str:
    return f"{key[0]}:{key[1]}"


class LspSupervisor:
    """Owns every language server client for the session."""

    def __init__(
        self,
        config: LspConfig | None = None,
        *,
        registry: ProfileRegistry | None = None,
        spawn: SpawnFn | None = None,
    ) -> None:
        self.config = config or LspConfig()
        if registry is None:
            registry = ProfileRegistry(
                (ServerProfile.from_config(s) for s in self.config.servers),
                disabled=self.config.disabled_servers,
            )
        self.registry = registry
        self._spawn = spawn or spawn_process
        self._clients: dict[ServerKey, LspClient] = {}
        self._processes: dict[ServerKey, ServerProcess] = {}
        self._broken: dict[ServerKey, str] = {}
        self._spawn_locks = KeyedLocks()
        self._stderr_tasks: dict[ServerKey, asyncio.Task[None]] = {}

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def key_for(self, path: str | Path) -> tuple[ServerProfile, ServerKey]:
        """Resolve the profile and (profile id, root) key for a file.

        Raises:
            LspServerUnavailable: LSP disabled or no profile handles the file.
        """
        if not self.enabled:
            raise LspServerUnavailable("language servers are disabled")
        file_path = Path(path).resolve()
        profile = self.registry.profile_for(file_path)
        if profile is None:
            disabled = [p.id for p in self.registry.candidates(file_path) if self.registry.is_disabled(p.id)]
            if disabled:
                raise LspServerUnavailable(f"language server {disabled[0]} is disabled")
            raise LspServerUnavailable(f"no language server for {file_path.suffix or file_path.name}")
        root = find_root(file_path.parent, profile.root_markers)
        return profile, (profile.id, root)

    def is_broken(self, key: ServerKey) -> bool:
        return key in self._broken

    async def client_for(self, path: str | Path) -> LspClient:
        """Return a READY client for ``path``, spawning it on first use."""
        profile, key = self.key_for(path)
        client = self._ready_client(key)
        if client is not None:
            return client

        async with self._spawn_locks.hold(key):
            client = self._ready_client(key)
            if client is not None:
                return client
            return await self._start(profile, key)

    def _ready_client(self, key: ServerKey) -> LspClient | None:
        if key in self._broken:
            raise LspServerUnavailable(f"{instance_id(key)} is broken: {self._broken[key]}")
        client = self._clients.get(key)
        if client is None:
            return None
        if client.state is ClientState.READY:
            return client
        if client.state is ClientState.BROKEN:
            self._mark_broken(key, "connection lost")
            raise LspServerUnavailable(f"{instance_id(key)} is broken: connection lost")
        return None

    async def _start(self, profile: ServerProfile, key: ServerKey) -> LspClient:
        root = key[1]
        name = instance_id(key)
        _log.info("Starting language server %s (%s)", name, " ".join(profile.command))
        try:
            process = await self._spawn(profile.command, profile.env, root)
        except LspServerUnavailable as e:
            self._mark_broken(key, str(e))
            raise
        except OSError as e:
            self._mark_broken(key, str(e))
            raise LspServerUnavailable(f"failed to start {name}: {e}") from e

        if process.stdout is None or process.stdin is None:
            self._mark_broken(key, "process has no stdio pipes")
            await _discard(process)
            raise LspServerUnavailable(f"{name}: process has no stdio pipes")

        self._processes[key] = process
        if process.stderr is not None:
            self._stderr_tasks[key] = asyncio.create_task(self._drain_stderr(name, process.stderr))

        transport = RpcTransport(
            process.stdout,
            process.stdin,
            name=name,
            default_timeout=self.config.request_timeout,
        )
        client = LspClient(
            profile.id,
            root,
            transport,
            process=process,
            request_timeout=self.config.request_timeout,
            initialize_timeout=self.config.initialize_timeout,
            shutdown_timeout=self.config.shutdown_timeout,
            initialization_options=profile.initialization_options,
        )
        self._clients[key] = client
        try:
            await client.initialize()
        except Exception as e:
            _log.warning("Language server %s failed to initialize: %s", name, e)
            self._mark_broken(key, f"initialize failed: {e}")
            await client.shutdown()
            raise LspServerUnavailable(f"{name} failed to initialize: {e}") from e
        return client

    def _mark_broken(self, key: ServerKey, reason: str) -> None:
        if key not in self._broken:
            _log.warning("Marking language server %s broken: %s", instance_id(key), reason)
        self._broken[key] = reason

    async def _drain_stderr(self, name: str, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            _stderr_log.debug("[%s] %s", name, line.decode("utf-8", "replace").rstrip())

    async def reset(self, profile_id: str | None = None, root: str | Path | None = None) -> int:
        """Clear broken markers (all, or those matching the filters).

        Returns the number of servers cleared. Their stale clients are
        discarded so the next access spawns fresh.
        """
        root_path = Path(root).resolve() if root is not None else None
        cleared = [
            key
            for key in self._broken
            if (profile_id is None or key[0] == profile_id)
            and (root_path is None or key[1] == root_path)
        ]
        for key in cleared:
            del self._broken[key]
            client = self._clients.pop(key, None)
            self._processes.pop(key, None)
            if client is not None and client.state is not ClientState.STOPPED:
                await client.shutdown()
            task = self._stderr_tasks.pop(key, None)
            if task is not None:
                task.cancel()
        return len(cleared)

    async def touch_file(
        self, path: str | Path, *, text: str | None = None, wait: bool = True
    ) -> DiagnosticsReport:
        """Sync a file's current content to its server and collect diagnostics.

        Opens the document the first time, otherwise sends a change followed
        by a save. Never raises.
        """
        try:
            _, key = self.key_for(path)
        except LspServerUnavailable as e:
            return self._unavailable(path, e)
        try:
            client = await self.client_for(path)
        except LspServerUnavailable as e:
            return self._unavailable(path, e, key)

        file_path = Path(path).resolve()
        uri = path_to_uri(file_path)
        try:
            if text is None:
                text = file_path.read_text(encoding="utf-8", errors="replace")
            if client.is_open(uri):
                await client.change(uri, text)
                await client.save(uri, text)
            else:
                await client.open(uri, text)
            if not wait:
                return DiagnosticsReport(DiagnosticsStatus.OK, client.diagnostics(uri), instance_id(key))
            diagnostics = await client.wait_for_diagnostics(uri, self.config.diagnostic_timeout)
        except OSError as e:
            return DiagnosticsReport.unavailable(f"cannot read {file_path}: {e}", instance_id(key))
        except AgentError as e:
            self._mark_broken(key, str(e))
            return DiagnosticsReport(DiagnosticsStatus.BROKEN, [], instance_id(key), str(e))

        if client.state is ClientState.BROKEN:
            self._mark_broken(key, "connection lost")
            return DiagnosticsReport(DiagnosticsStatus.BROKEN, diagnostics, instance_id(key), "connection lost")
        return DiagnosticsReport(DiagnosticsStatus.OK, diagnostics, instance_id(key))

    async def get_diagnostics(self, path: str | Path, *, timeout: float | None = None) -> DiagnosticsReport:
        """Diagnostics for a file, opening it on its server if needed. Never raises."""
        try:
            _, key = self.key_for(path)
        except LspServerUnavailable as e:
            return self._unavailable(path, e)
        try:
            client = await self.client_for(path)
        except LspServerUnavailable as e:
            return self._unavailable(path, e, key)

        uri = path_to_uri(path)
        if not client.is_open(uri):
            return await self.touch_file(path)
        limit = self.config.diagnostic_timeout if timeout is None else timeout
        diagnostics = await client.wait_for_diagnostics(uri, limit)
        return DiagnosticsReport(DiagnosticsStatus.OK, diagnostics, instance_id(key))

    def _unavailable(
        self, path: str | Path, error: LspServerUnavailable, key: ServerKey | None = None
    ) -> DiagnosticsReport:
        _log.debug("Diagnostics unavailable for %s: %s", path, error)
        if key is not None and key in self._broken:
            return DiagnosticsReport(DiagnosticsStatus.BROKEN, [], instance_id(key), str(error))
        return DiagnosticsReport.unavailable(str(error), instance_id(key) if key else None)

    def diagnostic_counts(self) -> dict[str, int]:
        """Aggregate severity counts across all live servers."""
        return summarize(
            d
            for client in self._clients.values()
            if client.state is ClientState.READY
            for items in client.all_diagnostics().values()
            for d in items
        )

    def servers(self) -> list[LspServerInstance]:
        instances = []
        for key, client in self._clients.items():
            status = ClientState.BROKEN if key in self._broken else client.state
            instances.append(LspServerInstance(instance_id(key), key[1], status, self._processes.get(key)))
        return instances

    async def shutdown(self) -> None:
        """Stop every server."""
        clients = list(self._clients.values())
        self._clients.clear()
        self._processes.clear()
        results = await asyncio.gather(*(c.shutdown() for c in clients), return_exceptions=True)
        for client, result in zip(clients, results):
            if isinstance(result, BaseException):
                _log.warning("Error stopping %s: %s", client.server_id, result)
        for task in self._stderr_tasks.values():
            task.cancel()
        self._stderr_tasks.clear()
