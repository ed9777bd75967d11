"""Wires the per-session services together from configuration."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from codeagent.agent.loop import AgentLoop
from codeagent.config import Config, load_config
from codeagent.core.llm import LiteLLMGateway, LlmGateway, get_context_size
from codeagent.logging import get_logger, setup_logging
from codeagent.lsp.supervisor import LspSupervisor, SpawnFn
from codeagent.prompts import build_system_prompt
from codeagent.session.compactor import SessionCompactor
from codeagent.session.stats import SessionStats
from codeagent.session.storage import SessionStorage, YamlSessionStorage
from codeagent.session.store import ConversationStore
from codeagent.terminal.executor import ShellExecutor
from codeagent.tools.builtin import build_default_registry
from codeagent.tools.executor import ToolExecutor
from codeagent.tools.permissions import ApprovalCallback, PermissionManager
from codeagent.tools.registry import ToolContext, ToolRegistry

log = get_logger("runtime")


@dataclass
class AgentRuntime:
    """Everything one session needs, constructed once and passed by reference."""

    config: Config
    store: ConversationStore
    supervisor: LspSupervisor
    executor: ToolExecutor
    compactor: SessionCompactor
    loop: AgentLoop
    stats: SessionStats

    @classmethod
    def create(
        cls,
        working_directory: str | Path,
        *,
        config: Config | None = None,
        gateway: LlmGateway | None = None,
        approval: ApprovalCallback | None = None,
        storage: SessionStorage | None = None,
        registry: ToolRegistry | None = None,
        spawn: SpawnFn | None = None,
        session_id: str | None = None,
        agent_mode: str = "build",
    ) -> AgentRuntime:
        """Build a runtime for a new session, or resume ``session_id`` if given."""
        root = Path(working_directory).resolve()
        config = config or load_config(session_root=str(root))
        setup_logging(config.logging)

        if storage is None:
            storage = (
                YamlSessionStorage(config.storage.directory)
                if config.storage.directory
                else YamlSessionStorage.for_project(root)
            )
        if gateway is None:
            gateway = LiteLLMGateway(
                config.llm.model,
                api_base=config.llm.api_base,
                max_tokens=config.llm.max_tokens,
                temperature=config.llm.temperature,
                stream=config.llm.stream,
            )

        if session_id is not None:
            store = ConversationStore.open(storage, session_id)
            log.info("Resumed session %s (%d messages)", session_id, len(store))
        else:
            store = ConversationStore.create(
                storage,
                working_directory=root,
                model=gateway.model,
                system_prompt=build_system_prompt(str(root), plan_mode=agent_mode == "plan"),
                agent_mode=agent_mode,
            )

        supervisor = LspSupervisor(config.lsp, spawn=spawn)
        stats = SessionStats(store.id, supervisor)
        context = ToolContext(
            working_directory=root,
            supervisor=supervisor,
            shell=ShellExecutor(str(root)),
            max_output_chars=config.tools.max_output_chars,
            session_id=store.id,
            stats=stats,
        )
        executor = ToolExecutor(
            registry or build_default_registry(),
            context,
            permissions=PermissionManager.from_config(config.permissions, approval),
            config=config.tools,
        )
        context_size = config.llm.context_size or get_context_size(
            gateway.model, config.compaction.default_context_size
        )
        compactor = SessionCompactor(config.compaction, context_size=context_size, gateway=gateway)
        loop = AgentLoop(store, gateway, executor, compactor=compactor, stats=stats, config=config.agent)
        return cls(config, store, supervisor, executor, compactor, loop, stats)

    async def aclose(self) -> None:
        """Stop language servers and tool workers; persist the session."""
        self.loop.cancel("runtime closing")
        await self.executor.close()
        await self.supervisor.shutdown()
        self.store.save()
