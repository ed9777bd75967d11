"""Configuration schema dataclasses for codeagent.

Defines the structure of configuration at all levels (system, user, project).
Every field has a default so partial configs merge cleanly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LLMConfig:
    """Language model gateway configuration."""

    model: str = "anthropic/claude-sonnet-4-20250514"
    api_base: str | None = None  # Custom endpoint
    max_tokens: int | None = None  # Completion cap; provider default when unset
    temperature: float | None = None
    context_size: int | None = None  # Overrides litellm's model info when set
    stream: bool = True  # Stream deltas to listeners


@dataclass
class AgentConfig:
    """Agent loop limits and retry policy."""

    max_steps: int = 50
    max_consecutive_tool_errors: int = 5
    max_model_retries: int = 3
    retry_base_delay: float = 1.0  # Seconds; doubled per attempt
    retry_max_delay: float = 30.0
    model_timeout: float = 300.0
    doom_loop_threshold: int = 3  # Identical tool batches in a row before failing


@dataclass
class ToolsConfig:
    """Tool executor sizing."""

    max_workers: int = 10
    queue_size: int = 32  # Pending submissions before submitters wait
    call_timeout: float = 120.0
    max_output_chars: int = 30_000


@dataclass
class PermissionRuleConfig:
    """A permission rule matched against tool names.

    Example config.yaml:
        permissions:
          rules:
            - pattern: "bash"
              allow: false
            - pattern: "write_*"
              allow: true
    """

    pattern: str
    allow: bool = True


@dataclass
class PermissionsConfig:
    rules: list[PermissionRuleConfig] = field(default_factory=list)
    approval_timeout: float = 300.0  # Expiry counts as denial


@dataclass
class CompactionConfig:
    """History compaction settings."""

    enabled: bool = True
    policy: str = "summarize"  # "summarize" or "truncate"
    trigger_percent: float = 0.90
    warning_percent: float = 0.75
    keep_last: int = 10
    summary_max_tokens: int = 300
    summary_message_chars: int = 500  # Per-message cap in the summarization transcript
    summary_timeout: float = 60.0  # Seconds before summarization gives up and truncates
    default_context_size: int = 128_000


@dataclass
class LspServerConfig:
    """A custom language server profile.

    Example config.yaml:
        lsp:
          servers:
            - id: zig
              command: ["zls"]
              extensions: [".zig"]
              root_markers: ["build.zig"]
    """

    id: str
    command: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=list)
    root_markers: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    initialization_options: dict[str, Any] = field(default_factory=dict)


@dataclass
class LspConfig:
    """Language server supervision settings."""

    enabled: bool = True
    diagnostic_timeout: float = 3.0
    request_timeout: float = 5.0
    initialize_timeout: float = 10.0
    shutdown_timeout: float = 2.0
    disabled_servers: list[str] = field(default_factory=list)
    servers: list[LspServerConfig] = field(default_factory=list)


@dataclass
class StorageConfig:
    """Session persistence settings."""

    directory: str | None = None  # Default: <root>/.codeagent/sessions


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, takes precedence over level
    file: str | None = None  # Log file path
    # Per-logger level overrides, e.g. {"codeagent.lsp.stderr": "debug"}
    loggers: dict[str, str] = field(default_factory=dict)


@dataclass
class Config:
    """Root configuration object."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    permissions: PermissionsConfig = field(default_factory=PermissionsConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    lsp: LspConfig = field(default_factory=LspConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    extra: dict[str, Any] = field(default_factory=dict)  # Unknown top-level keys
