"""Configuration management for codeagent.

Hierarchical YAML configuration:
- System-level config (/etc/codeagent/ or %PROGRAMDATA%)
- User-level config (~/.config/codeagent/, ~/.codeagent/ or %APPDATA%)
- Project-level config ($session_root/.codeagent/)
- Environment variable overrides (highest priority)

Example usage:
    from codeagent.config import load_config

    config = load_config(session_root="/path/to/project")
    print(config.agent.max_steps)
    print(config.lsp.diagnostic_timeout)
"""

from codeagent.config.loader import (
    dict_to_config,
    get_config,
    load_config,
    reset_config,
)
from codeagent.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_project_dir,
    get_system_config_path,
    get_user_config_path,
)
from codeagent.config.schema import (
    AgentConfig,
    CompactionConfig,
    Config,
    LLMConfig,
    LoggingConfig,
    LspConfig,
    LspServerConfig,
    PermissionRuleConfig,
    PermissionsConfig,
    StorageConfig,
    ToolsConfig,
)

__all__ = [
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    "dict_to_config",
    "AgentConfig",
    "CompactionConfig",
    "LLMConfig",
    "LoggingConfig",
    "LspConfig",
    "LspServerConfig",
    "PermissionRuleConfig",
    "PermissionsConfig",
    "StorageConfig",
    "ToolsConfig",
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
    "get_project_dir",
]
