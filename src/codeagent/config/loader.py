"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching with reload support
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any, TypeVar

import yaml

from codeagent.config.merge import merge_configs
from codeagent.config.paths import get_config_paths
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

_log = logging.getLogger("codeagent.config")

_cached_config: Config | None = None

_T = TypeVar("_T")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning an empty dict if missing or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build a config layer from environment variables (highest priority).

    Recognized:
        CODEAGENT_LOG          -> logging.file
        CODEAGENT_MODEL        -> llm.model
        CODEAGENT_LSP_ENABLED  -> lsp.enabled
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("CODEAGENT_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    model = os.environ.get("CODEAGENT_MODEL")
    if model:
        overrides.setdefault("llm", {})["model"] = model

    lsp_enabled = os.environ.get("CODEAGENT_LSP_ENABLED")
    if lsp_enabled is not None:
        value = lsp_enabled.strip().lower()
        if value in _TRUE_VALUES:
            overrides.setdefault("lsp", {})["enabled"] = True
        elif value in _FALSE_VALUES:
            overrides.setdefault("lsp", {})["enabled"] = False
        else:
            _log.warning("Ignoring CODEAGENT_LSP_ENABLED=%r", lsp_enabled)

    return overrides


def _section(cls: type[_T], data: Any, **nested: Any) -> _T:
    """Build a flat dataclass section from a mapping, ignoring unknown keys."""
    if not isinstance(data, dict):
        data = {}
    names = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    kwargs = {k: v for k, v in data.items() if k in names and k not in nested and v is not None}
    kwargs.update(nested)
    return cls(**kwargs)


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert a merged dict to the typed Config dataclass."""
    perms_data = data.get("permissions") or {}
    rules = [
        PermissionRuleConfig(pattern=r["pattern"], allow=bool(r.get("allow", True)))
        for r in perms_data.get("rules", [])
        if isinstance(r, dict) and r.get("pattern")
    ]
    permissions = _section(PermissionsConfig, perms_data, rules=rules)

    lsp_data = data.get("lsp") or {}
    servers = [
        LspServerConfig(
            id=s["id"],
            command=list(s.get("command", [])),
            extensions=list(s.get("extensions", [])),
            root_markers=list(s.get("root_markers", [])),
            env=dict(s.get("env", {})),
            initialization_options=dict(s.get("initialization_options", {})),
        )
        for s in lsp_data.get("servers", [])
        if isinstance(s, dict) and s.get("id") and s.get("command")
    ]
    lsp = _section(
        LspConfig,
        lsp_data,
        servers=servers,
        disabled_servers=[s for s in lsp_data.get("disabled_servers", []) if isinstance(s, str)],
    )

    logging_data = data.get("logging") or {}
    loggers = logging_data.get("loggers") if isinstance(logging_data, dict) else None
    logging_config = _section(
        LoggingConfig,
        logging_data,
        loggers={str(k): str(v) for k, v in loggers.items()} if isinstance(loggers, dict) else {},
    )

    known_keys = {
        "llm",
        "agent",
        "tools",
        "permissions",
        "compaction",
        "lsp",
        "storage",
        "logging",
    }
    extra = {k: v for k, v in data.items() if k not in known_keys}

    return Config(
        llm=_section(LLMConfig, data.get("llm")),
        agent=_section(AgentConfig, data.get("agent")),
        tools=_section(ToolsConfig, data.get("tools")),
        permissions=permissions,
        compaction=_section(CompactionConfig, data.get("compaction")),
        lsp=lsp,
        storage=_section(StorageConfig, data.get("storage")),
        logging=logging_config,
        extra=extra,
    )


def load_config(session_root: str | None = None, reload: bool = False) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Project config ($session_root/.codeagent/config.yaml)
    3. User config
    4. System config

    Only the global config (no ``session_root``) is cached.
    """
    global _cached_config

    if _cached_config is not None and not reload and session_root is None:
        return _cached_config

    layers: list[dict[str, Any]] = []
    for path in get_config_paths(session_root):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            layers.append(config_data)

    env_config = env_overrides()
    if env_config:
        layers.append(env_config)

    config = dict_to_config(merge_configs(*layers))

    if session_root is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Drop the cached config. Useful for testing."""
    global _cached_config
    _cached_config = None
