"""Logging configuration for codeagent.

Uses Python's standard logging module with support for:
- File logging via config or CODEAGENT_LOG environment variable
- Verbosity levels: error(0), warning(1), info(2), verbose(3), trace(4)
- Stderr output only when attached to a real console
- Per-logger levels: language server stderr and the model client libraries
  are kept quiet unless ``logging.loggers`` raises them

Logger names used by the package:
    codeagent.agent       the reasoning/acting loop
    codeagent.llm         model gateway
    codeagent.lsp         server supervision and JSON-RPC transport
    codeagent.lsp.stderr  raw stderr lines from language servers
    codeagent.tools       tool batches, permissions, worker pool
    codeagent.terminal    shell commands
    codeagent.session     conversation store, compaction, statistics
    codeagent.storage     session files on disk
    codeagent.config      config file loading
    codeagent.runtime     session wiring
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from codeagent.config.schema import LoggingConfig

# Custom log levels
TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

logger = logging.getLogger("codeagent")

_initialized = False

_LEVEL_MAP = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "VERBOSE": VERBOSE,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# 0=errors only, 4=everything
_VERBOSITY_MAP = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: VERBOSE,
    4: TRACE,
}


_DEFAULT_LOGGER_LEVELS = {
    "codeagent.lsp.stderr": logging.WARNING,
    "LiteLLM": logging.WARNING,
    "LiteLLM Router": logging.WARNING,
    "httpx": logging.WARNING,
}


class _LowercaseLevelFormatter(logging.Formatter):
    """Formatter that emits lowercase level names."""

    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        return super().format(record)


def resolve_level(config: LoggingConfig | None) -> int:
    """Pick the effective log level; ``verbose`` wins over ``level``."""
    if config is None:
        return logging.INFO
    if config.verbose is not None:
        return _VERBOSITY_MAP.get(config.verbose, TRACE)
    if config.level:
        return _LEVEL_MAP.get(config.level.upper(), logging.INFO)
    return logging.INFO


def logger_levels(config: LoggingConfig | None) -> dict[str, int]:
    """Package defaults merged with ``config.loggers``; unknown level names mean INFO."""
    levels = dict(_DEFAULT_LOGGER_LEVELS)
    if config is not None:
        for name, level in config.loggers.items():
            levels[name] = _LEVEL_MAP.get(str(level).upper(), logging.INFO)
    return levels


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Initialize logging based on configuration.

    Call once at startup. Subsequent calls are no-ops.

    Args:
        config: Optional LoggingConfig with level, verbose, and file settings.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_level = resolve_level(config)
    logger.setLevel(log_level)
    for name, level in logger_levels(config).items():
        logging.getLogger(name).setLevel(level)

    formatter = _LowercaseLevelFormatter(
        "%(asctime)s %(levelname)s: %(message)s", datefmt="%H:%M:%S"
    )

    log_path = config.file if config and config.file else os.environ.get("CODEAGENT_LOG")

    if log_path:
        log_path = os.path.expanduser(log_path)
        try:
            file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            if sys.stderr.isatty():
                print(f"[codeagent] Failed to open log file: {e}", file=sys.stderr)
                _add_stderr_handler(formatter, log_level)
    elif sys.stderr.isatty():
        _add_stderr_handler(formatter, log_level)


def _add_stderr_handler(formatter: logging.Formatter, level: int = logging.DEBUG) -> None:
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(formatter)
    logger.addHandler(stderr_handler)


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Optional name for a child logger (e.g., "lsp", "agent").
              If None, returns the root codeagent logger.
    """
    if name:
        return logger.getChild(name)
    return logger
