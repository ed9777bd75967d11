"""Platform-aware configuration path resolution.

- Windows: %PROGRAMDATA% (system), %APPDATA% (user)
- Unix: /etc/ (system), $XDG_CONFIG_HOME, ~/.config/codeagent/ or ~/.codeagent/ (user)
- Project: $session_root/.codeagent/
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

CONFIG_FILENAME = "config.yaml"
APP_NAME = "codeagent"
PROJECT_DIR = ".codeagent"


def get_system_config_path() -> Path | None:
    """Get system-level config path. The file may not exist."""
    if sys.platform == "win32":
        program_data = os.environ.get("PROGRAMDATA")
        if program_data:
            return Path(program_data) / APP_NAME / CONFIG_FILENAME
        return None
    return Path("/etc") / APP_NAME / CONFIG_FILENAME


def get_user_config_path() -> Path | None:
    """Get user-level config path. The file may not exist."""
    if sys.platform == "win32":
        app_data = os.environ.get("APPDATA")
        if app_data:
            return Path(app_data) / APP_NAME / CONFIG_FILENAME
        return None

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / APP_NAME / CONFIG_FILENAME

    home = Path.home()
    xdg_default = home / ".config"
    if xdg_default.exists():
        return xdg_default / APP_NAME / CONFIG_FILENAME

    return home / PROJECT_DIR / CONFIG_FILENAME


def get_project_dir(session_root: str | os.PathLike[str]) -> Path:
    """Directory holding project-level state (config, sessions)."""
    return Path(session_root) / PROJECT_DIR


def get_project_config_path(session_root: str | os.PathLike[str]) -> Path:
    return get_project_dir(session_root) / CONFIG_FILENAME


def get_config_paths(session_root: str | None = None) -> list[Path]:
    """Get all config paths in priority order (lowest to highest).

    Later paths override earlier ones when merging.
    """
    paths: list[Path] = []

    system_path = get_system_config_path()
    if system_path:
        paths.append(system_path)

    user_path = get_user_config_path()
    if user_path:
        paths.append(user_path)

    if session_root:
        paths.append(get_project_config_path(session_root))

    return paths
