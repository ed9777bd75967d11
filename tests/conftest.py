"""Root pytest configuration for all tests."""

from __future__ import annotations

import os

import pytest

# Use litellm's bundled model cost map instead of fetching it over the network.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from codeagent.config import reset_config

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Keep user/system config files and env vars out of every test."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for name in ("CODEAGENT_LOG", "CODEAGENT_MODEL", "CODEAGENT_LSP_ENABLED"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("codeagent.config.paths.get_system_config_path", lambda: None)
    reset_config()
    yield
    reset_config()
