"""Language server profiles and workspace root detection."""

from __future__ import annotations

import shutil
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from codeagent.config.schema import LspServerConfig


@dataclass(frozen=True)
class ServerProfile:
    """How to launch a language server and which files it handles."""

    id: str
    command: tuple[str, ...]
    extensions: frozenset[str]
    root_markers: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    initialization_options: dict[str, Any] = field(default_factory=dict)

    def handles(self, path: str | Path) -> bool:
        return Path(path).suffix.lower() in self.extensions

    @classmethod
    def from_config(cls, cfg: LspServerConfig) -> ServerProfile:
        return cls(
            id=cfg.id,
            command=tuple(cfg.command),
            extensions=frozenset(e.lower() if e.startswith(".") else f".{e.lower()}" for e in cfg.extensions),
            root_markers=tuple(cfg.root_markers),
            env=dict(cfg.env),
            initialization_options=dict(cfg.initialization_options),
        )


def _profile(id: str, command: list[str], extensions: list[str], markers: list[str]) -> ServerProfile:
    return ServerProfile(id, tuple(command), frozenset(extensions), tuple(markers))


BUILTIN_PROFILES: tuple[ServerProfile, ...] = (
    _profile(
        "typescript",
        ["npx", "typescript-language-server", "--stdio"],
        [".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs"],
        ["package.json", "tsconfig.json", "jsconfig.json"],
    ),
    _profile(
        "java",
        ["jdtls"],
        [".java"],
        ["pom.xml", "build.gradle", "settings.gradle", "build.gradle.kts", "settings.gradle.kts"],
    ),
    _profile(
        "python",
        ["npx", "pyright-langserver", "--stdio"],
        [".py", ".pyw", ".pyi"],
        ["pyproject.toml", "setup.py", "requirements.txt", "setup.cfg", "pyrightconfig.json"],
    ),
    _profile("go", ["gopls"], [".go"], ["go.mod", "go.sum", "go.work"]),
    _profile("rust", ["rust-analyzer"], [".rs"], ["Cargo.toml", "Cargo.lock", "rust-toolchain.toml"]),
    _profile(
        "json",
        ["npx", "-y", "vscode-json-languageserver", "--stdio"],
        [".json", ".jsonc"],
        ["package.json", "tsconfig.json"],
    ),
    _profile("yaml", ["npx", "-y", "yaml-language-server", "--stdio"], [".yaml", ".yml"], [".yamllint"]),
    _profile("html", ["npx", "-y", "vscode-html-languageserver", "--stdio"], [".html", ".htm"], []),
    _profile(
        "css",
        ["npx", "-y", "vscode-css-languageserver", "--stdio"],
        [".css", ".scss", ".sass", ".less"],
        [],
    ),
    _profile("markdown", ["npx", "-y", "markdown-language-server", "--stdio"], [".md", ".markdown"], []),
)


def find_root(start: Path, markers: Iterable[str]) -> Path:
    """Walk upward from ``start`` to the nearest directory holding a marker.

    Falls back to ``start`` itself when no marker is found.
    """
    markers = tuple(markers)
    start = start.resolve()
    if markers:
        for directory in (start, *start.parents):
            if any((directory / marker).exists() for marker in markers):
                return directory
    return start


def command_available(command: str) -> bool:
    """``npx`` installs on demand, so it always counts as available."""
    if command == "npx":
        return True
    return shutil.which(command) is not None


class ProfileRegistry:
    """Custom profiles are consulted before built-ins."""

    def __init__(
        self,
        custom: Iterable[ServerProfile] = (),
        *,
        disabled: Iterable[str] = (),
        include_builtin: bool = True,
    ) -> None:
        self._custom = list(custom)
        self._builtin = list(BUILTIN_PROFILES) if include_builtin else []
        self._disabled = set(disabled)

    def register(self, profile: ServerProfile) -> None:
        self._custom = [p for p in self._custom if p.id != profile.id]
        self._custom.append(profile)

    def is_disabled(self, profile_id: str) -> bool:
        return profile_id in self._disabled

    def candidates(self, path: str | Path) -> Iterator[ServerProfile]:
        """Every profile handling ``path``, disabled ones included, in precedence order."""
        return (p for p in (*self._custom, *self._builtin) if p.handles(path))

    def profile_for(self, path: str | Path) -> ServerProfile | None:
        """The first enabled profile handling ``path``'s extension."""
        return next((p for p in self.candidates(path) if not self.is_disabled(p.id)), None)

    def supported_extensions(self) -> set[str]:
        return {ext for p in (*self._custom, *self._builtin) for ext in p.extensions}
