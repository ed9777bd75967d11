"""Session persistence.

YAML files under ``$PROJECT/.codeagent/sessions/``:

- ``<session-id>.yaml``: session metadata, rewritten atomically on save
- ``<session-id>.messages.yaml``: append-only message log, one YAML
  document per message; rewritten atomically after compaction
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import yaml

from codeagent.config.paths import get_project_dir
from codeagent.core.llm.provider import Message
from codeagent.errors import SessionNotFound
from codeagent.logging import get_logger

log = get_logger("storage")


def generate_session_id() -> str:
    return uuid.uuid4().hex[:12]


def generate_default_title() -> str:
    """Title like "Session 2026-01-17 10:30"."""
    return f"Session {datetime.now().strftime('%Y-%m-%d %H:%M')}"


@dataclass
class Session:
    """Durable session metadata.

    ``step_count`` accumulates model calls across every run of the session.
    """

    id: str
    working_directory: str
    model: str
    agent_mode: str = "build"  # "build" or "plan"
    title: str = field(default_factory=generate_default_title)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    step_count: int = 0

    @property
    def plan_mode(self) -> bool:
        return self.agent_mode == "plan"

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "title": self.title,
            "working_directory": self.working_directory,
            "model": self.model,
            "agent_mode": self.agent_mode,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "step_count": self.step_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["session_id"],
            working_directory=data.get("working_directory", ""),
            model=data.get("model", ""),
            agent_mode=data.get("agent_mode", "build"),
            title=data.get("title", "Untitled"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at", data["created_at"])),
            step_count=int(data.get("step_count", 0)),
        )


class SessionStorage(Protocol):
    """Where sessions and their message logs live."""

    def save_session(self, session: Session) -> None: ...

    def load_session(self, session_id: str) -> Session: ...

    def append(self, session_id: str, message: Message) -> None: ...

    def load(self, session_id: str) -> list[Message]: ...

    def rewrite(self, session_id: str, messages: list[Message]) -> None: ...

    def delete(self, session_id: str) -> None: ...

    def list_sessions(self) -> list[Session]: ...


def _atomic_write(path: Path, write: Any) -> None:
    temp_path = path.with_name(path.name + ".tmp")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            write(f)
        os.replace(temp_path, path)
    except OSError:
        if temp_path.exists():
            temp_path.unlink()
        raise


class YamlSessionStorage:
    """YAML-file storage rooted at a sessions directory."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    @classmethod
    def for_project(cls, project_root: str | Path) -> YamlSessionStorage:
        return cls(get_project_dir(project_root) / "sessions")

    def _meta_path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.yaml"

    def _log_path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.messages.yaml"

    def save_session(self, session: Session) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        data = session.to_dict()
        _atomic_write(
            self._meta_path(session.id),
            lambda f: yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False),
        )
        log.debug("Saved session %s", session.id)

    def load_session(self, session_id: str) -> Session:
        path = self._meta_path(session_id)
        if not path.exists():
            raise SessionNotFound(session_id)
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise SessionNotFound(f"{session_id}: corrupt metadata")
        return Session.from_dict(data)

    def append(self, session_id: str, message: Message) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self._log_path(session_id), "a", encoding="utf-8") as f:
            yaml.safe_dump(
                message.to_dict(), f, explicit_start=True, allow_unicode=True, sort_keys=False
            )
            f.flush()
            os.fsync(f.fileno())

    def load(self, session_id: str) -> list[Message]:
        path = self._log_path(session_id)
        if not path.exists():
            if self._meta_path(session_id).exists():
                return []
            raise SessionNotFound(session_id)
        with open(path, encoding="utf-8") as f:
            return [Message.from_dict(doc) for doc in yaml.safe_load_all(f) if isinstance(doc, dict)]

    def rewrite(self, session_id: str, messages: list[Message]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        docs = [m.to_dict() for m in messages]
        _atomic_write(
            self._log_path(session_id),
            lambda f: yaml.safe_dump_all(
                docs, f, explicit_start=True, allow_unicode=True, sort_keys=False
            ),
        )

    def delete(self, session_id: str) -> None:
        removed = False
        for path in (self._meta_path(session_id), self._log_path(session_id)):
            if path.exists():
                path.unlink()
                removed = True
        if not removed:
            raise SessionNotFound(session_id)
        log.info("Deleted session %s", session_id)

    def list_sessions(self) -> list[Session]:
        """All sessions, most recently updated first."""
        if not self.directory.exists():
            return []
        sessions = []
        for path in self.directory.glob("*.yaml"):
            if path.name.endswith(".messages.yaml"):
                continue
            try:
                sessions.append(self.load_session(path.stem))
            except (SessionNotFound, yaml.YAMLError, KeyError, ValueError) as e:
                log.warning("Skipping unreadable session file %s: %s", path, e)
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions


class MemorySessionStorage:
    """In-process storage, for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._messages: dict[str, list[Message]] = {}

    def save_session(self, session: Session) -> None:
        self._sessions[session.id] = Session.from_dict(session.to_dict())

    def load_session(self, session_id: str) -> Session:
        try:
            return Session.from_dict(self._sessions[session_id].to_dict())
        except KeyError:
            raise SessionNotFound(session_id) from None

    def append(self, session_id: str, message: Message) -> None:
        self._messages.setdefault(session_id, []).append(message)

    def load(self, session_id: str) -> list[Message]:
        if session_id not in self._messages and session_id not in self._sessions:
            raise SessionNotFound(session_id)
        return list(self._messages.get(session_id, []))

    def rewrite(self, session_id: str, messages: list[Message]) -> None:
        self._messages[session_id] = list(messages)

    def delete(self, session_id: str) -> None:
        if session_id not in self._sessions and session_id not in self._messages:
            raise SessionNotFound(session_id)
        self._sessions.pop(session_id, None)
        self._messages.pop(session_id, None)

    def list_sessions(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
