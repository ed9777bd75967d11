"""Conversation state for one session."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path

from codeagent.core.llm.provider import Message, Role
from codeagent.core.tokens import count_message_tokens, count_messages_tokens
from codeagent.logging import get_logger
from codeagent.session.storage import Session, SessionStorage, generate_session_id

log = get_logger("session")

SYSTEM_ORIGINATOR = "system"


class ConversationStore:
    """Ordered message window for a session plus a running token estimate.

    Appends go to storage before they become visible in the window. The
    only other mutation is ``replace_window``, used by compaction.
    """

    def __init__(self, session: Session, storage: SessionStorage, messages: Sequence[Message] = ()) -> None:
        self.session = session
        self._storage = storage
        self._messages: list[Message] = list(messages)
        self._token_estimate = count_messages_tokens(self._messages)

    @classmethod
    def create(
        cls,
        storage: SessionStorage,
        *,
        working_directory: str | Path,
        model: str,
        system_prompt: str,
        agent_mode: str = "build",
        session_id: str | None = None,
        title: str | None = None,
    ) -> ConversationStore:
        session = Session(
            id=session_id or generate_session_id(),
            working_directory=str(working_directory),
            model=model,
            agent_mode=agent_mode,
        )
        if title:
            session.title = title
        storage.save_session(session)
        store = cls(session, storage)
        store.append(Message(Role.SYSTEM, system_prompt, originator=SYSTEM_ORIGINATOR))
        log.info("Created session %s in %s", session.id, session.working_directory)
        return store

    @classmethod
    def open(cls, storage: SessionStorage, session_id: str) -> ConversationStore:
        """Resume a persisted session."""
        session = storage.load_session(session_id)
        return cls(session, storage, storage.load(session_id))

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def token_estimate(self) -> int:
        return self._token_estimate

    @property
    def system_message(self) -> Message | None:
        if self._messages and self._messages[0].role is Role.SYSTEM and not self._messages[0].is_summary:
            return self._messages[0]
        return None

    @property
    def system_prompt(self) -> str:
        system = self.system_message
        return system.content if system is not None else ""

    def conversation(self) -> list[Message]:
        """The window without the leading system prompt."""
        start = 1 if self.system_message is not None else 0
        return self._messages[start:]

    def append(self, message: Message) -> None:
        self._storage.append(self.session.id, message)
        self._messages.append(message)
        self._token_estimate += count_message_tokens(message)
        self.session.updated_at = datetime.now()

    def extend(self, messages: Iterable[Message]) -> None:
        for message in messages:
            self.append(message)

    def pending_tool_calls(self) -> list[str]:
        """Ids of calls in the latest assistant turn that have no result yet."""
        for index in range(len(self._messages) - 1, -1, -1):
            message = self._messages[index]
            if message.role is Role.ASSISTANT:
                if not message.tool_calls:
                    return []
                answered = {
                    m.tool_call_id for m in self._messages[index + 1 :] if m.role is Role.TOOL
                }
                return [c.id for c in message.tool_calls if c.id not in answered]
        return []

    def replace_window(self, messages: Sequence[Message]) -> None:
        """Swap the whole window (compaction). Persisted atomically."""
        self._storage.rewrite(self.session.id, list(messages))
        self._messages = list(messages)
        self._token_estimate = count_messages_tokens(self._messages)
        self.session.updated_at = datetime.now()
        self.save()

    def record_step(self) -> int:
        """Count one model call against the session."""
        self.session.step_count += 1
        return self.session.step_count

    def set_mode(self, agent_mode: str) -> None:
        if agent_mode not in ("build", "plan"):
            raise ValueError(f"unknown agent mode: {agent_mode}")
        self.session.agent_mode = agent_mode
        self.save()

    def save(self) -> None:
        self._storage.save_session(self.session)

    def delete(self) -> None:
        self._storage.delete(self.session.id)
        self._messages.clear()
        self._token_estimate = 0
