"""Session state: durable storage, the conversation window and compaction."""

from codeagent.session.compactor import CompactionPolicy, CompactionResult, SessionCompactor
from codeagent.session.storage import (
    MemorySessionStorage,
    Session,
    SessionStorage,
    YamlSessionStorage,
)
from codeagent.session.stats import FileChange, SessionStats
from codeagent.session.store import ConversationStore

__all__ = [
    "CompactionPolicy",
    "CompactionResult",
    "ConversationStore",
    "FileChange",
    "MemorySessionStorage",
    "Session",
    "SessionCompactor",
    "SessionStats",
    "SessionStorage",
    "YamlSessionStorage",
]
