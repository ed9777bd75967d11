"""Context compaction.

When the conversation estimate crosses the trigger threshold, the middle of
the window is replaced by a single summary message. The system prompt and the
most recent messages are kept verbatim. A tool result is never separated from
the assistant message that requested it, and nothing happens while a tool
batch is still waiting for results.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from codeagent.config.schema import CompactionConfig
from codeagent.core.llm.provider import LlmGateway, LlmRequest, Message, Role
from codeagent.errors import AgentError, CompactionFailure
from codeagent.session.store import ConversationStore

_log = logging.getLogger("codeagent.session.compactor")

SUMMARY_ORIGINATOR = "compaction"
SUMMARY_PREFIX = "Earlier conversation summarized: "

SUMMARIZER_PROMPT = (
    "You condense coding-agent conversations. Keep decisions, file paths, "
    "open problems and the user's goals. Drop pleasantries and raw tool output."
)


class CompactionPolicy(Enum):
    SUMMARIZE = "summarize"
    TRUNCATE = "truncate"


@dataclass(slots=True)
class CompactionResult:
    compacted: bool
    dropped: int = 0
    tokens_before: int = 0
    tokens_after: int = 0
    policy: CompactionPolicy | None = None
    reason: str = ""


@dataclass(slots=True)
class WindowSplit:
    head: list[Message]
    middle: list[Message]
    tail: list[Message]


def split_window(messages: list[Message], keep_last: int) -> WindowSplit:
    """Partition a window into system head, droppable middle and kept tail.

    The tail boundary moves earlier while it would start on a tool result, so
    the assistant message owning those results stays with them.
    """
    head = []
    if messages and messages[0].role is Role.SYSTEM and not messages[0].is_summary:
        head = [messages[0]]
    body = messages[len(head):]
    cut = max(len(body) - max(keep_last, 0), 0)
    while 0 < cut < len(body) and body[cut].role is Role.TOOL:
        cut -= 1
    return WindowSplit(head, body[:cut], body[cut:])


def _transcript(messages: list[Message], per_message_chars: int) -> str:
    lines = []
    for message in messages:
        if message.is_summary:
            lines.append(f"[earlier summary] {message.content}")
            continue
        content = message.content
        if len(content) > per_message_chars:
            content = content[:per_message_chars] + "..."
        label = message.role.value
        if message.tool_calls:
            calls = ", ".join(c.name for c in message.tool_calls)
            content = f"{content} [called: {calls}]".strip()
        lines.append(f"{label}: {content}")
    return "\n".join(lines)


class SessionCompactor:
    def __init__(
        self,
        config: CompactionConfig | None = None,
        *,
        context_size: int | None = None,
        gateway: LlmGateway | None = None,
    ) -> None:
        self.config = config or CompactionConfig()
        self.context_size = context_size or self.config.default_context_size
        self.gateway = gateway
        self.policy = CompactionPolicy(self.config.policy)
        self._warned = False

    @property
    def trigger_tokens(self) -> int:
        return int(self.context_size * self.config.trigger_percent)

    @property
    def warning_tokens(self) -> int:
        return int(self.context_size * self.config.warning_percent)

    def needs_compaction(self, store: ConversationStore, extra_tokens: int = 0) -> bool:
        estimate = store.token_estimate + extra_tokens
        if estimate >= self.warning_tokens and not self._warned:
            self._warned = True
            _log.warning(
                "Session %s at %d of %d context tokens", store.id, estimate, self.context_size
            )
        return self.config.enabled and estimate > self.trigger_tokens

    async def maybe_compact(self, store: ConversationStore, extra_tokens: int = 0) -> CompactionResult:
        """Compact if the estimate exceeds the trigger threshold."""
        if not self.needs_compaction(store, extra_tokens):
            return CompactionResult(False, tokens_before=store.token_estimate, reason="below threshold")
        return await self.compact(store)

    async def compact(self, store: ConversationStore) -> CompactionResult:
        """Replace the middle of the window with one summary message."""
        before = store.token_estimate
        if store.pending_tool_calls():
            return CompactionResult(False, tokens_before=before, reason="tool results pending")

        split = split_window(list(store.messages), self.config.keep_last)
        middle = split.middle
        if not middle:
            return CompactionResult(False, tokens_before=before, reason="nothing to drop")
        if len(middle) == 1 and middle[0].is_summary:
            return CompactionResult(False, tokens_before=before, reason="already compacted")

        policy = self.policy
        summary_text: str | None = None
        if policy is CompactionPolicy.SUMMARIZE:
            try:
                summary_text = await self._summarize(middle)
            except CompactionFailure as e:
                _log.warning("Summarization failed, truncating instead: %s", e)
                policy = CompactionPolicy.TRUNCATE
        if summary_text is None:
            summary_text = self._truncation_marker(middle)

        summary = Message(Role.SYSTEM, summary_text, originator=SUMMARY_ORIGINATOR)
        dropped = sum(1 for m in middle if not m.is_summary)
        store.replace_window([*split.head, summary, *split.tail])
        self._warned = False
        _log.info(
            "Compacted session %s: dropped %d messages, %d -> %d tokens (%s)",
            store.id,
            dropped,
            before,
            store.token_estimate,
            policy.value,
        )
        return CompactionResult(True, dropped, before, store.token_estimate, policy)

    async def _summarize(self, middle: list[Message]) -> str:
        if self.gateway is None:
            raise CompactionFailure("no gateway configured for summarization")
        transcript = _transcript(middle, self.config.summary_message_chars)
        request = LlmRequest(
            system_prompt=SUMMARIZER_PROMPT,
            messages=[
                Message(
                    Role.USER,
                    "Summarize this conversation so far in a short paragraph:\n\n" + transcript,
                )
            ],
            max_tokens=self.config.summary_max_tokens,
        )
        try:
            response = await asyncio.wait_for(
                self.gateway.complete(request), self.config.summary_timeout
            )
        except TimeoutError as e:
            raise CompactionFailure(
                f"summarization timed out after {self.config.summary_timeout}s"
            ) from e
        except AgentError as e:
            raise CompactionFailure(str(e)) from e
        except Exception as e:
            raise CompactionFailure(f"summarizer failed: {e}") from e
        text = response.content.strip()
        if not text:
            raise CompactionFailure("summarizer returned an empty response")
        return SUMMARY_PREFIX + text

    def _truncation_marker(self, middle: list[Message]) -> str:
        earlier = [m.content for m in middle if m.is_summary]
        dropped = sum(1 for m in middle if not m.is_summary)
        marker = f"[{dropped} earlier messages were removed to fit the context window]"
        return "\n".join([*earlier, marker])
