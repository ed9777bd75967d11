"""Token counting with tiktoken.

Counts are estimates: the tokenizer is fixed (o200k_base) regardless of the
model in use, which is close enough for budgeting context windows.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import TYPE_CHECKING

import tiktoken

if TYPE_CHECKING:
    from codeagent.core.llm.provider import Message

# Fixed framing cost per message (role markers, separators)
MESSAGE_OVERHEAD = 4

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Get cached tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("o200k_base")
    return _encoder


# Content hash -> token count cache, emptied whenever it reaches the limit
_token_cache: dict[int, int] = {}
TOKEN_CACHE_LIMIT = 20_000


def count_tokens(text: str) -> int:
    """Count tokens with caching."""
    if not text:
        return 0
    key = hash(text)
    cached = _token_cache.get(key)
    if cached is None:
        cached = len(_get_encoder().encode(text, disallowed_special=()))
        if len(_token_cache) >= TOKEN_CACHE_LIMIT:
            _token_cache.clear()
        _token_cache[key] = cached
    return cached


def count_message_tokens(message: Message) -> int:
    """Estimate the tokens a single message costs in a request.

    Tool call names and their serialized arguments count toward the total.
    """
    total = MESSAGE_OVERHEAD + count_tokens(message.content)
    for call in message.tool_calls:
        total += count_tokens(call.name)
        if call.arguments is not None:
            total += count_tokens(json.dumps(call.arguments, sort_keys=True))
        else:
            total += count_tokens(call.raw_arguments or "")
    if message.tool_call_id:
        total += count_tokens(message.tool_call_id)
    return total


def count_messages_tokens(messages: Iterable[Message]) -> int:
    """Estimate total tokens for a sequence of messages."""
    return sum(count_message_tokens(m) for m in messages)


def count_tools_tokens(tool_schemas: list[dict]) -> int:
    """Estimate tokens taken by advertised tool schemas."""
    if not tool_schemas:
        return 0
    return count_tokens(json.dumps(tool_schemas, sort_keys=True))
