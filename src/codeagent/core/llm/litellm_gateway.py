"""litellm-backed model gateway.

Supports the providers litellm does:
- Anthropic: "anthropic/claude-sonnet-4-20250514"
- OpenAI: "gpt-4o"
- Local: "ollama/qwen2.5-coder"

See https://docs.litellm.ai/docs/providers for the full list.
"""

from __future__ import annotations

import logging
from typing import Any

import litellm

from codeagent.core.llm.provider import (
    DeltaCallback,
    LlmRequest,
    LlmResponse,
    ToolCall,
)
from codeagent.errors import ModelError

_log = logging.getLogger("codeagent.llm")

# Transient provider conditions worth retrying
_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)

DEFAULT_CONTEXT_SIZE = 128_000


def classify_error(exc: BaseException) -> ModelError:
    """Map a litellm exception to ModelError with the right retry flag."""
    if isinstance(exc, ModelError):
        return exc
    if isinstance(exc, _RETRYABLE_ERRORS):
        return ModelError(f"transient model error: {exc}", retryable=True)
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status >= 500 or status == 429):
        return ModelError(f"model error ({status}): {exc}", retryable=True)
    return ModelError(f"model error: {exc}", retryable=False)


def get_context_size(model: str, default: int = DEFAULT_CONTEXT_SIZE) -> int:
    """Look up the model's input context size, or ``default`` if unknown."""
    try:
        info = litellm.get_model_info(model)
    except Exception as e:  # litellm raises plain Exception for unknown models
        _log.debug("No model info for %s: %s", model, e)
        return default
    size = info.get("max_input_tokens") or info.get("max_tokens")
    return int(size) if size else default


def _usage(obj: Any) -> dict[str, int]:
    usage = getattr(obj, "usage", None)
    if not usage:
        return {}
    counts = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = getattr(usage, key, None)
        if isinstance(value, int):
            counts[key] = value
    return counts


class LiteLLMGateway:
    """Model gateway using litellm for multi-provider support.

    Usage:
        gateway = LiteLLMGateway("anthropic/claude-sonnet-4-20250514")
        gateway = LiteLLMGateway("gpt-4o", api_base="http://localhost:8000/v1")
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        stream: bool = True,
        **kwargs: Any,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._api_base = api_base
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._stream = stream
        self._kwargs = kwargs

    @property
    def model(self) -> str:
        return self._model

    def _build_kwargs(self, request: LlmRequest, *, stream: bool) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(m.to_llm() for m in request.messages)

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "stream": stream,
            **self._kwargs,
        }
        if stream:
            kwargs.setdefault("stream_options", {"include_usage": True})
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = "auto"
        max_tokens = request.max_tokens or self._max_tokens
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._api_base:
            kwargs["api_base"] = self._api_base
        return kwargs

    async def complete(
        self,
        request: LlmRequest,
        on_delta: DeltaCallback | None = None,
    ) -> LlmResponse:
        stream = self._stream and on_delta is not None
        kwargs = self._build_kwargs(request, stream=stream)
        try:
            response = await litellm.acompletion(**kwargs)
            if stream:
                return await self._collect_stream(response, on_delta)
            return self._parse_response(response)
        except ModelError:
            raise
        except Exception as e:
            err = classify_error(e)
            _log.warning("Completion failed (retryable=%s): %s", err.retryable, e)
            raise err from e

    def _parse_response(self, response: Any) -> LlmResponse:
        choice = response.choices[0]
        message = choice.message
        calls = [
            ToolCall.from_raw(tc.id, tc.function.name, tc.function.arguments)
            for tc in (getattr(message, "tool_calls", None) or [])
        ]
        return LlmResponse(
            content=message.content or "",
            tool_calls=calls,
            finish_reason=choice.finish_reason,
            usage=_usage(response),
        )

    async def _collect_stream(self, response: Any, on_delta: DeltaCallback | None) -> LlmResponse:
        text_parts: list[str] = []
        # index -> [id, name, argument fragments]
        partial_calls: dict[int, list[Any]] = {}
        finish_reason: str | None = None
        usage: dict[str, int] = {}

        async for chunk in response:
            # The usage chunk arrives last, usually with no choices
            usage = _usage(chunk) or usage
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            if choice.finish_reason:
                finish_reason = choice.finish_reason
            delta = choice.delta
            if delta is None:
                continue
            if delta.content:
                text_parts.append(delta.content)
                if on_delta is not None:
                    on_delta(delta.content)
            for tc in getattr(delta, "tool_calls", None) or []:
                index = tc.index if tc.index is not None else len(partial_calls)
                entry = partial_calls.setdefault(index, [None, "", []])
                if tc.id:
                    entry[0] = tc.id
                if tc.function is not None:
                    if tc.function.name:
                        entry[1] += tc.function.name
                    if tc.function.arguments:
                        entry[2].append(tc.function.arguments)

        calls = [
            ToolCall.from_raw(call_id or f"call_{index}", name, "".join(args))
            for index, (call_id, name, args) in sorted(partial_calls.items())
        ]
        return LlmResponse(
            content="".join(text_parts),
            tool_calls=calls,
            finish_reason=finish_reason,
            usage=usage,
        )
