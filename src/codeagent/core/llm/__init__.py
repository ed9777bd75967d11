"""Language model gateway: message types, the gateway protocol and a litellm backend."""

from codeagent.core.llm.litellm_gateway import LiteLLMGateway, get_context_size
from codeagent.core.llm.provider import (
    LlmGateway,
    LlmRequest,
    LlmResponse,
    Message,
    Role,
    ToolCall,
)

__all__ = [
    "LiteLLMGateway",
    "LlmGateway",
    "LlmRequest",
    "LlmResponse",
    "Message",
    "Role",
    "ToolCall",
    "get_context_size",
]
