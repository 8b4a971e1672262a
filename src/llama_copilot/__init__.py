"""llama-server chat and inline-completion provider for code editors."""

from .cancellation import CancellationToken
from .client import LlamaServerClient
from .config import EndpointConfig, ModelConfig, Settings
from .infill import InlineCompletionProvider, build_infill_context
from .provider import LlamaChatProvider
from .rules import RuleCatalog
from .thinking import ThinkingTokenStore
from .types import ChatMessage, TextPart, ToolCallPart, ToolDefinition, ToolResultPart

__all__ = [
    "CancellationToken",
    "ChatMessage",
    "EndpointConfig",
    "InlineCompletionProvider",
    "LlamaChatProvider",
    "LlamaServerClient",
    "ModelConfig",
    "RuleCatalog",
    "Settings",
    "TextPart",
    "ThinkingTokenStore",
    "ToolCallPart",
    "ToolDefinition",
    "ToolResultPart",
    "build_infill_context",
]
