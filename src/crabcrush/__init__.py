"""
CrabCrush - the orchestration core of a personal chat assistant.

The core turns a user message into a streamed reply:

1. Provider adapter: streams chat completions from OpenAI-compatible backends
2. Model router: maps model strings to providers and fails over between them
3. Tool registry: gates tool calls behind ownership and user confirmation
4. Agent runtime: keeps sessions and drives the bounded tool-calling loop

Channels (web chat, DingTalk, ...) and durable storage live outside this
package and plug in through the runtime's store and confirm hooks.
"""

__version__ = "0.1.0"

from crabcrush.audit import AuditLogger, create_audit_logger
from crabcrush.builtin_tools import get_builtin_tools
from crabcrush.cancellation import CancellationToken
from crabcrush.config import AgentConfig, ProviderConfig, Settings, ToolsConfig
from crabcrush.provider import (
    AuthenticationError,
    ChatOptions,
    ClientError,
    GenerationCancelled,
    InsufficientBalanceError,
    OpenAICompatibleProvider,
    ProviderConnectionError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    RequestRejectedError,
    ServerError,
    TransportError,
)
from crabcrush.router import ModelResolutionError, ModelRouter, ModelSpec, build_router
from crabcrush.runtime import AgentRuntime, build_runtime
from crabcrush.session import Session
from crabcrush.store import ConversationStore, StoredMessage
from crabcrush.tools import (
    ConfirmRequest,
    Tool,
    ToolContext,
    ToolDefinition,
    ToolPermission,
    ToolRegistry,
)
from crabcrush.types import (
    ChatDone,
    Message,
    Role,
    TextDelta,
    ToolCall,
    ToolCallEvent,
    ToolResult,
    Usage,
)

__all__ = [
    "AgentRuntime",
    "build_runtime",
    "ModelRouter",
    "ModelSpec",
    "ModelResolutionError",
    "build_router",
    "OpenAICompatibleProvider",
    "ChatOptions",
    "ProviderError",
    "ClientError",
    "AuthenticationError",
    "InsufficientBalanceError",
    "RateLimitError",
    "RequestRejectedError",
    "TransportError",
    "ServerError",
    "ProviderTimeoutError",
    "ProviderConnectionError",
    "GenerationCancelled",
    "CancellationToken",
    "Tool",
    "ToolContext",
    "ToolDefinition",
    "ToolPermission",
    "ToolRegistry",
    "ConfirmRequest",
    "get_builtin_tools",
    "Session",
    "ConversationStore",
    "StoredMessage",
    "AuditLogger",
    "create_audit_logger",
    "Settings",
    "AgentConfig",
    "ProviderConfig",
    "ToolsConfig",
    "Message",
    "Role",
    "ToolCall",
    "ToolResult",
    "TextDelta",
    "ToolCallEvent",
    "ChatDone",
    "Usage",
]
