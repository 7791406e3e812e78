"""
Core types for the orchestration core.

These types represent the data that flows between the provider adapter,
the model router, the tool registry and the agent runtime. They map
directly onto the OpenAI chat-completions wire format.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    """
    A request from the model to execute a tool.

    The id is opaque and assigned by the provider. Arguments stay as the
    raw JSON text the model produced; use parsed_arguments() to read them.
    """
    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the arguments, treating malformed JSON as no arguments."""
        if not self.arguments or not self.arguments.strip():
            return {}
        try:
            value = json.loads(self.arguments)
        except json.JSONDecodeError:
            logger.warning(f"Malformed arguments for tool call {self.id} ({self.name}), using {{}}")
            return {}
        if not isinstance(value, dict):
            return {}
        return value

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.arguments,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        """Create from OpenAI API format."""
        function = data.get("function") or {}
        return cls(
            id=data.get("id", ""),
            name=function.get("name", ""),
            arguments=function.get("arguments") or "",
        )


@dataclass
class Message:
    """
    A single message in the conversation history.

    Assistant messages may carry tool_calls; tool messages must carry the
    tool_call_id of the call they answer.
    """
    role: Role
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        result: dict[str, Any] = {
            "role": Role(self.role).value,
            "content": self.content,
        }
        if self.tool_calls:
            result["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            result["tool_call_id"] = self.tool_call_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from OpenAI API format."""
        tool_calls = data.get("tool_calls")
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            tool_calls=[ToolCall.from_dict(tc) for tc in tool_calls] if tool_calls else None,
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass
class Usage:
    """Token accounting reported by the backend."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Usage":
        return cls(
            prompt_tokens=int(data.get("prompt_tokens") or 0),
            completion_tokens=int(data.get("completion_tokens") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
        )

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ToolResult:
    """
    The result of executing a tool.

    declined is set when the failure came from the confirmation handshake
    (the user refused, or the handler failed or timed out) rather than
    from the tool itself. The agent loop stops the round on it.
    """
    success: bool
    content: str
    declined: bool = False


# =========================================================================
# Stream events
# =========================================================================


@dataclass
class TextDelta:
    """An incremental piece of assistant text."""
    text: str


@dataclass
class ToolCallEvent:
    """A tool ran during the turn."""
    tool_call_id: str
    name: str
    arguments: dict[str, Any]
    result: str
    success: bool


@dataclass
class ChatDone:
    """
    Terminal event of a stream.

    From a provider it carries the assembled tool calls; from the agent
    runtime it closes the whole turn. cancelled is set when the caller's
    cancellation token ended the stream.
    """
    model: str = ""
    usage: Usage | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    cancelled: bool = False


ChatEvent = TextDelta | ChatDone
AgentEvent = TextDelta | ToolCallEvent | ChatDone
