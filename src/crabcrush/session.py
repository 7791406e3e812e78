"""
Session - one logical conversation.

A session owns the ordered message history of a conversation. It lives
in the agent runtime's session table for the lifetime of the process;
durability, when wanted, comes from the conversation store.
"""

import time
from dataclasses import dataclass, field
from typing import Any

from crabcrush.types import Message, Role, ToolCall


@dataclass
class Session:
    """
    A single conversation.

    Messages are append-only during a turn. The runtime may compact the
    history between turns to bound memory.
    """

    id: str
    messages: list[Message] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    last_active_at: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_active_at = time.time()

    def add_user_message(self, content: str) -> Message:
        """Add a user message to the conversation."""
        message = Message(role=Role.USER, content=content)
        self.messages.append(message)
        return message

    def add_assistant_message(
        self,
        content: str,
        tool_calls: list[ToolCall] | None = None,
    ) -> Message:
        """Add an assistant message to the conversation."""
        message = Message(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=tool_calls or None,
        )
        self.messages.append(message)
        return message

    def add_tool_message(self, tool_call_id: str, content: str) -> Message:
        """Add the result of one tool call."""
        message = Message(role=Role.TOOL, content=content, tool_call_id=tool_call_id)
        self.messages.append(message)
        return message

    def window(self, size: int) -> list[Message]:
        """The most recent `size` messages."""
        return list(self.messages[-size:])

    def compact(self, keep: int) -> int:
        """
        Drop all but the last `keep` messages. Returns how many were dropped.

        Tool replies left at the head after the cut lost the assistant
        message that issued them, so they are dropped too.
        """
        if len(self.messages) <= keep:
            return 0
        kept = self.messages[-keep:]
        while kept and kept[0].role == Role.TOOL:
            kept = kept[1:]
        dropped = len(self.messages) - len(kept)
        self.messages = kept
        return dropped

    def get_messages(self) -> list[Message]:
        """Get all messages in the conversation."""
        return list(self.messages)

    @property
    def message_count(self) -> int:
        """Number of messages in the conversation."""
        return len(self.messages)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the session to a dictionary."""
        return {
            "id": self.id,
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Deserialize a session from a dictionary."""
        return cls(
            id=data["id"],
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=data.get("created_at", time.time()),
            last_active_at=data.get("last_active_at", time.time()),
        )
