"""
Conversation store contract.

Durable storage lives outside this package (the gateway wires in an
SQLite-backed store). The agent runtime only depends on the protocol
below; passing no store at all gives pure in-memory sessions.
"""

from dataclasses import dataclass
from typing import Protocol

from crabcrush import tool_blocks
from crabcrush.types import Message, Role


@dataclass
class StoredMessage:
    """A message row as returned by a store."""
    conversation_id: str
    role: str
    content: str
    created_at: float = 0.0
    id: int | None = None


class ConversationStore(Protocol):
    """What the runtime needs from a persistence layer."""

    def ensure_conversation(self, conversation_id: str, channel: str, sender_id: str) -> None:
        """Create the conversation if it does not exist yet."""
        ...

    def save_message(self, conversation_id: str, role: str, content: str) -> None:
        """Append one message."""
        ...

    def get_recent_messages(
        self, conversation_id: str, limit: int = 40, offset: int = 0
    ) -> list[StoredMessage]:
        """The latest `limit` messages skipping the newest `offset`, oldest first."""
        ...

    def get_all_messages(self, conversation_id: str) -> list[StoredMessage]:
        """Every message, oldest first."""
        ...


def to_messages(rows: list[StoredMessage]) -> list[Message]:
    """Convert stored rows to runtime messages, expanding tool blocks."""
    messages: list[Message] = []
    for row in rows:
        if row.role == Role.ASSISTANT.value and tool_blocks.has_blocks(row.content):
            messages.extend(tool_blocks.expand(row.content))
        else:
            messages.append(Message(role=Role(row.role), content=row.content))
    return messages
