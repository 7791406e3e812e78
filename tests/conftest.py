"""Shared fixtures: an in-memory conversation store and SSE body builders."""

import json
import time
from typing import Any

import pytest

from crabcrush.store import StoredMessage


class FakeStore:
    """In-memory ConversationStore."""

    def __init__(self) -> None:
        self.conversations: dict[str, tuple[str, str]] = {}
        self.rows: list[StoredMessage] = []

    def ensure_conversation(self, conversation_id: str, channel: str, sender_id: str) -> None:
        self.conversations.setdefault(conversation_id, (channel, sender_id))

    def save_message(self, conversation_id: str, role: str, content: str) -> None:
        self.rows.append(StoredMessage(
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=time.time(),
            id=len(self.rows) + 1,
        ))

    def get_recent_messages(
        self, conversation_id: str, limit: int = 40, offset: int = 0
    ) -> list[StoredMessage]:
        rows = self.get_all_messages(conversation_id)
        end = len(rows) - offset
        if end <= 0:
            return []
        return rows[max(0, end - limit):end]

    def get_all_messages(self, conversation_id: str) -> list[StoredMessage]:
        return [r for r in self.rows if r.conversation_id == conversation_id]


def sse_frame(data: dict[str, Any] | str) -> str:
    payload = data if isinstance(data, str) else json.dumps(data)
    return f"data: {payload}\n\n"


def content_frame(text: str) -> str:
    return sse_frame({"choices": [{"delta": {"content": text}}]})


def sse_body(*texts: str, usage: dict[str, int] | None = None) -> bytes:
    """A complete stream of content deltas, optional usage and [DONE]."""
    body = "".join(content_frame(t) for t in texts)
    if usage is not None:
        body += sse_frame({"choices": [], "usage": usage})
    body += sse_frame("[DONE]")
    return body.encode("utf-8")


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()
