"""
Tool-block serialization for persisted assistant messages.

The conversation store only knows (role, content) pairs. When a tool round
is persisted, each executed call is appended to the assistant text as a
sentinel-delimited JSON block:

    Let me check.<<<tool_call>>>{"id": "call_1", ...}<<<end_tool_call>>>

so a later history reload can tell tool execution records apart from
plain prose without any schema change.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass

from crabcrush.types import Message, Role, ToolCall

logger = logging.getLogger(__name__)

BLOCK_START = "<<<tool_call>>>"
BLOCK_END = "<<<end_tool_call>>>"

_BLOCK_RE = re.compile(re.escape(BLOCK_START) + r"(.*?)" + re.escape(BLOCK_END), re.DOTALL)


@dataclass
class ToolRecord:
    """One executed tool call as stored in history."""
    id: str
    name: str
    arguments: str
    result: str
    success: bool


def encode_block(record: ToolRecord) -> str:
    # Angle brackets are escaped so record text can never contain a sentinel.
    body = json.dumps(asdict(record), ensure_ascii=False).replace("<", "\\u003c").replace(">", "\\u003e")
    return BLOCK_START + body + BLOCK_END


def encode(prose: str, records: list[ToolRecord]) -> str:
    """Assistant text followed by one block per record."""
    return prose + "".join(encode_block(r) for r in records)


def decode(content: str) -> tuple[str, list[ToolRecord]]:
    """
    Split stored assistant content into prose and tool records.

    Blocks whose JSON cannot be read are left in the prose untouched.
    """
    records: list[ToolRecord] = []

    def _take(match: re.Match[str]) -> str:
        try:
            data = json.loads(match.group(1))
            records.append(ToolRecord(
                id=str(data["id"]),
                name=str(data["name"]),
                arguments=str(data.get("arguments", "")),
                result=str(data.get("result", "")),
                success=bool(data.get("success", False)),
            ))
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.debug("Leaving unreadable tool block in prose")
            return match.group(0)
        return ""

    prose = _BLOCK_RE.sub(_take, content)
    return prose, records


def has_blocks(content: str) -> bool:
    return BLOCK_START in content


def expand(content: str) -> list[Message]:
    """
    Rebuild the in-memory messages for one stored assistant entry.

    An entry with tool records becomes an assistant message carrying the
    tool calls followed by one tool message per call.
    """
    prose, records = decode(content)
    if not records:
        return [Message(role=Role.ASSISTANT, content=prose)]

    messages = [Message(
        role=Role.ASSISTANT,
        content=prose,
        tool_calls=[ToolCall(id=r.id, name=r.name, arguments=r.arguments) for r in records],
    )]
    for r in records:
        messages.append(Message(role=Role.TOOL, content=r.result, tool_call_id=r.id))
    return messages
