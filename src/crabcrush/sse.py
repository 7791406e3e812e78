"""
Incremental Server-Sent-Events decoding for chat-completion streams.

The response body arrives in arbitrary byte chunks. SSEDecoder turns those
chunks into complete `data:` payloads, holding partial lines (and partial
UTF-8 sequences) over to the next chunk. ToolCallAccumulator rebuilds tool
calls that backends stream piecewise, one slot index at a time.
"""

import codecs
import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from crabcrush.types import ToolCall

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


class SSEDecoder:
    """
    Line-oriented SSE decoder.

    feed() returns the decoded JSON frames completed by the chunk. The
    terminator token is reported through the `done` flag; frames that are
    not valid JSON objects are skipped, since some backends interleave
    keep-alive frames that do not conform.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return list(self._parse_lines(lines))

    def flush(self) -> list[dict[str, Any]]:
        """Parse whatever is left once the body has ended."""
        if self.done:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        return list(self._parse_lines([remaining]))

    def _parse_lines(self, lines: list[str]) -> Iterator[dict[str, Any]]:
        for line in lines:
            if self.done:
                return
            stripped = line.strip()
            if not stripped.startswith(DATA_PREFIX):
                continue
            data = stripped[len(DATA_PREFIX):].strip()
            if data == DONE_MARKER:
                self.done = True
                return
            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed SSE frame: {data[:80]!r}")
                continue
            if isinstance(frame, dict):
                yield frame


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """
    Indexed accumulator for streamed tool-call fragments.

    Each fragment names a zero-based slot. id and name overwrite when
    present; argument text is concatenated in arrival order.
    """

    def __init__(self) -> None:
        self._slots: dict[int, _PendingToolCall] = {}

    def add(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            index = 0
        pending = self._slots.setdefault(index, _PendingToolCall())
        call_id = fragment.get("id")
        if call_id and isinstance(call_id, str):
            pending.id = call_id
        function = fragment.get("function")
        if not isinstance(function, dict):
            return
        name = function.get("name")
        if name and isinstance(name, str):
            pending.name = name
        arguments = function.get("arguments")
        if arguments and isinstance(arguments, str):
            pending.arguments += arguments

    def finalize(self) -> list[ToolCall]:
        """The assembled calls, ordered by slot index. Slots that never got a name are dropped."""
        calls = []
        for index, slot in sorted(self._slots.items()):
            if not slot.name:
                logger.debug(f"Dropping tool-call slot {index} without a function name")
                continue
            calls.append(ToolCall(id=slot.id, name=slot.name, arguments=slot.arguments))
        return calls

    def __len__(self) -> int:
        return len(self._slots)
