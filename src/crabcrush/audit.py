"""
Audit sink.

Security-relevant events (user input, tool calls and results,
confirmation requests and answers) are appended as JSON lines to an
audit log. Writing goes through a QueueHandler so callers never block
on disk I/O, and a sink never raises into the chat path.
"""

import json
import logging
import queue
from collections.abc import Callable
from datetime import UTC, datetime
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

AuditEvent = dict[str, Any]
AuditSink = Callable[[AuditEvent], None]

DEFAULT_AUDIT_PATH = Path.home() / ".crabcrush" / "logs" / "audit.log"


def emit_audit(sink: AuditSink | None, event_type: str, **fields: Any) -> None:
    """Send one event to a sink without ever raising into the caller."""
    if sink is None:
        return
    try:
        sink({"type": event_type, **fields})
    except Exception as e:
        logger.warning(f"Audit sink failed for {event_type}: {e}")


class JSONLineFormatter(logging.Formatter):
    """Render the event attached to a record as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {"ts": datetime.fromtimestamp(record.created, UTC).isoformat()}
        event = getattr(record, "audit_event", None)
        if isinstance(event, dict):
            payload.update(event)
        return json.dumps(payload, ensure_ascii=False, default=str)


class AuditLogger:
    """
    JSON-lines audit log backed by a background writer thread.

    Instances are callable and can be passed anywhere an AuditSink is
    expected.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path is not None else DEFAULT_AUDIT_PATH
        self.path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(self.path, encoding="utf-8")
        file_handler.setFormatter(JSONLineFormatter())

        self._queue: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
        self._listener = QueueListener(self._queue, file_handler)
        self._file_handler = file_handler

        self._logger = logging.getLogger(f"crabcrush.audit.{id(self)}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._logger.addHandler(QueueHandler(self._queue))
        self._listener.start()

    def __call__(self, event: AuditEvent) -> None:
        try:
            self._logger.info(event.get("type", "event"), extra={"audit_event": dict(event)})
        except Exception as e:
            logger.warning(f"Dropping audit event {event.get('type')!r}: {e}")

    def close(self) -> None:
        """Flush pending events and release the file."""
        self._listener.stop()
        self._file_handler.close()
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)


def create_audit_logger(path: Path | str | None = None) -> AuditLogger:
    """Create an audit logger writing to `path` (default ~/.crabcrush/logs/audit.log)."""
    return AuditLogger(path)
