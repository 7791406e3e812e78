"""
Built-in tools.

- get_current_time (public): the current date and time in a timezone
- read_file (owner): read a text file under the file base directory
- list_files (owner): list or find files under the file base directory
- write_file (owner, needs confirmation): create or overwrite a text file

File tools are confined to one base directory, resolved on every call:
CRABCRUSH_FILE_BASE, then the configured file_base, then ~/.crabcrush.
"""

import fnmatch
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from crabcrush.tools import Tool, ToolContext, ToolDefinition, ToolPermission
from crabcrush.types import ToolResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Shanghai"
DEFAULT_MAX_CHARS = 8000
MAX_LIST_RESULTS = 50
MAX_LIST_DEPTH = 3

ALLOWED_EXTENSIONS = frozenset({
    ".txt", ".md", ".json", ".yaml", ".yml", ".csv", ".log",
    ".js", ".ts", ".mjs", ".cjs", ".html", ".css", ".xml",
    ".py", ".sh", ".bash", ".zsh", ".env", ".gitignore",
})


# =========================================================================
# get_current_time
# =========================================================================


def _current_time(args: dict[str, Any], context: ToolContext) -> ToolResult:
    timezone = str(args.get("timezone") or DEFAULT_TIMEZONE)
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return ToolResult(
            success=False,
            content=f'Unknown timezone "{timezone}". Use an IANA name such as Asia/Shanghai.',
        )
    now = datetime.now(zone)
    return ToolResult(
        success=True,
        content=f"Current time ({timezone}): {now.strftime('%Y-%m-%d %A %H:%M:%S')}",
    )


get_current_time_tool = Tool(
    definition=ToolDefinition(
        name="get_current_time",
        description=(
            "Get the current date and time. Call this when the user asks what time "
            "it is, today's date, or the day of the week."
        ),
        parameters={
            "type": "object",
            "properties": {
                "timezone": {
                    "type": "string",
                    "description": 'IANA timezone, e.g. "Asia/Shanghai" (default)',
                    "default": DEFAULT_TIMEZONE,
                },
            },
        },
    ),
    handler=_current_time,
    permission=ToolPermission.PUBLIC,
)


# =========================================================================
# File tools
# =========================================================================


def get_file_base(file_base: str | None = None) -> Path:
    """Root directory for file tools: env var > config > ~/.crabcrush."""
    base = os.getenv("CRABCRUSH_FILE_BASE") or file_base or str(Path.home() / ".crabcrush")
    return Path(base).expanduser().resolve()


def _resolve_inside(base: Path, relative: str) -> Path | None:
    """Resolve `relative` under `base`, or None if it escapes the base."""
    candidate = (base / relative.strip().lstrip("/")).resolve()
    if candidate != base and base not in candidate.parents:
        return None
    return candidate


def _is_allowed_file(path: Path) -> bool:
    if not path.suffix and not path.name.startswith("."):
        return True
    return path.suffix.lower() in ALLOWED_EXTENSIONS or path.name.lower() in ALLOWED_EXTENSIONS


def _os_error_result(e: OSError, path_arg: str, action: str) -> ToolResult:
    if isinstance(e, FileNotFoundError):
        return ToolResult(success=False, content=f"Not found: {path_arg}")
    if isinstance(e, PermissionError):
        return ToolResult(success=False, content=f"Permission denied: {path_arg}")
    if isinstance(e, IsADirectoryError):
        return ToolResult(success=False, content=f"Path is a directory, not a file: {path_arg}")
    if isinstance(e, NotADirectoryError):
        return ToolResult(success=False, content=f"Path is not a directory: {path_arg}")
    return ToolResult(success=False, content=f"{action} failed: {e}")


def create_read_file_tool(file_base: str | None = None) -> Tool:
    def read_file(args: dict[str, Any], context: ToolContext) -> ToolResult:
        path_arg = args.get("path")
        if not path_arg or not isinstance(path_arg, str):
            return ToolResult(success=False, content="Please provide a valid path argument")
        try:
            max_chars = int(args.get("max_chars") or DEFAULT_MAX_CHARS)
        except (TypeError, ValueError):
            max_chars = DEFAULT_MAX_CHARS

        base = get_file_base(file_base)
        target = _resolve_inside(base, path_arg)
        if target is None:
            return ToolResult(success=False, content=f"Unsafe path: only files under {base} can be read")
        if not _is_allowed_file(target):
            return ToolResult(
                success=False,
                content=f"Unsupported file type. Allowed extensions: {', '.join(sorted(ALLOWED_EXTENSIONS))}",
            )

        try:
            text = target.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return _os_error_result(e, path_arg, "Read")

        if len(text) > max_chars:
            text = text[:max_chars] + "\n\n(content truncated)"
            return ToolResult(
                success=True,
                content=f"[File: {path_arg}] (truncated to {max_chars} chars)\n\n{text}",
            )
        return ToolResult(success=True, content=f"[File: {path_arg}]\n\n{text}")

    return Tool(
        definition=ToolDefinition(
            name="read_file",
            description=(
                "Read a local text file. Call this when the user gives a file path, asks what "
                "a file contains, or wants a document summarized. Only files under the "
                "configured base directory can be read."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path relative to the base directory, e.g. workspace/notes.md",
                    },
                    "max_chars": {
                        "type": "number",
                        "description": f"Maximum characters to return (default {DEFAULT_MAX_CHARS})",
                        "default": DEFAULT_MAX_CHARS,
                    },
                },
                "required": ["path"],
            },
        ),
        handler=read_file,
        permission=ToolPermission.OWNER,
    )


def create_list_files_tool(file_base: str | None = None) -> Tool:
    def list_files(args: dict[str, Any], context: ToolContext) -> ToolResult:
        path_arg = str(args.get("path") or ".").strip().lstrip("/") or "."
        pattern = str(args.get("pattern") or "").strip()
        recursive = bool(args.get("recursive"))

        base = get_file_base(file_base)
        directory = _resolve_inside(base, path_arg)
        if directory is None:
            return ToolResult(success=False, content=f"Unsafe path: only {base} can be listed")

        results: list[str] = []

        def scan(current: Path, prefix: str, depth: int) -> None:
            if depth > MAX_LIST_DEPTH or len(results) >= MAX_LIST_RESULTS:
                return
            for entry in sorted(current.iterdir(), key=lambda p: p.name):
                if len(results) >= MAX_LIST_RESULTS:
                    break
                if entry.name.startswith("."):
                    continue
                rel = f"{prefix}/{entry.name}" if prefix else entry.name
                if entry.is_file():
                    if not pattern or fnmatch.fnmatch(entry.name.lower(), pattern.lower()):
                        results.append(rel)
                elif entry.is_dir():
                    if recursive:
                        scan(entry, rel, depth + 1)
                    else:
                        results.append(rel + "/")

        try:
            scan(directory, "" if path_arg == "." else path_arg, 0)
        except OSError as e:
            return _os_error_result(e, path_arg, "Listing")

        if not results:
            matching = f' matching "{pattern}"' if pattern else ""
            return ToolResult(success=True, content=f"No files{matching} under {path_arg}.")

        more = f"\n(truncated at {MAX_LIST_RESULTS} entries)" if len(results) >= MAX_LIST_RESULTS else ""
        listing = "\n".join(results)
        return ToolResult(
            success=True,
            content=f"Found {len(results)} entries:\n\n{listing}{more}\n\nUse read_file to open a file.",
        )

    return Tool(
        definition=ToolDefinition(
            name="list_files",
            description=(
                "List or find files under the base directory. Use it before read_file when the "
                "user asks to find something. Supports name patterns such as *.md."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Directory relative to the base directory, . for the base itself",
                        "default": ".",
                    },
                    "pattern": {
                        "type": "string",
                        "description": "Optional file-name pattern, e.g. *.md or notes*",
                    },
                    "recursive": {
                        "type": "boolean",
                        "description": "Descend into subdirectories (default false)",
                        "default": False,
                    },
                },
                "required": [],
            },
        ),
        handler=list_files,
        permission=ToolPermission.OWNER,
    )


def create_write_file_tool(file_base: str | None = None) -> Tool:
    def write_file(args: dict[str, Any], context: ToolContext) -> ToolResult:
        path_arg = args.get("path")
        content = args.get("content")
        if not path_arg or not isinstance(path_arg, str):
            return ToolResult(success=False, content="Please provide a valid path argument")
        if not isinstance(content, str):
            return ToolResult(success=False, content="Please provide the content to write as a string")

        base = get_file_base(file_base)
        target = _resolve_inside(base, path_arg)
        if target is None or target == base:
            return ToolResult(success=False, content=f"Unsafe path: only files under {base} can be written")
        if not _is_allowed_file(target):
            return ToolResult(
                success=False,
                content=f"Unsupported file type. Allowed extensions: {', '.join(sorted(ALLOWED_EXTENSIONS))}",
            )

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            return _os_error_result(e, path_arg, "Write")

        logger.info(f"write_file wrote {len(content)} chars to {target}")
        return ToolResult(success=True, content=f"Wrote {len(content)} characters to {path_arg}")

    return Tool(
        definition=ToolDefinition(
            name="write_file",
            description=(
                "Create or overwrite a text file under the base directory. The user is asked "
                "to confirm before the file is written."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path relative to the base directory, e.g. workspace/todo.md",
                    },
                    "content": {
                        "type": "string",
                        "description": "Full text to write",
                    },
                },
                "required": ["path", "content"],
            },
        ),
        handler=write_file,
        permission=ToolPermission.OWNER,
        confirm_required=True,
    )


def get_builtin_tools(file_base: str | None = None) -> list[Tool]:
    """All built-in tools, file tools rooted at `file_base`."""
    return [
        get_current_time_tool,
        create_read_file_tool(file_base),
        create_list_files_tool(file_base),
        create_write_file_tool(file_base),
    ]
