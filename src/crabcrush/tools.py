"""
Tool System - the controlled interface between the model and the world.

Every tool the model may invoke is registered here at startup. The
registry decides who may see a tool, asks a human before running the
dangerous ones, and contains every failure: execute() always returns a
ToolResult, so one misbehaving tool can never crash the chat loop.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from crabcrush.audit import AuditSink, emit_audit
from crabcrush.types import ToolResult

logger = logging.getLogger(__name__)


class ToolPermission(str, Enum):
    """Who may call a tool."""
    PUBLIC = "public"  # cloud-API style tools, safe for anyone
    OWNER = "owner"  # local side effects (files, commands)


@dataclass(frozen=True)
class ConfirmRequest:
    """What a confirmation handler is asked to approve."""
    name: str
    args: dict[str, Any]
    session_id: str
    sender_id: str


ConfirmHandler = Callable[[ConfirmRequest], Awaitable[bool]]


@dataclass
class ToolContext:
    """Per-call execution context supplied by the agent runtime."""
    sender_id: str = ""
    is_owner: bool = False
    session_id: str = ""
    confirm: ConfirmHandler | None = None
    audit: AuditSink | None = None

    def emit(self, event_type: str, **fields: Any) -> None:
        """Send an audit event without ever raising into the caller."""
        emit_audit(self.audit, event_type, **fields)


class ToolHandler(Protocol):
    """Protocol for tool handler functions (sync or async)."""
    def __call__(
        self, args: dict[str, Any], context: ToolContext
    ) -> "ToolResult | str | Awaitable[ToolResult | str]": ...


@dataclass(frozen=True)
class ToolDefinition:
    """The part of a tool that is shown to the model."""
    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class Tool:
    """
    A tool the agent can use.

    The handler receives the parsed arguments and the ToolContext. It may
    be a plain function or a coroutine function and may return either a
    ToolResult or a string (taken as a successful result).
    """
    definition: ToolDefinition
    handler: ToolHandler
    permission: ToolPermission = ToolPermission.PUBLIC
    confirm_required: bool = False

    @property
    def name(self) -> str:
        return self.definition.name

    async def run(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        """Invoke the handler. Exceptions propagate to the registry."""
        result = self.handler(args, context)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, ToolResult):
            return result
        return ToolResult(success=True, content=str(result))


class ToolRegistry:
    """
    Registry of available tools.

    Populated once before serving starts and only read afterwards;
    execution carries its own context and needs no locking.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool. Registering a name twice is an error."""
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name} ({tool.permission.value})")

    def register_function(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: ToolHandler,
        permission: ToolPermission = ToolPermission.PUBLIC,
        confirm_required: bool = False,
    ) -> Tool:
        """Convenience method to register a function as a tool."""
        tool = Tool(
            definition=ToolDefinition(name=name, description=description, parameters=parameters),
            handler=handler,
            permission=permission,
            confirm_required=confirm_required,
        )
        self.register(tool)
        return tool

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def definitions_for(self, is_owner: bool) -> list[ToolDefinition]:
        """Definitions the given caller may see: public always, owner tools only for owners."""
        return [
            tool.definition
            for tool in self._tools.values()
            if tool.permission == ToolPermission.PUBLIC or is_owner
        ]

    async def execute(
        self,
        name: str,
        args: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """
        Execute a tool call through the permission and confirmation gate.

        Never raises: unknown tools, permission denials, refused
        confirmations and tool exceptions all come back as failed results.
        """
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(success=False, content=f"Tool '{name}' does not exist")

        if tool.permission == ToolPermission.OWNER and not context.is_owner:
            logger.info(f"Denied owner-only tool {name} to sender {context.sender_id!r}")
            return ToolResult(
                success=False,
                content=f"Tool '{name}' is restricted to the owner. The current user has no permission.",
            )

        if tool.confirm_required:
            refusal = await self._confirm(tool, args, context)
            if refusal is not None:
                return refusal

        logger.info(f"Executing tool: {name}")
        try:
            return await tool.run(args, context)
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            return ToolResult(success=False, content=f"Tool execution failed: {e}")

    async def _confirm(
        self, tool: Tool, args: dict[str, Any], context: ToolContext
    ) -> ToolResult | None:
        """Run the confirmation handshake. Returns a refusal, or None to proceed."""
        name = tool.name
        if context.confirm is None:
            context.emit(
                "tool_confirm_missing",
                name=name,
                sessionId=context.session_id,
                senderId=context.sender_id,
            )
            return ToolResult(
                success=False,
                content=f"Tool '{name}' requires user confirmation, which this channel does not support.",
                declined=True,
            )

        context.emit(
            "tool_confirm_request",
            name=name,
            args=args,
            sessionId=context.session_id,
            senderId=context.sender_id,
        )
        request = ConfirmRequest(
            name=name,
            args=args,
            session_id=context.session_id,
            sender_id=context.sender_id,
        )
        try:
            allowed = bool(await context.confirm(request))
        except TimeoutError:
            logger.info(f"Confirmation for {name} timed out")
            message = f"Confirmation for tool '{name}' timed out"
            self._emit_confirm(context, name, allowed=False, error=message)
            return ToolResult(success=False, content=message, declined=True)
        except Exception as e:
            logger.warning(f"Confirmation handler for {name} failed: {e}")
            message = f"Confirmation failed: {e}"
            self._emit_confirm(context, name, allowed=False, error=message)
            return ToolResult(success=False, content=message, declined=True)

        self._emit_confirm(context, name, allowed=allowed)
        if not allowed:
            return ToolResult(
                success=False,
                content=f"User declined to run tool '{name}'",
                declined=True,
            )
        return None

    def _emit_confirm(self, context: ToolContext, name: str, **fields: Any) -> None:
        context.emit(
            "tool_confirm",
            name=name,
            sessionId=context.session_id,
            senderId=context.sender_id,
            **fields,
        )

    @property
    def names(self) -> list[str]:
        """List of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
