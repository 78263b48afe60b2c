"""MCP tool surface for session control.

Each tool pairs an ``mcp.types.Tool`` definition with a handler that maps the
tool arguments onto a ``SessionControl`` operation. Results are returned as a
``CallToolResult`` carrying the operation's JSON payload.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeAlias

from mcp.types import CallToolResult, TextContent, Tool

from switchboard.control.protocol import ControlResult, SessionControl
from switchboard.control.subscriptions import SUBSCRIPTION_EVENTS
from switchboard.logger import logger
from switchboard.types import PERMISSION_MODES

SERVER_NAME = "session-control"

Handler: TypeAlias = Callable[[SessionControl, dict[str, Any]], Awaitable[ControlResult]]


@dataclass
class ToolEntry:
    """A registered tool with its definition and handler."""

    definition: Tool
    handler: Handler


_TOOLS: dict[str, ToolEntry] = {}


def register(name: str, description: str, input_schema: dict[str, Any]):
    """Decorator registering a handler under *name*."""

    def decorator(fn: Handler) -> Handler:
        _TOOLS[name] = ToolEntry(
            definition=Tool(name=name, description=description, inputSchema=input_schema),
            handler=fn,
        )
        return fn

    return decorator


def all_tools() -> list[Tool]:
    return [e.definition for e in _TOOLS.values()]


def tool_error(msg: str) -> CallToolResult:
    """Return an MCP error result with a text message."""
    return CallToolResult(content=[TextContent(type="text", text=msg)], isError=True)


def to_call_result(result: ControlResult) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(result.to_payload(), indent=2))],
        isError=not result.success,
    )


async def call_tool(
    control: SessionControl, name: str, arguments: dict[str, Any]
) -> CallToolResult:
    """Dispatch a tool call. Never raises."""
    entry = _TOOLS.get(name)
    if entry is None:
        return tool_error(f"Unknown tool: {name}")
    try:
        result = await entry.handler(control, arguments or {})
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Invalid tool arguments", tool=name, err=str(exc))
        return tool_error(f"Invalid arguments for {name}: {exc}")
    except Exception as exc:
        logger.exception("Session control tool failed", tool=name)
        return tool_error(f"Error in {name}: {exc}")
    return to_call_result(result)


@dataclass
class BoundTool:
    """A tool bound to one controller, ready to hand to an agent runtime."""

    name: str
    description: str
    input_schema: dict[str, Any]
    control: SessionControl

    async def call(self, arguments: dict[str, Any]) -> CallToolResult:
        return await call_tool(self.control, self.name, arguments)


def bind_tools(control: SessionControl) -> list[BoundTool]:
    return [
        BoundTool(
            name=e.definition.name,
            description=e.definition.description or "",
            input_schema=e.definition.inputSchema,
            control=control,
        )
        for e in _TOOLS.values()
    ]


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

_SESSION_ID = {"type": "string", "description": "The ID of the target session"}


@register(
    "list_sessions",
    "List sessions currently loaded in memory with their status, labels, message "
    "count and token usage. Sessions that haven't been loaded yet won't appear.",
    {
        "type": "object",
        "properties": {
            "includeMessages": {
                "type": "boolean",
                "description": "Include the last 3 messages of each session (default: false)",
            },
        },
    },
)
async def _list_sessions(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.list_sessions(include_messages=bool(args.get("includeMessages")))


@register(
    "create_session",
    "Create a new agent session. Optionally set its working directory, permission "
    "mode, labels and an initial message to send right away.",
    {
        "type": "object",
        "properties": {
            "workspaceId": {"type": "string", "description": "Workspace (default: active)"},
            "workingDirectory": {"type": "string"},
            "permissionMode": {
                "type": "string",
                "enum": list(PERMISSION_MODES),
                "description": "Default: allow-all",
            },
            "initialMessage": {"type": "string"},
            "labels": {"type": "array", "items": {"type": "string"}},
        },
    },
)
async def _create_session(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.create_session(
        workspace_id=args.get("workspaceId"),
        working_directory=args.get("workingDirectory"),
        permission_mode=args.get("permissionMode"),
        initial_message=args.get("initialMessage"),
        labels=args.get("labels"),
    )


@register(
    "send_message",
    "Send a message to a session. If the session is busy the message is queued. "
    "With waitForResponse the reply is returned once the session goes idle, or a "
    "timeout failure with any partial reply after timeoutMs (default 120000).",
    {
        "type": "object",
        "properties": {
            "sessionId": _SESSION_ID,
            "message": {"type": "string"},
            "waitForResponse": {"type": "boolean", "default": False},
            "timeoutMs": {"type": "integer", "minimum": 1},
        },
        "required": ["sessionId", "message"],
    },
)
async def _send_message(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.send_message(
        args["sessionId"],
        args["message"],
        wait_for_response=bool(args.get("waitForResponse")),
        timeout_ms=args.get("timeoutMs"),
    )


@register(
    "get_session_status",
    "Get detailed status of a session: processing state, permission mode, "
    "working directory, labels and token usage.",
    {"type": "object", "properties": {"sessionId": _SESSION_ID}, "required": ["sessionId"]},
)
async def _get_session_status(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.get_session_status(args["sessionId"])


@register(
    "get_session_messages",
    "Retrieve messages from a session's history, newest last. Use limit and offset "
    "(counted from the end) to page backwards.",
    {
        "type": "object",
        "properties": {
            "sessionId": _SESSION_ID,
            "limit": {"type": "integer", "default": 20, "minimum": 0},
            "offset": {"type": "integer", "default": 0, "minimum": 0},
            "includeTools": {"type": "boolean", "default": False},
        },
        "required": ["sessionId"],
    },
)
async def _get_session_messages(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.get_session_messages(
        args["sessionId"],
        limit=int(args.get("limit", 20)),
        offset=int(args.get("offset", 0)),
        include_tools=bool(args.get("includeTools")),
    )


@register(
    "stop_session",
    "Interrupt the operation a session is running. The session stays open.",
    {"type": "object", "properties": {"sessionId": _SESSION_ID}, "required": ["sessionId"]},
)
async def _stop_session(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.stop_session(args["sessionId"])


@register(
    "delete_session",
    "Permanently delete a session and all its messages. Refused while the session "
    "is processing unless force is true.",
    {
        "type": "object",
        "properties": {"sessionId": _SESSION_ID, "force": {"type": "boolean", "default": False}},
        "required": ["sessionId"],
    },
)
async def _delete_session(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.delete_session(args["sessionId"], force=bool(args.get("force")))


@register(
    "rename_session",
    "Set the display name of a session.",
    {
        "type": "object",
        "properties": {"sessionId": _SESSION_ID, "name": {"type": "string"}},
        "required": ["sessionId", "name"],
    },
)
async def _rename_session(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.rename_session(args["sessionId"], args["name"])


@register(
    "set_session_labels",
    "Replace the labels of a session.",
    {
        "type": "object",
        "properties": {
            "sessionId": _SESSION_ID,
            "labels": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["sessionId", "labels"],
    },
)
async def _set_session_labels(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.set_session_labels(args["sessionId"], args["labels"])


@register(
    "subscribe_session_events",
    "Get notified when a session goes idle, runs for 10+ minutes (long_running), "
    "hits an error or submits a plan. Notifications arrive as messages in this "
    "session. Defaults to all events.",
    {
        "type": "object",
        "properties": {
            "sessionId": _SESSION_ID,
            "events": {
                "type": "array",
                "items": {"type": "string", "enum": list(SUBSCRIPTION_EVENTS)},
            },
        },
        "required": ["sessionId"],
    },
)
async def _subscribe(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.subscribe_session_events(args["sessionId"], args.get("events"))


@register(
    "unsubscribe_session_events",
    "Remove subscriptions by subscription ID, or all subscriptions for a session ID.",
    {
        "type": "object",
        "properties": {"subscriptionId": {"type": "string"}, "sessionId": _SESSION_ID},
    },
)
async def _unsubscribe(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.unsubscribe_session_events(
        subscription_id=args.get("subscriptionId"), target_id=args.get("sessionId")
    )


@register(
    "list_subscriptions",
    "List this session's active event subscriptions.",
    {"type": "object", "properties": {}},
)
async def _list_subscriptions(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.list_subscriptions()


@register(
    "set_permission_mode",
    "Change a session's permission mode: safe (explore, plan first), ask (prompt "
    "before edits) or allow-all (autonomous execution).",
    {
        "type": "object",
        "properties": {
            "sessionId": _SESSION_ID,
            "mode": {"type": "string", "enum": list(PERMISSION_MODES)},
        },
        "required": ["sessionId", "mode"],
    },
)
async def _set_permission_mode(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.set_permission_mode(args["sessionId"], args["mode"])


@register(
    "approve_plan",
    "Approve a plan submitted by a session in safe mode: switches it to allow-all "
    "and sends an approval message so it starts executing.",
    {
        "type": "object",
        "properties": {
            "sessionId": _SESSION_ID,
            "message": {
                "type": "string",
                "description": 'Default: "Plan approved. Proceed with execution."',
            },
        },
        "required": ["sessionId"],
    },
)
async def _approve_plan(control: SessionControl, args: dict[str, Any]) -> ControlResult:
    return await control.approve_plan(args["sessionId"], args.get("message"))
