"""Claude agent runtime over ``claude_agent_sdk``.

Each turn opens a ``ClaudeSDKClient`` resumed from the session's previous
SDK session id, streams partial messages as text deltas, and translates the
SDK's message types into runtime chunks. Controller sessions get the
session-control tools mounted as an in-process SDK MCP server.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pluggy
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    SdkMcpTool,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    create_sdk_mcp_server,
)

from switchboard.control.tools import SERVER_NAME, BoundTool
from switchboard.logger import scoped
from switchboard.runtime import (
    DeltaChunk,
    ErrorChunk,
    InvokeOptions,
    PlanChunk,
    RuntimeChunk,
    TextChunk,
    ToolResultChunk,
    ToolUseChunk,
    UsageChunk,
)
from switchboard.types import Message, PermissionMode, TokenUsage

hookimpl = pluggy.HookimplMarker("switchboard")

log = scoped("claude")

PLAN_TOOL = "ExitPlanMode"

PERMISSION_MODE_MAP: dict[PermissionMode, str] = {
    "safe": "plan",
    "ask": "default",
    "allow-all": "bypassPermissions",
}

_PRIOR_CONTEXT_CHARS = 4000


def format_prior_context(messages: Sequence[Message]) -> str:
    """Render earlier turns for a runtime that has no conversation to resume."""
    lines = []
    for msg in messages:
        if msg.role == "tool" or msg.is_intermediate:
            continue
        sender = "User" if msg.role == "user" else "Assistant"
        content = msg.content
        if len(content) > _PRIOR_CONTEXT_CHARS:
            content = content[:_PRIOR_CONTEXT_CHARS] + "..."
        lines.append(f"{sender}: {content}")
    return "\n\n".join(lines)


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [c.get("text", "") for c in content if isinstance(c, dict)]
        return "\n".join(t for t in texts if t) or json.dumps(content)
    return ""


def _usage_from_result(message: ResultMessage) -> TokenUsage:
    usage = message.usage or {}
    return TokenUsage(
        input_tokens=usage.get("input_tokens", 0) or 0,
        output_tokens=usage.get("output_tokens", 0) or 0,
        cache_read_tokens=usage.get("cache_read_input_tokens", 0) or 0,
        cache_creation_tokens=usage.get("cache_creation_input_tokens", 0) or 0,
        cost_usd=message.total_cost_usd or 0.0,
    )


def _sdk_tool(tool: BoundTool) -> SdkMcpTool[Any]:
    async def handler(args: dict[str, Any]) -> dict[str, Any]:
        result = await tool.call(args)
        return {
            "content": [
                {"type": "text", "text": c.text} for c in result.content if c.type == "text"
            ],
            "is_error": bool(result.isError),
        }

    return SdkMcpTool(
        name=tool.name,
        description=tool.description,
        input_schema=tool.input_schema,
        handler=handler,
    )


class ClaudeRuntime:
    """``AgentRuntime`` backed by the Claude Agent SDK."""

    name = "claude"

    def __init__(
        self,
        *,
        model: str | None = None,
        api_key: str | None = None,
        rewrite_model: str | None = None,
    ) -> None:
        self._model = model
        self._rewrite_model = rewrite_model
        self._env = {"ANTHROPIC_API_KEY": api_key} if api_key else {}

    def _options(self, options: InvokeOptions) -> ClaudeAgentOptions:
        mcp_servers: dict[str, Any] = {}
        allowed_tools: list[str] = []
        if options.tools:
            mcp_servers[SERVER_NAME] = create_sdk_mcp_server(
                name=SERVER_NAME,
                version="1.0.0",
                tools=[_sdk_tool(t) for t in options.tools],
            )
            allowed_tools.append(f"mcp__{SERVER_NAME}__*")
        return ClaudeAgentOptions(
            model=options.model or self._model,
            cwd=options.working_directory,
            resume=options.resume,
            permission_mode=PERMISSION_MODE_MAP[options.permission_mode],
            mcp_servers=mcp_servers,
            allowed_tools=allowed_tools,
            include_partial_messages=True,
            setting_sources=["project", "user"],
            env=self._env,
        )

    async def invoke(
        self,
        prompt: str,
        prior_context: Sequence[Message],
        options: InvokeOptions,
    ) -> AsyncIterator[RuntimeChunk]:
        if prior_context and not options.resume:
            prompt = (
                "Previous conversation (for context):\n\n"
                f"{format_prior_context(prior_context)}\n\n---\n\n{prompt}"
            )

        log.debug("Starting query", session_id=options.session_id, resume=options.resume)
        async with ClaudeSDKClient(self._options(options)) as client:
            await client.query(prompt)
            async for message in client.receive_response():
                for chunk in self._translate(message):
                    yield chunk

    def _translate(self, message: Any) -> list[RuntimeChunk]:
        chunks: list[RuntimeChunk] = []
        if isinstance(message, StreamEvent):
            event = message.event
            delta = event.get("delta") or {}
            if event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
                chunks.append(DeltaChunk(text=delta.get("text", "")))

        elif isinstance(message, SystemMessage):
            if message.subtype == "init":
                sid = message.data.get("session_id")
                if sid:
                    chunks.append(UsageChunk(usage=TokenUsage(), sdk_session_id=sid))

        elif isinstance(message, AssistantMessage):
            for block in message.content:
                if isinstance(block, TextBlock):
                    chunks.append(TextChunk(text=block.text))
                elif isinstance(block, ToolUseBlock):
                    chunks.append(
                        ToolUseChunk(name=block.name, input=block.input, tool_use_id=block.id)
                    )
                    if block.name == PLAN_TOOL:
                        chunks.append(PlanChunk(plan=str(block.input.get("plan", ""))))
                elif isinstance(block, ToolResultBlock):
                    chunks.append(
                        ToolResultChunk(
                            content=_tool_result_text(block.content),
                            is_error=bool(block.is_error),
                            tool_use_id=block.tool_use_id,
                        )
                    )

        elif isinstance(message, ResultMessage):
            chunks.append(
                UsageChunk(usage=_usage_from_result(message), sdk_session_id=message.session_id)
            )
            if message.is_error:
                chunks.append(
                    ErrorChunk(message=message.result or "Agent run failed", code=message.subtype)
                )
        return chunks

    async def complete(self, prompt: str, *, model: str | None = None) -> str:
        options = ClaudeAgentOptions(
            model=model or self._rewrite_model or self._model,
            max_turns=1,
            allowed_tools=[],
            env=self._env,
        )
        parts: list[str] = []
        async with ClaudeSDKClient(options) as client:
            await client.query(prompt)
            async for message in client.receive_response():
                if isinstance(message, AssistantMessage):
                    parts.extend(b.text for b in message.content if isinstance(b, TextBlock))
        return "".join(parts)


class ClaudeRuntimePlugin:
    """Built-in plugin providing the Claude runtime."""

    @hookimpl
    def switchboard_agent_runtime(self, settings: Any) -> ClaudeRuntime | None:
        if settings.agent.runtime != ClaudeRuntime.name:
            return None
        api_key = settings.secrets.anthropic_api_key
        return ClaudeRuntime(
            model=settings.agent.model,
            api_key=api_key.get_secret_value() if api_key else None,
            rewrite_model=settings.agent.rephrase_model,
        )
