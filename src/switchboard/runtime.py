"""Agent runtime interface.

The engine drives a runtime through ``invoke``, which yields chunks as the
underlying agent produces them. ``complete`` is a one-shot, non-streaming
call used for rewrite operations (rephrase, voice transform).
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable

from switchboard.types import Message, PermissionMode, TokenUsage


@dataclass
class DeltaChunk:
    text: str


@dataclass
class TextChunk:
    """A complete assistant text block."""

    text: str


@dataclass
class ToolUseChunk:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None


@dataclass
class ToolResultChunk:
    content: str
    is_error: bool = False
    tool_use_id: str | None = None


@dataclass
class PlanChunk:
    plan: str


@dataclass
class UsageChunk:
    usage: TokenUsage
    sdk_session_id: str | None = None


@dataclass
class ErrorChunk:
    message: str
    code: str | None = None


RuntimeChunk: TypeAlias = (
    DeltaChunk | TextChunk | ToolUseChunk | ToolResultChunk | PlanChunk | UsageChunk | ErrorChunk
)


@dataclass
class InvokeOptions:
    session_id: str
    permission_mode: PermissionMode
    working_directory: str | None = None
    resume: str | None = None  # sdk_session_id of the previous turn
    model: str | None = None
    # Remote-control tools for controller sessions (control.tools.BoundTool)
    tools: Sequence[Any] = ()


@runtime_checkable
class AgentRuntime(Protocol):
    name: str

    def invoke(
        self,
        prompt: str,
        prior_context: Sequence[Message],
        options: InvokeOptions,
    ) -> AsyncIterator[RuntimeChunk]: ...

    async def complete(self, prompt: str, *, model: str | None = None) -> str: ...
