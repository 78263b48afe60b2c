"""Session event types.

Every event names the session it belongs to. Events produced while a turn
runs also carry that turn's id (returned by ``SessionEngine.send_message``)
so a caller can tell its own reply apart from replies to earlier turns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, TypeAlias

from switchboard.types import Message, Session


@dataclass
class TextDelta:
    type: ClassVar[str] = "text_delta"
    session_id: str
    delta: str
    turn_id: str | None = None


@dataclass
class TextComplete:
    """A whole assistant text block.

    ``is_intermediate`` marks text that was followed by a tool call, i.e. not
    the final answer of the turn.
    """

    type: ClassVar[str] = "text_complete"
    session_id: str
    text: str
    is_intermediate: bool = False
    turn_id: str | None = None


@dataclass
class ToolUse:
    type: ClassVar[str] = "tool_use"
    session_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    turn_id: str | None = None


@dataclass
class ToolResult:
    type: ClassVar[str] = "tool_result"
    session_id: str
    content: str
    is_error: bool = False
    turn_id: str | None = None


@dataclass
class Complete:
    """The turn ended and the session is idle again."""

    type: ClassVar[str] = "complete"
    session_id: str
    interrupted: bool = False
    turn_id: str | None = None


@dataclass
class ErrorEvent:
    type: ClassVar[str] = "error"
    session_id: str
    error: str
    turn_id: str | None = None


@dataclass
class TypedError:
    """Structured runtime failure (``{"message": ..., "code": ...}`` on the wire)."""

    type: ClassVar[str] = "typed_error"
    session_id: str
    message: str
    code: str | None = None
    turn_id: str | None = None


@dataclass
class PlanSubmitted:
    type: ClassVar[str] = "plan_submitted"
    session_id: str
    plan: str = ""
    turn_id: str | None = None


@dataclass
class UserMessage:
    type: ClassVar[str] = "user_message"
    session_id: str
    message: Message
    status: Literal["queued", "processing"]
    turn_id: str | None = None


@dataclass
class MessageDropped:
    """A queued message was discarded before its turn started (the session was stopped)."""

    type: ClassVar[str] = "message_dropped"
    session_id: str
    text: str
    turn_id: str | None = None


@dataclass
class SessionRewound:
    type: ClassVar[str] = "session_rewound"
    session_id: str
    messages: list[Message]
    prefill_text: str


@dataclass
class SessionBranched:
    type: ClassVar[str] = "session_branched"
    session_id: str
    new_session: Session
    prefill_text: str


@dataclass
class SessionDeleted:
    type: ClassVar[str] = "session_deleted"
    session_id: str


SessionEvent: TypeAlias = (
    TextDelta
    | TextComplete
    | ToolUse
    | ToolResult
    | Complete
    | ErrorEvent
    | TypedError
    | PlanSubmitted
    | UserMessage
    | MessageDropped
    | SessionRewound
    | SessionBranched
    | SessionDeleted
)


def error_text(event: ErrorEvent | TypedError) -> str:
    """The human-readable message of either error variant."""
    return event.error if isinstance(event, ErrorEvent) else event.message
