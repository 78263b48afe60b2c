"""Per-session turn engine.

Each session is a small state machine: ``idle → processing → idle``, with
cancellation as a side exit. At most one turn runs per session; messages sent
while a turn is active wait in a FIFO queue and start once it completes.

asyncio tasks don't run synchronously up to their first await, so a turn is
marked as processing eagerly in the caller before its task is scheduled, and
released in the task's ``finally``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from switchboard.errors import InvalidMessageTargetError
from switchboard.event_bus import SessionEventBus
from switchboard.events import (
    Complete,
    ErrorEvent,
    MessageDropped,
    PlanSubmitted,
    SessionBranched,
    SessionEvent,
    SessionRewound,
    TextComplete,
    TextDelta,
    ToolResult,
    ToolUse,
    TypedError,
    UserMessage,
)
from switchboard.logger import logger
from switchboard.runtime import (
    AgentRuntime,
    DeltaChunk,
    ErrorChunk,
    InvokeOptions,
    PlanChunk,
    TextChunk,
    ToolResultChunk,
    ToolUseChunk,
    UsageChunk,
)
from switchboard.sessions.store import SessionStore
from switchboard.types import Message, Session, SessionOptions
from switchboard.utils import create_background_task, generate_id, truncate

ToolProvider: TypeAlias = Callable[[Session], Sequence[Any]]

_TOOL_INPUT_PREVIEW = 2000


@dataclass
class _PendingMessage:
    turn_id: str
    text: str


@dataclass
class _TurnState:
    task: asyncio.Task[None] | None = None
    turn_id: str | None = None
    pending: deque[_PendingMessage] = field(default_factory=deque)
    # Text streamed for the block currently being generated
    partial: list[str] = field(default_factory=list)
    # Last whole text block, held until we know whether a tool call follows
    held_text: str | None = None
    aborting: bool = False

    def reset_stream(self) -> None:
        self.partial.clear()
        self.held_text = None


class SessionEngine:
    def __init__(
        self,
        store: SessionStore,
        bus: SessionEventBus,
        runtime: AgentRuntime,
        *,
        model: str | None = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._runtime = runtime
        self._model = model
        self._turns: dict[str, _TurnState] = {}
        self._tool_provider: ToolProvider | None = None

    @property
    def runtime(self) -> AgentRuntime:
        return self._runtime

    def set_tool_provider(self, fn: ToolProvider) -> None:
        """Register the callback that supplies extra tools for a session's turns."""
        self._tool_provider = fn

    def _state(self, session_id: str) -> _TurnState:
        if session_id not in self._turns:
            self._turns[session_id] = _TurnState()
        return self._turns[session_id]

    def is_processing(self, session_id: str) -> bool:
        state = self._turns.get(session_id)
        return state is not None and state.task is not None

    def queued_count(self, session_id: str) -> int:
        state = self._turns.get(session_id)
        return len(state.pending) if state else 0

    # --- Sending ---

    async def send_message(
        self, session_id: str, text: str, *, turn_id: str | None = None
    ) -> str:
        """Start a turn, or queue it behind the active one. Returns the turn id.

        Callers that need to match events before this returns can supply
        their own *turn_id*. Raises SessionNotFoundError for unknown sessions.
        """
        session = self._store.require(session_id)
        state = self._state(session_id)
        turn_id = turn_id or generate_id("turn")

        if session.is_processing or state.task is not None or state.aborting:
            state.pending.append(_PendingMessage(turn_id=turn_id, text=text))
            self._emit(
                UserMessage(
                    session_id=session_id,
                    message=Message(role="user", content=text),
                    status="queued",
                    turn_id=turn_id,
                )
            )
            logger.debug(
                "Session busy, message queued",
                session_id=session_id,
                queued=len(state.pending),
            )
            return turn_id

        self._start_turn(session, state, turn_id, text)
        return turn_id

    def _start_turn(self, session: Session, state: _TurnState, turn_id: str, text: str) -> None:
        message = Message(role="user", content=text)
        session.messages.append(message)
        session.last_message_at = message.timestamp
        # Eagerly mark as processing before scheduling the coroutine
        session.is_processing = True
        state.turn_id = turn_id
        state.reset_stream()
        self._store.save(session)
        self._emit(
            UserMessage(
                session_id=session.id, message=message, status="processing", turn_id=turn_id
            )
        )
        state.task = create_background_task(
            self._run_turn(session, state, turn_id, text),
            name=f"turn-{session.id}",
        )

    async def _run_turn(self, session: Session, state: _TurnState, turn_id: str, text: str) -> None:
        interrupted = False
        options = InvokeOptions(
            session_id=session.id,
            permission_mode=session.permission_mode,
            working_directory=session.working_directory,
            resume=session.sdk_session_id,
            model=self._model,
            tools=self._tool_provider(session) if self._tool_provider else (),
        )
        # Without a runtime handle to resume, hand over the history instead
        prior = [] if session.sdk_session_id else [m.copy() for m in session.messages[:-1]]
        logger.info("Turn started", session_id=session.id, turn_id=turn_id)

        try:
            async for chunk in self._runtime.invoke(text, prior, options):
                match chunk:
                    case DeltaChunk(text=delta):
                        state.partial.append(delta)
                        self._emit(TextDelta(session_id=session.id, delta=delta, turn_id=turn_id))
                    case TextChunk(text=block):
                        if state.held_text is not None:
                            self._record_text(session, state.held_text, True, turn_id)
                        state.held_text = block
                        state.partial.clear()
                    case ToolUseChunk(name=name, input=tool_input):
                        if state.held_text is not None:
                            self._record_text(session, state.held_text, True, turn_id)
                            state.held_text = None
                        state.partial.clear()
                        session.messages.append(
                            Message(
                                role="tool",
                                content=truncate(json.dumps(tool_input), _TOOL_INPUT_PREVIEW),
                                tool_name=name,
                            )
                        )
                        self._emit(
                            ToolUse(
                                session_id=session.id,
                                tool_name=name,
                                tool_input=tool_input,
                                turn_id=turn_id,
                            )
                        )
                    case ToolResultChunk(content=content, is_error=is_error):
                        self._emit(
                            ToolResult(
                                session_id=session.id,
                                content=content,
                                is_error=is_error,
                                turn_id=turn_id,
                            )
                        )
                    case PlanChunk(plan=plan):
                        logger.info("Plan submitted", session_id=session.id)
                        self._emit(PlanSubmitted(session_id=session.id, plan=plan, turn_id=turn_id))
                    case UsageChunk(usage=usage, sdk_session_id=sdk_id):
                        session.token_usage.add(usage)
                        if sdk_id:
                            session.sdk_session_id = sdk_id
                    case ErrorChunk(message=message, code=code):
                        self._flush_partial(session, state, turn_id)
                        logger.warning(
                            "Runtime reported error", session_id=session.id, err=message, code=code
                        )
                        self._emit(
                            TypedError(
                                session_id=session.id, message=message, code=code, turn_id=turn_id
                            )
                        )
            self._flush_partial(session, state, turn_id)
        except asyncio.CancelledError:
            interrupted = True
            self._flush_partial(session, state, turn_id)
            raise
        except Exception as exc:
            logger.exception("Turn failed", session_id=session.id, turn_id=turn_id)
            self._flush_partial(session, state, turn_id)
            self._emit(ErrorEvent(session_id=session.id, error=str(exc), turn_id=turn_id))
        finally:
            self._end_turn(session, state, turn_id, interrupted=interrupted)

    def _flush_partial(self, session: Session, state: _TurnState, turn_id: str) -> None:
        """Record whatever text the turn produced as its final answer."""
        text = state.held_text if state.held_text is not None else "".join(state.partial)
        state.reset_stream()
        if text:
            self._record_text(session, text, False, turn_id)

    def _record_text(self, session: Session, text: str, intermediate: bool, turn_id: str) -> None:
        message = Message(role="assistant", content=text, is_intermediate=intermediate)
        session.messages.append(message)
        session.last_message_at = message.timestamp
        self._emit(
            TextComplete(
                session_id=session.id, text=text, is_intermediate=intermediate, turn_id=turn_id
            )
        )

    def _end_turn(
        self, session: Session, state: _TurnState, turn_id: str, *, interrupted: bool
    ) -> None:
        if state.turn_id != turn_id:
            return  # already ended
        state.task = None
        state.turn_id = None
        session.is_processing = False
        if self._store.get(session.id) is session:
            self._store.save(session)
        logger.info(
            "Turn finished", session_id=session.id, turn_id=turn_id, interrupted=interrupted
        )
        self._emit(Complete(session_id=session.id, interrupted=interrupted, turn_id=turn_id))

        if state.pending and not state.aborting:
            nxt = state.pending.popleft()
            self._start_turn(session, state, nxt.turn_id, nxt.text)

    # --- Cancellation ---

    async def cancel_processing(self, session_id: str) -> bool:
        """Interrupt the active turn. Returns False if nothing was running.

        Messages queued behind the turn are dropped. Messages sent while the
        runtime is still tearing down stay queued and start once it has.
        """
        return await self._cancel(session_id, resume_queue=True)

    async def halt(self, session_id: str) -> bool:
        """Interrupt the active turn and drop every queued message, late ones included."""
        return await self._cancel(session_id, resume_queue=False)

    async def _cancel(self, session_id: str, *, resume_queue: bool) -> bool:
        state = self._turns.get(session_id)
        if state is None or state.task is None:
            return False
        task = state.task
        turn_id = state.turn_id
        state.aborting = True
        dropped = self._drop_pending(session_id, state)
        try:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            # A task cancelled before its first step never reaches its finally
            if state.turn_id == turn_id and turn_id is not None:
                session = self._store.get(session_id)
                if session is not None:
                    self._end_turn(session, state, turn_id, interrupted=True)
        finally:
            state.aborting = False
        logger.info("Cancelled processing", session_id=session_id, dropped_queued=dropped)

        if state.pending and state.task is None:
            session = self._store.get(session_id)
            if resume_queue and session is not None:
                nxt = state.pending.popleft()
                self._start_turn(session, state, nxt.turn_id, nxt.text)
            else:
                self._drop_pending(session_id, state)
        return True

    def _drop_pending(self, session_id: str, state: _TurnState) -> int:
        dropped = list(state.pending)
        state.pending.clear()
        for item in dropped:
            self._emit(MessageDropped(session_id=session_id, text=item.text, turn_id=item.turn_id))
        return len(dropped)

    # --- History surgery ---

    def _validate_user_target(self, session: Session, message_id: str) -> Message:
        found = session.find_message(message_id)
        if found is None:
            raise InvalidMessageTargetError(
                f"Message '{message_id}' not found in session '{session.id}'"
            )
        _, message = found
        if message.role != "user":
            raise InvalidMessageTargetError(
                f"Message '{message_id}' is a {message.role} message; only user messages qualify"
            )
        return message

    async def rewind_to_message(self, session_id: str, message_id: str) -> SessionRewound:
        """Truncate history to just before a user message.

        The runtime handle is dropped so the next turn starts a fresh context.
        Raises InvalidMessageTargetError without touching the session if the
        target is missing or not a user message.
        """
        session = self._store.require(session_id)
        target = self._validate_user_target(session, message_id)

        if session.is_processing:
            await self.halt(session_id)

        found = session.find_message(message_id)
        if found is None:  # pragma: no cover - cancellation never removes messages
            raise InvalidMessageTargetError(f"Message '{message_id}' disappeared")
        index, _ = found
        session.messages = session.messages[:index]
        session.sdk_session_id = None
        session.last_message_at = session.messages[-1].timestamp if session.messages else None
        state = self._state(session_id)
        self._drop_pending(session_id, state)
        state.reset_stream()
        self._store.save(session)

        event = SessionRewound(
            session_id=session_id,
            messages=[m.copy() for m in session.messages],
            prefill_text=target.content,
        )
        logger.info("Rewound session", session_id=session_id, kept=len(session.messages))
        self._emit(event)
        return event

    async def branch_from_message(self, session_id: str, message_id: str) -> SessionBranched:
        """Copy history before a user message into a new session.

        The source session is not modified.
        """
        source = self._store.require(session_id)
        target = self._validate_user_target(source, message_id)
        found = source.find_message(message_id)
        assert found is not None
        index, _ = found

        branch_name = f"{source.name} (branch)" if source.name else None
        new_session = self._store.create(
            source.workspace_id,
            SessionOptions(
                permission_mode=source.permission_mode,
                working_directory=source.working_directory,
                labels=list(source.labels),
                name=branch_name,
                messages=[m.copy() for m in source.messages[:index]],
            ),
        )
        event = SessionBranched(
            session_id=session_id,
            new_session=new_session,
            prefill_text=target.content,
        )
        logger.info(
            "Branched session",
            session_id=session_id,
            new_session_id=new_session.id,
            copied=index,
        )
        self._emit(event)
        return event

    def forget(self, session_id: str) -> None:
        """Drop engine state for a deleted session."""
        self._turns.pop(session_id, None)

    async def shutdown(self) -> None:
        for session_id in [sid for sid, st in self._turns.items() if st.task is not None]:
            await self.halt(session_id)

    def _emit(self, event: SessionEvent) -> None:
        self._bus.emit(event)
