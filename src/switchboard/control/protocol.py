"""Remote control of sessions by a controller session.

``SessionControl`` is bound to one controller session. Every operation
returns a ``ControlResult`` and never raises; operations that take a target
session refuse to act on the controller itself, since a controller messaging
or stopping itself would loop or deadlock its own turn.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from switchboard.control.subscriptions import SUBSCRIPTION_EVENTS, SubscriptionManager
from switchboard.errors import SessionBusyError, SwitchboardError
from switchboard.event_bus import SessionEventBus
from switchboard.events import (
    Complete,
    ErrorEvent,
    MessageDropped,
    SessionEvent,
    TextComplete,
    TextDelta,
    TypedError,
    error_text,
)
from switchboard.logger import logger
from switchboard.sessions.engine import SessionEngine
from switchboard.sessions.store import SessionStore
from switchboard.types import PERMISSION_MODES, Session, SessionOptions
from switchboard.utils import generate_id, truncate

DEFAULT_APPROVAL_MESSAGE = "Plan approved. Proceed with execution."
RECENT_MESSAGES = 3
RECENT_MESSAGE_CHARS = 200


@dataclass
class ControlResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def ok(cls, **data: Any) -> ControlResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, **data: Any) -> ControlResult:
        return cls(success=False, data=data, error=error)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            payload["error"] = self.error
        payload.update({k: v for k, v in self.data.items() if v is not None})
        return payload


class SessionControl:
    def __init__(
        self,
        controller_id: str,
        *,
        store: SessionStore,
        engine: SessionEngine,
        bus: SessionEventBus,
        subscriptions: SubscriptionManager,
        default_workspace: str = "default",
        send_timeout_ms: int = 120000,
    ) -> None:
        self.controller_id = controller_id
        self._store = store
        self._engine = engine
        self._bus = bus
        self._subscriptions = subscriptions
        self._default_workspace = default_workspace
        self._send_timeout_ms = send_timeout_ms

    # --- Helpers ---

    def _self_guard(self, target_id: str, action: str) -> ControlResult | None:
        if target_id == self.controller_id:
            logger.warning(
                "Refused control action on controller itself",
                controller_id=self.controller_id,
                action=action,
            )
            return ControlResult.fail(
                f"Cannot {action} the controller session from itself "
                "(this would cause an infinite loop)"
            )
        return None

    def _resolve(self, target_id: str) -> Session | ControlResult:
        session = self._store.get(target_id)
        if session is None:
            return ControlResult.fail(f"Session '{target_id}' not found")
        return session

    def _summary(self, session: Session) -> dict[str, Any]:
        return {
            "id": session.id,
            "name": session.name,
            "workspaceId": session.workspace_id,
            "isProcessing": session.is_processing,
            "labels": list(session.labels),
            "permissionMode": session.permission_mode,
            "messageCount": session.message_count,
            "lastMessageAt": session.last_message_at,
            "tokenUsage": session.token_usage.to_dict(),
            "isController": session.id == self.controller_id,
        }

    # --- Operations ---

    async def list_sessions(self, include_messages: bool = False) -> ControlResult:
        sessions = sorted(
            self._store.list(),
            key=lambda s: s.last_message_at or s.created_at,
            reverse=True,
        )
        summaries = []
        for session in sessions:
            summary = self._summary(session)
            if include_messages:
                summary["recentMessages"] = [
                    {"role": m.role, "content": truncate(m.content, RECENT_MESSAGE_CHARS)}
                    for m in session.messages[-RECENT_MESSAGES:]
                ]
            summaries.append(summary)
        return ControlResult.ok(sessions=summaries, count=len(summaries))

    async def create_session(
        self,
        workspace_id: str | None = None,
        working_directory: str | None = None,
        permission_mode: str | None = None,
        initial_message: str | None = None,
        labels: Sequence[str] | None = None,
    ) -> ControlResult:
        if permission_mode is not None and permission_mode not in PERMISSION_MODES:
            return ControlResult.fail(f"Invalid permission mode '{permission_mode}'")
        try:
            session = self._store.create(
                workspace_id or self._default_workspace,
                SessionOptions(
                    permission_mode=permission_mode,  # type: ignore[arg-type]
                    working_directory=working_directory,
                    labels=list(labels or []),
                ),
                programmatic=True,
            )
            if initial_message:
                await self._engine.send_message(session.id, initial_message)
        except (SwitchboardError, OSError) as exc:
            return ControlResult.fail(f"Error creating session: {exc}")
        logger.info(
            "Controller created session",
            controller_id=self.controller_id,
            session_id=session.id,
        )
        return ControlResult.ok(
            sessionId=session.id,
            workspaceId=session.workspace_id,
            permissionMode=session.permission_mode,
            workingDirectory=session.working_directory,
            labels=list(session.labels),
            message=(
                "Session created and initial message sent"
                if initial_message
                else "Session created successfully"
            ),
        )

    async def send_message(
        self,
        target_id: str,
        text: str,
        wait_for_response: bool = False,
        timeout_ms: int | None = None,
    ) -> ControlResult:
        if refused := self._self_guard(target_id, "send a message to"):
            return refused
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved

        if not wait_for_response:
            try:
                await self._engine.send_message(target_id, text)
            except SwitchboardError as exc:
                return ControlResult.fail(f"Error sending message: {exc}")
            return ControlResult.ok(
                sessionId=target_id,
                message=(
                    "Message queued (session is processing)"
                    if resolved.is_processing
                    else "Message sent"
                ),
            )

        return await self._send_and_wait(
            target_id, text, (timeout_ms or self._send_timeout_ms) / 1000
        )

    async def _send_and_wait(self, target_id: str, text: str, timeout: float) -> ControlResult:
        loop = asyncio.get_running_loop()
        done: asyncio.Future[ControlResult] = loop.create_future()
        turn_id = generate_id("turn")
        streamed: list[str] = []
        final: list[str] = []

        def partial() -> str | None:
            return "".join(final) or "".join(streamed) or None

        def on_event(event: SessionEvent) -> None:
            if done.done() or getattr(event, "turn_id", None) != turn_id:
                return
            match event:
                case TextDelta(delta=delta):
                    streamed.append(delta)
                case TextComplete(text=block, is_intermediate=False):
                    final[:] = [block]
                    streamed.clear()
                case ErrorEvent() | TypedError():
                    done.set_result(
                        ControlResult.fail(error_text(event), partialResponse=partial())
                    )
                case MessageDropped():
                    done.set_result(
                        ControlResult.fail("Message dropped: session was stopped before it ran")
                    )
                case Complete(interrupted=interrupted):
                    if interrupted:
                        done.set_result(
                            ControlResult.fail(
                                "Session was stopped before responding",
                                partialResponse=partial(),
                            )
                        )
                    else:
                        done.set_result(
                            ControlResult.ok(sessionId=target_id, response=partial() or "")
                        )

        # Listen before sending so no event of this turn is missed
        unsubscribe = self._bus.subscribe(target_id, on_event)
        try:
            await self._engine.send_message(target_id, text, turn_id=turn_id)
            return await asyncio.wait_for(done, timeout)
        except TimeoutError:
            logger.info("Timed out waiting for response", session_id=target_id, timeout=timeout)
            return ControlResult.fail("Timeout waiting for response", partialResponse=partial())
        except SwitchboardError as exc:
            return ControlResult.fail(f"Error sending message: {exc}")
        finally:
            unsubscribe()

    async def get_session_status(self, target_id: str) -> ControlResult:
        if refused := self._self_guard(target_id, "inspect"):
            return refused
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved
        status = self._summary(resolved)
        status["workingDirectory"] = resolved.working_directory
        status["queuedMessages"] = self._engine.queued_count(target_id)
        return ControlResult.ok(**status)

    async def get_session_messages(
        self,
        target_id: str,
        limit: int = 20,
        offset: int = 0,
        include_tools: bool = False,
    ) -> ControlResult:
        if refused := self._self_guard(target_id, "read messages of"):
            return refused
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved

        limit = max(0, limit)
        offset = max(0, offset)
        messages = resolved.messages
        filtered = (
            list(messages)
            if include_tools
            else [m for m in messages if m.role in ("user", "assistant")]
        )
        start = max(0, len(filtered) - limit - offset)
        end = max(0, len(filtered) - offset)
        window = [m.to_dict() for m in filtered[start:end]]
        return ControlResult.ok(
            sessionId=target_id,
            totalMessages=len(messages),
            filteredCount=len(filtered),
            returned=len(window),
            offset=offset,
            messages=window,
        )

    async def stop_session(self, target_id: str) -> ControlResult:
        if refused := self._self_guard(target_id, "stop"):
            return refused
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved
        if not resolved.is_processing:
            return ControlResult.ok(
                sessionId=target_id, message="Session was not processing (already idle)"
            )
        await self._engine.cancel_processing(target_id)
        return ControlResult.ok(sessionId=target_id, message="Session processing stopped")

    async def delete_session(self, target_id: str, force: bool = False) -> ControlResult:
        if refused := self._self_guard(target_id, "delete"):
            return refused
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved
        try:
            await self._store.delete(target_id, force=force)
        except SessionBusyError:
            return ControlResult.fail(
                "Session is currently processing. Use force=true to delete anyway, "
                "or stop the session first."
            )
        except SwitchboardError as exc:
            return ControlResult.fail(f"Error deleting session: {exc}")
        self._engine.forget(target_id)
        return ControlResult.ok(sessionId=target_id, message="Session deleted")

    async def rename_session(self, target_id: str, name: str) -> ControlResult:
        if refused := self._self_guard(target_id, "rename"):
            return refused
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved
        session = self._store.rename(target_id, name)
        return ControlResult.ok(sessionId=target_id, name=session.name, message="Session renamed")

    async def set_session_labels(self, target_id: str, labels: Sequence[str]) -> ControlResult:
        if refused := self._self_guard(target_id, "relabel"):
            return refused
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved
        session = self._store.set_labels(target_id, list(labels))
        return ControlResult.ok(
            sessionId=target_id, labels=list(session.labels), message="Labels updated"
        )

    async def subscribe_session_events(
        self, target_id: str, events: Sequence[str] | None = None
    ) -> ControlResult:
        if refused := self._self_guard(target_id, "subscribe to"):
            return refused
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved
        unknown = sorted(set(events or ()) - set(SUBSCRIPTION_EVENTS))
        if unknown:
            return ControlResult.fail(
                f"Unknown events: {', '.join(unknown)}. "
                f"Valid events: {', '.join(SUBSCRIPTION_EVENTS)}"
            )
        sub = self._subscriptions.subscribe(self.controller_id, target_id, events)
        return ControlResult.ok(
            subscriptionId=sub.id,
            targetSessionId=target_id,
            events=sorted(sub.events),
            message="Subscription created. You will receive notifications for these events.",
        )

    async def unsubscribe_session_events(
        self,
        subscription_id: str | None = None,
        target_id: str | None = None,
    ) -> ControlResult:
        if not subscription_id and not target_id:
            return ControlResult.fail("Must provide either subscriptionId or sessionId")
        if target_id and (refused := self._self_guard(target_id, "unsubscribe from")):
            return refused
        removed, remaining = self._subscriptions.unsubscribe(
            self.controller_id, subscription_id=subscription_id, target_id=target_id
        )
        return ControlResult.ok(
            removed=removed,
            remainingSubscriptions=remaining,
            message=(
                f"Removed {len(removed)} subscription(s)"
                if removed
                else "No matching subscriptions found"
            ),
        )

    async def list_subscriptions(self) -> ControlResult:
        subs = [s.to_dict() for s in self._subscriptions.list(self.controller_id)]
        return ControlResult.ok(subscriptions=subs, count=len(subs))

    async def set_permission_mode(self, target_id: str, mode: str) -> ControlResult:
        if refused := self._self_guard(target_id, "change the permission mode of"):
            return refused
        if mode not in PERMISSION_MODES:
            return ControlResult.fail(
                f"Invalid permission mode '{mode}'. Valid modes: {', '.join(PERMISSION_MODES)}"
            )
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved
        previous = resolved.permission_mode
        self._store.set_permission_mode(target_id, mode)  # type: ignore[arg-type]
        return ControlResult.ok(
            sessionId=target_id,
            previousMode=previous,
            newMode=mode,
            message=f"Permission mode changed from '{previous}' to '{mode}'",
        )

    async def approve_plan(self, target_id: str, message: str | None = None) -> ControlResult:
        if refused := self._self_guard(target_id, "approve plans for"):
            return refused
        resolved = self._resolve(target_id)
        if isinstance(resolved, ControlResult):
            return resolved
        if resolved.permission_mode != "safe":
            return ControlResult.fail(
                f"Session is not in Explore mode (current: {resolved.permission_mode}). "
                "approve_plan is only needed when session is in 'safe' mode."
            )
        if resolved.is_processing:
            return ControlResult.fail(
                "Session is currently processing. Wait for it to become idle before approving."
            )
        self._store.set_permission_mode(target_id, "allow-all")
        try:
            await self._engine.send_message(target_id, message or DEFAULT_APPROVAL_MESSAGE)
        except SwitchboardError as exc:
            return ControlResult.fail(f"Error approving plan: {exc}")
        return ControlResult.ok(
            sessionId=target_id,
            previousMode="safe",
            newMode="allow-all",
            message="Plan approved and execution started",
        )
