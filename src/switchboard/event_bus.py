"""Per-session publish/subscribe for engine events.

Listeners may be plain functions or coroutine functions. Plain listeners run
inline during ``emit``. Coroutine listeners get their own queue and worker
task, so each one sees events in emit order without blocking the emitter or
the other listeners.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, TypeAlias

from switchboard.events import SessionDeleted, SessionEvent
from switchboard.logger import logger
from switchboard.utils import create_background_task

Listener: TypeAlias = Callable[[SessionEvent], None] | Callable[[SessionEvent], Awaitable[None]]


class _Slot:
    """One registered listener."""

    def __init__(self, session_id: str, listener: Listener) -> None:
        self.session_id = session_id
        self.listener = listener
        self.is_async = inspect.iscoroutinefunction(listener)
        self.closed = False
        self._queue: asyncio.Queue[SessionEvent | None] | None = None
        self._worker: asyncio.Task[Any] | None = None

    def deliver(self, event: SessionEvent) -> None:
        if self.closed:
            return
        if not self.is_async:
            _safe_call(self.listener, event)
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._worker = create_background_task(
                self._drain(), name=f"event-listener-{self.session_id}"
            )
        self._queue.put_nowait(event)

    def finish(self) -> None:
        """Stop after delivering whatever is already queued."""
        if self._queue is not None:
            self._queue.put_nowait(None)

    def close(self) -> None:
        """Stop immediately, dropping queued events."""
        self.closed = True
        self.finish()

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            if event is None or self.closed:
                return
            try:
                await self.listener(event)  # type: ignore[misc]
            except Exception as exc:
                logger.warning(
                    "Session event listener error",
                    session_id=self.session_id,
                    event=event.type,
                    err=str(exc),
                )


class SessionEventBus:
    """Event fan-out keyed by session id."""

    def __init__(self) -> None:
        self._slots: defaultdict[str, list[_Slot]] = defaultdict(list)

    def subscribe(self, session_id: str, listener: Listener) -> Callable[[], None]:
        """Attach a listener. Returns an idempotent unsubscribe function."""
        slot = _Slot(session_id, listener)
        self._slots[session_id].append(slot)

        def _unsubscribe() -> None:
            slot.close()
            slots = self._slots.get(session_id)
            if slots is None:
                return
            with contextlib.suppress(ValueError):
                slots.remove(slot)
            if not slots:
                del self._slots[session_id]

        return _unsubscribe

    def emit(self, event: SessionEvent) -> None:
        """Deliver *event* to every listener currently attached to its session."""
        # Snapshot: listeners may unsubscribe themselves while being called.
        for slot in list(self._slots.get(event.session_id, ())):
            slot.deliver(event)

        if isinstance(event, SessionDeleted):
            for slot in self._slots.pop(event.session_id, []):
                slot.finish()

    def listener_count(self, session_id: str) -> int:
        return len(self._slots.get(session_id, ()))

    def close(self) -> None:
        """Drop every listener (application shutdown)."""
        for slots in self._slots.values():
            for slot in slots:
                slot.close()
        self._slots.clear()


def _safe_call(listener: Listener, event: SessionEvent) -> None:
    try:
        listener(event)
    except Exception as exc:
        logger.warning(
            "Session event listener error",
            session_id=event.session_id,
            event=event.type,
            err=str(exc),
        )
