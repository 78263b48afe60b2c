"""Controller-directed notifications about other sessions.

A controller subscribes to a target session's events. Matching events are
turned into short markdown notifications and delivered by sending a message
to the controller's own session, so the controller sees them as new turns.

One ``SubscriptionManager`` exists per application; it owns the registry of
subscriptions keyed by controller id.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, TypeAlias

from switchboard.event_bus import SessionEventBus
from switchboard.events import (
    Complete,
    ErrorEvent,
    PlanSubmitted,
    SessionDeleted,
    SessionEvent,
    TypedError,
    UserMessage,
    error_text,
)
from switchboard.logger import logger
from switchboard.sessions.engine import SessionEngine
from switchboard.sessions.store import SessionStore
from switchboard.utils import create_background_task

SubscriptionEvent: TypeAlias = Literal["idle", "long_running", "error", "plan_submitted"]

SUBSCRIPTION_EVENTS: tuple[SubscriptionEvent, ...] = (
    "idle",
    "long_running",
    "error",
    "plan_submitted",
)

_PREFIX = "[Session Notification]"


@dataclass
class Subscription:
    id: str
    controller_id: str
    target_session_id: str
    events: frozenset[str]
    created_at: float  # wall clock
    unsubscribe: Callable[[], None] = lambda: None
    timer: asyncio.Task[Any] | None = None
    # Monotonic start of the target's current turn, None while idle
    processing_started: float | None = None
    next_threshold: float = 0.0
    notified_long_running: bool = False
    released: bool = field(default=False, repr=False)

    def release(self) -> None:
        """Detach the listener and stop the timer. Safe to call more than once."""
        if self.released:
            return
        self.released = True
        self.unsubscribe()
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "targetSessionId": self.target_session_id,
            "events": sorted(self.events),
            "createdAt": datetime.fromtimestamp(self.created_at, UTC).isoformat(),
        }


class SubscriptionManager:
    def __init__(
        self,
        store: SessionStore,
        engine: SessionEngine,
        bus: SessionEventBus,
        *,
        poll_interval: float = 60.0,
        long_running_threshold: float = 600.0,
        long_running_repeat: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._engine = engine
        self._bus = bus
        self._poll_interval = poll_interval
        self._threshold = long_running_threshold
        self._repeat = long_running_repeat
        self._clock = clock
        self._wall_clock = wall_clock
        self._registry: dict[str, dict[str, Subscription]] = {}
        self._controller_watches: dict[str, Callable[[], None]] = {}
        self._counter = itertools.count(1)

    # --- Registry ---

    def subscribe(
        self,
        controller_id: str,
        target_id: str,
        events: Iterable[str] | None = None,
    ) -> Subscription:
        """Register a subscription. Callers validate ids beforehand."""
        if controller_id == target_id:
            raise ValueError("A session cannot subscribe to itself")
        wanted = frozenset(events) if events else frozenset(SUBSCRIPTION_EVENTS)
        unknown = wanted - set(SUBSCRIPTION_EVENTS)
        if unknown:
            raise ValueError(f"Unknown subscription events: {', '.join(sorted(unknown))}")

        now = self._wall_clock()
        sub = Subscription(
            id=f"sub_{int(now * 1000)}_{next(self._counter)}",
            controller_id=controller_id,
            target_session_id=target_id,
            events=wanted,
            created_at=now,
            next_threshold=self._threshold,
        )
        target = self._store.get(target_id)
        if target is not None and target.is_processing:
            sub.processing_started = self._clock()

        sub.unsubscribe = self._bus.subscribe(
            target_id, lambda event: self._on_target_event(sub, event)
        )
        if "long_running" in wanted:
            sub.timer = create_background_task(
                self._poll_long_running(sub), name=f"long-running-{sub.id}"
            )

        self._registry.setdefault(controller_id, {})[sub.id] = sub
        self._watch_controller(controller_id)
        logger.info(
            "Subscription created",
            controller_id=controller_id,
            target_session_id=target_id,
            subscription_id=sub.id,
            events=sorted(wanted),
        )
        return sub

    def unsubscribe(
        self,
        controller_id: str,
        *,
        subscription_id: str | None = None,
        target_id: str | None = None,
    ) -> tuple[list[str], int]:
        """Remove by id and/or target. Returns (removed ids, remaining count)."""
        subs = self._registry.get(controller_id, {})
        removed: list[str] = []
        for sub in list(subs.values()):
            if sub.id == subscription_id or (
                target_id is not None and sub.target_session_id == target_id
            ):
                sub.release()
                del subs[sub.id]
                removed.append(sub.id)
        if removed:
            logger.info("Subscriptions removed", controller_id=controller_id, removed=removed)
            self._release_if_empty(controller_id)
        return removed, len(subs)

    def list(self, controller_id: str) -> list[Subscription]:
        return list(self._registry.get(controller_id, {}).values())

    def release_controller(self, controller_id: str) -> None:
        """Drop every subscription a controller holds."""
        subs = self._registry.pop(controller_id, {})
        for sub in subs.values():
            sub.release()
        watch = self._controller_watches.pop(controller_id, None)
        if watch is not None:
            watch()
        if subs:
            logger.info(
                "Released controller subscriptions", controller_id=controller_id, count=len(subs)
            )

    def _release_if_empty(self, controller_id: str) -> None:
        if not self._registry.get(controller_id):
            self.release_controller(controller_id)

    def close(self) -> None:
        for controller_id in list(self._registry):
            self.release_controller(controller_id)

    def _watch_controller(self, controller_id: str) -> None:
        if controller_id in self._controller_watches:
            return

        def _on_controller_event(event: SessionEvent) -> None:
            if isinstance(event, SessionDeleted):
                self.release_controller(controller_id)

        self._controller_watches[controller_id] = self._bus.subscribe(
            controller_id, _on_controller_event
        )

    # --- Event translation ---

    def _on_target_event(self, sub: Subscription, event: SessionEvent) -> None:
        target = sub.target_session_id
        match event:
            case UserMessage(status="processing"):
                sub.processing_started = self._clock()
                self._rearm(sub)
            case Complete():
                started, sub.processing_started = sub.processing_started, None
                self._rearm(sub)
                if "idle" in sub.events:
                    duration = round(self._clock() - started) if started is not None else 0
                    self._notify(
                        sub,
                        f"{_PREFIX} Session **{target}** is now **idle**.\n"
                        f"- Completed at: {datetime.now(UTC).isoformat()}\n"
                        f"- Processing duration: {duration}s",
                    )
            case ErrorEvent() | TypedError():
                if "error" in sub.events:
                    self._notify(
                        sub,
                        f"{_PREFIX} Session **{target}** encountered an **error**:\n"
                        f"```\n{error_text(event)}\n```",
                    )
            case PlanSubmitted():
                if "plan_submitted" in sub.events:
                    self._notify(
                        sub,
                        f"{_PREFIX} Session **{target}** submitted a **plan**.\n"
                        "Use `approve_plan` to approve and execute it.",
                    )
            case SessionDeleted():
                sub.release()
                self._registry.get(sub.controller_id, {}).pop(sub.id, None)
                self._release_if_empty(sub.controller_id)
                self._notify(
                    sub,
                    f"{_PREFIX} Session **{target}** was **deleted**. Subscription removed.",
                )

    def _rearm(self, sub: Subscription) -> None:
        sub.next_threshold = self._threshold
        sub.notified_long_running = False

    # --- Long-running detection ---

    async def _poll_long_running(self, sub: Subscription) -> None:
        while not sub.released:
            await asyncio.sleep(self._poll_interval)
            self.check_long_running(sub)

    def check_long_running(self, sub: Subscription) -> bool:
        """Send a long-running notification if one is due. Returns True if sent."""
        target = self._store.get(sub.target_session_id)
        if target is None or not target.is_processing or sub.processing_started is None:
            self._rearm(sub)
            return False

        elapsed = self._clock() - sub.processing_started
        if elapsed < sub.next_threshold:
            return False

        minutes = int(elapsed // 60)
        if not sub.notified_long_running:
            text = (
                f"{_PREFIX} Session **{sub.target_session_id}** has been running for "
                f"**{minutes} minutes**.\n"
                "Consider checking on it or using `stop_session` if it appears stuck."
            )
        else:
            text = (
                f"{_PREFIX} Session **{sub.target_session_id}** still running: "
                f"**{minutes} minutes**."
            )
        sub.notified_long_running = True
        # One notification per check even if several thresholds were skipped
        while sub.next_threshold <= elapsed:
            sub.next_threshold += self._repeat
        self._notify(sub, text)
        return True

    # --- Delivery ---

    def _notify(self, sub: Subscription, text: str) -> None:
        # Delivered to the controller's own session; not a control action.
        logger.debug(
            "Delivering session notification",
            controller_id=sub.controller_id,
            target_session_id=sub.target_session_id,
        )
        create_background_task(
            self._deliver(sub.controller_id, text), name=f"notify-{sub.controller_id}"
        )

    async def _deliver(self, controller_id: str, text: str) -> None:
        if self._store.get(controller_id) is None:
            logger.debug("Controller gone, dropping notification", controller_id=controller_id)
            return
        await self._engine.send_message(controller_id, text)
