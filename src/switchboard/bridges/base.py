"""Shared transport bridge machinery.

A bridge maps each external conversation (Telegram chat, Matrix room) to
exactly one session, forwards inbound text to the session engine and renders
the session's events back as transport-native messages.

Transport specifics (HTTP APIs, message handles, markup) live behind the
``TransportClient`` protocol; everything else is shared here.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, TypeAlias

from switchboard.bridges.formatting import LengthFn, split_message, truncate_for_limit
from switchboard.bridges.mapping import ChannelMapping, ChannelMappingStore
from switchboard.bridges.prompts import build_preamble, init_memory_file, write_context_file
from switchboard.config import Settings
from switchboard.credentials import CredentialStore
from switchboard.errors import TransportError
from switchboard.event_bus import SessionEventBus
from switchboard.events import (
    Complete,
    ErrorEvent,
    SessionDeleted,
    SessionEvent,
    TextComplete,
    TextDelta,
    TypedError,
    error_text,
)
from switchboard.logger import logger
from switchboard.sessions import SessionEngine, SessionStore
from switchboard.types import Session, SessionOptions
from switchboard.utils import create_background_task

IncomingCallback: TypeAlias = Callable[[str, str, str | None], Awaitable[None]]


class TransportClient(Protocol):
    """Network adapter for one chat transport.

    Handles are opaque to the bridge: whatever ``send_text`` returns is
    passed back to ``edit_text`` unchanged.
    """

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def get_self_identity(self) -> str: ...

    async def send_text(self, target: str, text: str) -> Any: ...

    async def edit_text(self, target: str, handle: Any, text: str) -> None: ...

    async def set_typing(self, target: str, on: bool) -> None: ...

    def on_incoming_text(self, callback: IncomingCallback) -> None:
        """Register ``callback(external_id, text, sender_name)`` for inbound messages."""
        ...


@dataclass
class BridgeContext:
    """Collaborators handed to ``switchboard_create_bridge`` hook implementations."""

    settings: Settings
    store: SessionStore
    engine: SessionEngine
    bus: SessionEventBus
    credentials: CredentialStore


@dataclass
class StreamingRenderState:
    """In-progress live rendering of one logical reply."""

    external_id: str
    handle: Any = None
    accumulated: str = ""
    last_sent: str = ""
    edit_count: int = 0
    timer: asyncio.TimerHandle | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    finished: bool = False

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


@dataclass
class BridgeStatus:
    running: bool
    identity: str | None
    has_credentials: bool
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "identity": self.identity,
            "hasCredentials": self.has_credentials,
            "error": self.error,
            **self.extra,
        }


class TransportBridge:
    """Base class for transport bridges.

    Subclasses pick the transport name, label and limits, and build the
    client. A bridge constructed without a client (missing credentials)
    reports that through ``status()`` and never starts.
    """

    name: str = "transport"

    def __init__(
        self,
        context: BridgeContext,
        client: TransportClient | None,
        *,
        message_limit: int,
        streaming: bool,
        edit_interval: float,
        max_edits: int,
        missing_credentials: str | None = None,
        length_fn: LengthFn = len,
    ) -> None:
        self._ctx = context
        self._client = client
        self.message_limit = message_limit
        self.length_fn = length_fn
        self.streaming = streaming
        self.edit_interval = edit_interval
        self.max_edits = max_edits
        self._missing_credentials = missing_credentials

        root = context.store.root
        self.context_dir: Path = root / self.name
        self.mapping = ChannelMappingStore(root / f"{self.name}-sessions.json")
        self._identity: str | None = None
        self._running = False
        self._error: str | None = None
        # session_id → unsubscribe
        self._listeners: dict[str, Callable[[], None]] = {}
        # session_id → live render state
        self._streams: dict[str, StreamingRenderState] = {}

    @property
    def label(self) -> str:
        return self.name

    @property
    def identity(self) -> str:
        return self._identity or f"{self.name} bridge"

    @property
    def workspace_id(self) -> str:
        return self._ctx.settings.sessions.default_workspace

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._client is None:
            self._error = self._missing_credentials or "No credentials configured"
            logger.warning("Bridge not started", bridge=self.name, reason=self._error)
            return
        self.mapping.load()
        self._client.on_incoming_text(self.on_incoming_message)
        try:
            self._identity = await self._client.get_self_identity()
            await self._client.start()
        except Exception as exc:
            self._error = str(exc)
            logger.error("Bridge failed to start", bridge=self.name, err=str(exc))
            raise
        self._running = True
        self._error = None
        logger.info("Bridge started", bridge=self.name, identity=self._identity)

    async def stop(self) -> None:
        for unsubscribe in self._listeners.values():
            unsubscribe()
        self._listeners.clear()
        for state in self._streams.values():
            state.cancel_timer()
            state.finished = True
        self._streams.clear()
        if self._client is not None and self._running:
            await self._client.stop()
        self._running = False
        logger.info("Bridge stopped", bridge=self.name)

    def status(self) -> BridgeStatus:
        return BridgeStatus(
            running=self._running,
            identity=self._identity,
            has_credentials=self._client is not None,
            error=self._error,
        )

    # --- Inbound ---

    async def on_incoming_message(
        self, external_id: str, text: str, sender_name: str | None = None
    ) -> None:
        """Route one inbound message to the conversation's session."""
        try:
            session, is_new = self._resolve_session(external_id)
            self._attach(session.id, external_id)
            await self._set_typing(external_id, True)
            prompt = text
            if is_new:
                prompt = build_preamble(self.name, self.identity, external_id, sender_name) + text
            await self._ctx.engine.send_message(session.id, prompt)
        except Exception as exc:
            logger.exception("Failed to handle inbound message", bridge=self.name, chat=external_id)
            await self._send_error(external_id, str(exc))

    def _resolve_session(self, external_id: str) -> tuple[Session, bool]:
        mapping = self.mapping.get(external_id)
        if mapping is not None:
            session = self._ctx.store.get(mapping.session_id)
            if session is not None:
                return session, False
            logger.info(
                "Discarding stale channel mapping",
                bridge=self.name,
                chat=external_id,
                session_id=mapping.session_id,
            )
            self._drop_session_state(mapping.session_id)
            self.mapping.remove(external_id)

        write_context_file(self.context_dir, self.name, self.identity, external_id)
        session = self._ctx.store.create(
            self.workspace_id,
            SessionOptions(
                permission_mode="allow-all",
                working_directory=str(self.context_dir),
                labels=[self.label],
            ),
            programmatic=True,
        )
        self.mapping.set(
            ChannelMapping(
                external_id=external_id,
                session_id=session.id,
                workspace_id=session.workspace_id,
            )
        )
        init_memory_file(
            self._ctx.store.memory_path(session.id), self.name, self.identity, external_id
        )
        logger.info(
            "Mapped conversation to new session",
            bridge=self.name,
            chat=external_id,
            session_id=session.id,
        )
        return session, True

    def _attach(self, session_id: str, external_id: str) -> None:
        if session_id in self._listeners:
            return

        async def listener(event: SessionEvent) -> None:
            await self.handle_event(external_id, event)

        self._listeners[session_id] = self._ctx.bus.subscribe(session_id, listener)

    def _drop_session_state(self, session_id: str) -> None:
        unsubscribe = self._listeners.pop(session_id, None)
        if unsubscribe is not None:
            unsubscribe()
        state = self._streams.pop(session_id, None)
        if state is not None:
            state.cancel_timer()
            state.finished = True

    # --- Outbound ---

    async def handle_event(self, external_id: str, event: SessionEvent) -> None:
        match event:
            case TextDelta(delta=delta):
                if self.streaming:
                    self._on_delta(event.session_id, external_id, delta)
            case TextComplete(is_intermediate=True):
                state = self._streams.get(event.session_id)
                if state is not None and state.accumulated:
                    state.accumulated += "\n\n"
            case TextComplete(text=text):
                await self._deliver_final(event.session_id, external_id, text)
            case Complete():
                state = self._streams.pop(event.session_id, None)
                if state is not None:
                    state.cancel_timer()
                    state.finished = True
                await self._set_typing(external_id, False)
            case ErrorEvent() | TypedError():
                await self._send_error(external_id, error_text(event))
            case SessionDeleted():
                # The mapping stays; the next inbound message finds it stale.
                self._drop_session_state(event.session_id)

    def _on_delta(self, session_id: str, external_id: str, delta: str) -> None:
        state = self._streams.get(session_id)
        if state is None:
            state = StreamingRenderState(external_id=external_id)
            self._streams[session_id] = state
        state.accumulated += delta
        if state.timer is None and state.edit_count < self.max_edits:
            loop = asyncio.get_running_loop()
            state.timer = loop.call_later(self.edit_interval, self._schedule_flush, state)

    def _schedule_flush(self, state: StreamingRenderState) -> None:
        state.timer = None
        create_background_task(self._flush(state), name=f"{self.name}-stream-flush")

    async def _flush(self, state: StreamingRenderState) -> None:
        assert self._client is not None
        async with state.lock:
            if state.finished or not state.accumulated:
                return
            if state.edit_count >= self.max_edits:
                return
            text = truncate_for_limit(state.accumulated, self.message_limit, self.length_fn)
            if text == state.last_sent:
                return
            try:
                if state.handle is None:
                    state.handle = await self._client.send_text(state.external_id, text)
                else:
                    await self._client.edit_text(state.external_id, state.handle, text)
            except TransportError as exc:
                if not exc.is_not_modified:
                    logger.warning("Streaming edit failed", bridge=self.name, err=str(exc))
                return
            except Exception as exc:
                logger.warning("Streaming edit failed", bridge=self.name, err=str(exc))
                return
            state.edit_count += 1
            state.last_sent = text

    async def _deliver_final(self, session_id: str, external_id: str, text: str) -> None:
        state = self._streams.pop(session_id, None)
        handle = None
        if state is not None:
            state.cancel_timer()
            async with state.lock:
                state.finished = True
                handle = state.handle
        if not text.strip():
            return
        chunks = split_message(text, self.message_limit, self.length_fn)
        if handle is not None:
            first, chunks = chunks[0], chunks[1:]
            if not await self._edit_final(external_id, handle, first):
                chunks.insert(0, first)
        for chunk in chunks:
            await self._send(external_id, chunk)

    async def _edit_final(self, external_id: str, handle: Any, text: str) -> bool:
        assert self._client is not None
        try:
            await self._client.edit_text(external_id, handle, text)
        except TransportError as exc:
            if exc.is_not_modified:
                return True
            logger.warning(
                "Final edit failed, sending new message", bridge=self.name, err=str(exc)
            )
            return False
        except Exception as exc:
            logger.warning(
                "Final edit failed, sending new message", bridge=self.name, err=str(exc)
            )
            return False
        return True

    async def _send(self, external_id: str, text: str) -> None:
        if self._client is None:
            return
        try:
            await self._client.send_text(external_id, text)
        except Exception as exc:
            logger.warning(
                "Failed to send message", bridge=self.name, chat=external_id, err=str(exc)
            )

    async def _send_error(self, external_id: str, message: str) -> None:
        await self._send(external_id, f"Error: {message}")

    async def _set_typing(self, external_id: str, on: bool) -> None:
        if self._client is None:
            return
        try:
            await self._client.set_typing(external_id, on)
        except Exception as exc:
            logger.debug("Typing indicator failed", bridge=self.name, err=str(exc))
