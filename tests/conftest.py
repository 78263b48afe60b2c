"""Shared test fixtures for switchboard."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest

from switchboard.event_bus import SessionEventBus
from switchboard.events import SessionEvent
from switchboard.runtime import InvokeOptions, RuntimeChunk, TextChunk
from switchboard.sessions import SessionEngine, SessionStore
from switchboard.types import Message

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"workspace_root", "sessions_dir"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (telegram, matrix, etc.) and cached property
    overrides (workspace_root, sessions_dir).

    Usage::

        s = make_settings(workspace_root=tmp_path)
        s = make_settings(telegram=TelegramConfig(enabled=True))
    """
    from switchboard.config import (
        AgentConfig,
        ControlConfig,
        LoggingConfig,
        MatrixConfig,
        SecretsConfig,
        SessionsConfig,
        Settings,
        SubscriptionsConfig,
        TelegramConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "sessions": SessionsConfig(),
        "agent": AgentConfig(),
        "control": ControlConfig(),
        "subscriptions": SubscriptionsConfig(),
        "telegram": TelegramConfig(),
        "matrix": MatrixConfig(),
        "logging": LoggingConfig(),
        "secrets": SecretsConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


async def drain(times: int = 10) -> None:
    """Let pending callbacks and freshly created tasks run."""
    for _ in range(times):
        await asyncio.sleep(0)


async def wait_idle(engine: SessionEngine, session_id: str, timeout: float = 2.0) -> None:
    """Wait until the session has no active turn (queued turns included)."""

    async def _poll() -> None:
        while engine.is_processing(session_id):
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)
    await drain()


def record(bus: SessionEventBus, session_id: str) -> list[SessionEvent]:
    """Attach a plain listener and return the list it appends to."""
    events: list[SessionEvent] = []
    bus.subscribe(session_id, events.append)
    return events


class FakeRuntime:
    """Scripted ``AgentRuntime``.

    Each ``invoke`` consumes the next script. Script items are yielded as
    chunks, except:
    - an ``asyncio.Event`` is awaited (to hold a turn open)
    - an ``Exception`` instance is raised
    Without a script the turn answers ``echo: <prompt>``.
    """

    name = "fake"

    def __init__(self) -> None:
        self.scripts: deque[list[Any]] = deque()
        self.calls: list[tuple[str, list[Message], InvokeOptions]] = []
        self.completions: deque[str | Exception] = deque()
        self.complete_prompts: list[tuple[str, str | None]] = []

    def script(self, *items: Any) -> None:
        self.scripts.append(list(items))

    @property
    def prompts(self) -> list[str]:
        return [prompt for prompt, _, _ in self.calls]

    async def invoke(
        self,
        prompt: str,
        prior_context: Sequence[Message],
        options: InvokeOptions,
    ) -> AsyncIterator[RuntimeChunk]:
        self.calls.append((prompt, list(prior_context), options))
        items = self.scripts.popleft() if self.scripts else [TextChunk(text=f"echo: {prompt}")]
        for item in items:
            if isinstance(item, asyncio.Event):
                await item.wait()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item

    async def complete(self, prompt: str, *, model: str | None = None) -> str:
        self.complete_prompts.append((prompt, model))
        result = self.completions.popleft() if self.completions else ""
        if isinstance(result, Exception):
            raise result
        return result


class FakeTransportClient:
    """In-memory ``TransportClient`` recording everything the bridge does."""

    def __init__(self, identity: str = "@switchboard_bot") -> None:
        self.identity = identity
        self.sent: list[tuple[str, str]] = []
        self.edits: list[tuple[str, Any, str]] = []
        self.typing: list[tuple[str, bool]] = []
        self.callback = None
        self.started = False
        self.edit_error: Exception | None = None

    def on_incoming_text(self, callback) -> None:
        self.callback = callback

    async def get_self_identity(self) -> str:
        return self.identity

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def send_text(self, target: str, text: str) -> int:
        self.sent.append((target, text))
        return len(self.sent)

    async def edit_text(self, target: str, handle: Any, text: str) -> None:
        if self.edit_error is not None:
            raise self.edit_error
        self.edits.append((target, handle, text))

    async def set_typing(self, target: str, on: bool) -> None:
        self.typing.append((target, on))


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults: no config.toml,
    no .env, no file I/O. Tests are fully isolated from production config.
    """
    safe = make_settings()
    monkeypatch.setattr("switchboard.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def bus() -> SessionEventBus:
    return SessionEventBus()


@pytest.fixture
def store(tmp_path, bus) -> SessionStore:
    return SessionStore(tmp_path, bus)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
async def engine(store, bus, runtime) -> AsyncIterator[SessionEngine]:
    eng = SessionEngine(store, bus, runtime)
    store.set_stop_fn(eng.halt)
    yield eng
    await eng.shutdown()
