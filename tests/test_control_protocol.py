"""Tests for the session remote-control protocol."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeRuntime, drain, wait_idle

from switchboard.control import SessionControl, SubscriptionManager
from switchboard.control.protocol import DEFAULT_APPROVAL_MESSAGE
from switchboard.runtime import DeltaChunk, ErrorChunk, TextChunk
from switchboard.sessions import SessionEngine, SessionStore
from switchboard.types import Message, Session, SessionOptions


@pytest.fixture
async def subscriptions(store, engine, bus):
    manager = SubscriptionManager(store, engine, bus, poll_interval=3600)
    yield manager
    manager.close()


@pytest.fixture
def controller(store: SessionStore) -> Session:
    return store.create("ws", SessionOptions(labels=["telegram"]), programmatic=True)


@pytest.fixture
def target(store: SessionStore) -> Session:
    return store.create("ws", SessionOptions(name="Worker"), programmatic=True)


@pytest.fixture
def control(controller, store, engine, bus, subscriptions) -> SessionControl:
    return SessionControl(
        controller.id,
        store=store,
        engine=engine,
        bus=bus,
        subscriptions=subscriptions,
        default_workspace="default",
        send_timeout_ms=1000,
    )


class TestSelfGuard:
    @pytest.mark.parametrize(
        ("op", "kwargs"),
        [
            ("send_message", {"text": "hi"}),
            ("get_session_status", {}),
            ("get_session_messages", {}),
            ("stop_session", {}),
            ("delete_session", {}),
            ("rename_session", {"name": "x"}),
            ("set_session_labels", {"labels": ["x"]}),
            ("subscribe_session_events", {}),
            ("set_permission_mode", {"mode": "safe"}),
            ("approve_plan", {}),
        ],
    )
    async def test_targeted_ops_refuse_controller(
        self, control: SessionControl, controller: Session, op: str, kwargs: dict
    ) -> None:
        result = await getattr(control, op)(controller.id, **kwargs)

        assert not result.success
        assert "controller session from itself" in result.error
        assert "infinite loop" in result.error

    async def test_unsubscribe_by_own_id_refused(
        self, control: SessionControl, controller: Session
    ) -> None:
        result = await control.unsubscribe_session_events(target_id=controller.id)

        assert not result.success

    async def test_controller_session_untouched(
        self, control: SessionControl, controller: Session, runtime: FakeRuntime
    ) -> None:
        await control.send_message(controller.id, "loop", wait_for_response=True)
        await control.delete_session(controller.id, force=True)

        assert runtime.calls == []
        assert controller.message_count == 0


class TestListAndCreate:
    async def test_list_marks_controller(
        self, control: SessionControl, controller: Session, target: Session
    ) -> None:
        result = await control.list_sessions()

        assert result.success
        by_id = {s["id"]: s for s in result.data["sessions"]}
        assert by_id[controller.id]["isController"] is True
        assert by_id[target.id]["isController"] is False
        assert by_id[target.id]["name"] == "Worker"
        assert result.data["count"] == 2

    async def test_list_recent_messages_truncated(
        self, control: SessionControl, target: Session
    ) -> None:
        target.messages = [Message(role="user", content=f"m{i}" + "x" * 300) for i in range(5)]

        result = await control.list_sessions(include_messages=True)

        summary = next(s for s in result.data["sessions"] if s["id"] == target.id)
        recent = summary["recentMessages"]
        assert len(recent) == 3
        assert recent[0]["content"].startswith("m2")
        assert all(len(m["content"]) == 203 for m in recent)

    async def test_create_defaults(self, control: SessionControl, store: SessionStore) -> None:
        result = await control.create_session(labels=["worker"])

        assert result.success
        created = store.get(result.data["sessionId"])
        assert created is not None
        assert created.permission_mode == "allow-all"
        assert created.workspace_id == "default"
        assert created.labels == ["worker"]

    async def test_create_with_initial_message(
        self, control: SessionControl, engine: SessionEngine, runtime: FakeRuntime
    ) -> None:
        result = await control.create_session(initial_message="start work")
        await wait_idle(engine, result.data["sessionId"])

        assert runtime.prompts == ["start work"]
        assert result.data["message"] == "Session created and initial message sent"

    async def test_create_rejects_bad_mode(self, control: SessionControl) -> None:
        result = await control.create_session(permission_mode="yolo")

        assert not result.success


class TestSendMessage:
    async def test_fire_and_forget(
        self, control: SessionControl, target: Session, engine: SessionEngine
    ) -> None:
        result = await control.send_message(target.id, "hi")

        assert result.success
        assert result.data["message"] == "Message sent"
        await wait_idle(engine, target.id)
        assert target.messages[-1].content == "echo: hi"

    async def test_unknown_target(self, control: SessionControl) -> None:
        result = await control.send_message("ses_missing", "hi")

        assert not result.success
        assert result.error == "Session 'ses_missing' not found"

    async def test_wait_returns_full_response(
        self, control: SessionControl, target: Session, runtime: FakeRuntime, bus
    ) -> None:
        runtime.script(DeltaChunk(text="Hel"), DeltaChunk(text="lo"), TextChunk(text="Hello!"))

        result = await control.send_message(target.id, "hi", wait_for_response=True)

        assert result.success
        assert result.data["response"] == "Hello!"
        assert bus.listener_count(target.id) == 0

    async def test_wait_timeout_cleans_up_listener(
        self, control: SessionControl, target: Session, runtime: FakeRuntime, bus
    ) -> None:
        runtime.script(DeltaChunk(text="thinking"), asyncio.Event())

        result = await control.send_message(
            target.id, "hi", wait_for_response=True, timeout_ms=50
        )

        assert not result.success
        assert result.error == "Timeout waiting for response"
        assert result.data["partialResponse"] == "thinking"
        assert bus.listener_count(target.id) == 0

    async def test_wait_error_carries_partial_text(
        self, control: SessionControl, target: Session, runtime: FakeRuntime, bus
    ) -> None:
        runtime.script(DeltaChunk(text="so far"), ErrorChunk(message="overloaded"))

        result = await control.send_message(target.id, "hi", wait_for_response=True)

        assert not result.success
        assert result.error == "overloaded"
        assert result.data["partialResponse"] == "so far"
        assert bus.listener_count(target.id) == 0

    async def test_wait_on_busy_target_returns_own_reply(
        self,
        control: SessionControl,
        target: Session,
        engine: SessionEngine,
        runtime: FakeRuntime,
    ) -> None:
        gate = asyncio.Event()
        runtime.script(gate, TextChunk(text="first reply"))
        runtime.script(TextChunk(text="second reply"))
        await engine.send_message(target.id, "first")
        await drain()

        waiter = asyncio.create_task(
            control.send_message(target.id, "second", wait_for_response=True)
        )
        await drain()
        gate.set()
        result = await waiter

        assert result.success
        assert result.data["response"] == "second reply"

    async def test_wait_stopped_target_fails(
        self, control: SessionControl, target: Session, engine: SessionEngine, runtime
    ) -> None:
        runtime.script(asyncio.Event())
        waiter = asyncio.create_task(
            control.send_message(target.id, "hi", wait_for_response=True)
        )
        await drain()

        await engine.cancel_processing(target.id)
        result = await waiter

        assert not result.success
        assert "stopped" in result.error

    async def test_wait_fails_fast_when_queued_message_is_dropped(
        self, control: SessionControl, target: Session, engine: SessionEngine, runtime, bus
    ) -> None:
        runtime.script(asyncio.Event())
        await engine.send_message(target.id, "busy")
        await drain()
        waiter = asyncio.create_task(
            control.send_message(target.id, "later", wait_for_response=True, timeout_ms=5000)
        )
        await drain()

        await engine.cancel_processing(target.id)
        result = await asyncio.wait_for(waiter, 1)

        assert not result.success
        assert "dropped" in result.error
        assert bus.listener_count(target.id) == 0


class TestReadOps:
    async def test_status(
        self, control: SessionControl, target: Session, engine: SessionEngine
    ) -> None:
        result = await control.get_session_status(target.id)

        assert result.success
        assert result.data["id"] == target.id
        assert result.data["isProcessing"] is False
        assert result.data["queuedMessages"] == 0
        assert result.data["permissionMode"] == "allow-all"

    async def test_messages_window_from_end(self, control: SessionControl, target: Session):
        target.messages = []
        for i in range(5):
            target.messages.append(Message(role="user", content=f"q{i}"))
            target.messages.append(Message(role="tool", content="{}", tool_name="Bash"))
            target.messages.append(Message(role="assistant", content=f"a{i}"))

        result = await control.get_session_messages(target.id, limit=3, offset=2)

        assert [m["content"] for m in result.data["messages"]] == ["a2", "q3", "a3"]
        assert result.data["totalMessages"] == 15
        assert result.data["filteredCount"] == 10

    async def test_messages_include_tools(self, control: SessionControl, target: Session):
        target.messages = [
            Message(role="user", content="q"),
            Message(role="tool", content="{}", tool_name="Bash"),
            Message(role="assistant", content="a"),
        ]

        result = await control.get_session_messages(target.id, include_tools=True)

        assert [m["role"] for m in result.data["messages"]] == ["user", "tool", "assistant"]
        assert result.data["messages"][1]["toolName"] == "Bash"

    async def test_messages_offset_past_start(self, control: SessionControl, target: Session):
        target.messages = [Message(role="user", content="q")]

        result = await control.get_session_messages(target.id, offset=5)

        assert result.data["messages"] == []


class TestLifecycleOps:
    async def test_stop_idle(self, control: SessionControl, target: Session) -> None:
        result = await control.stop_session(target.id)

        assert result.success
        assert "already idle" in result.data["message"]

    async def test_stop_processing(
        self, control: SessionControl, target: Session, runtime: FakeRuntime
    ) -> None:
        runtime.script(asyncio.Event())
        await control.send_message(target.id, "work")
        await drain()

        result = await control.stop_session(target.id)

        assert result.success
        assert not target.is_processing

    async def test_delete_busy_requires_force(
        self, control: SessionControl, target: Session, runtime: FakeRuntime, store
    ) -> None:
        runtime.script(asyncio.Event())
        await control.send_message(target.id, "work")
        await drain()

        refused = await control.delete_session(target.id)
        assert not refused.success
        assert "force" in refused.error

        forced = await control.delete_session(target.id, force=True)
        assert forced.success
        assert store.get(target.id) is None

    async def test_rename_and_labels(self, control: SessionControl, target: Session) -> None:
        await control.rename_session(target.id, "Renamed")
        result = await control.set_session_labels(target.id, ["a", "b"])

        assert target.name == "Renamed"
        assert result.data["labels"] == ["a", "b"]

    async def test_set_permission_mode(self, control: SessionControl, target: Session) -> None:
        bad = await control.set_permission_mode(target.id, "root")
        good = await control.set_permission_mode(target.id, "safe")

        assert not bad.success
        assert good.data["previousMode"] == "allow-all"
        assert good.data["newMode"] == "safe"
        assert target.permission_mode == "safe"


class TestApprovePlan:
    async def test_requires_safe_mode(self, control: SessionControl, target: Session) -> None:
        result = await control.approve_plan(target.id)

        assert not result.success
        assert "safe" in result.error

    async def test_approves_and_starts_execution(
        self,
        control: SessionControl,
        target: Session,
        engine: SessionEngine,
        runtime: FakeRuntime,
    ) -> None:
        target.permission_mode = "safe"

        result = await control.approve_plan(target.id)
        await wait_idle(engine, target.id)

        assert result.success
        assert target.permission_mode == "allow-all"
        assert runtime.prompts == [DEFAULT_APPROVAL_MESSAGE]
        assert runtime.calls[0][2].permission_mode == "allow-all"

    async def test_refused_while_processing(
        self, control: SessionControl, target: Session, runtime: FakeRuntime
    ) -> None:
        runtime.script(asyncio.Event())
        await control.send_message(target.id, "explore")
        await drain()
        target.permission_mode = "safe"

        result = await control.approve_plan(target.id)

        assert not result.success
        assert target.permission_mode == "safe"


class TestSubscriptionOps:
    async def test_subscribe_list_unsubscribe(
        self, control: SessionControl, target: Session
    ) -> None:
        created = await control.subscribe_session_events(target.id, ["idle", "error"])
        listed = await control.list_subscriptions()
        removed = await control.unsubscribe_session_events(
            subscription_id=created.data["subscriptionId"]
        )

        assert created.data["events"] == ["error", "idle"]
        assert listed.data["count"] == 1
        assert listed.data["subscriptions"][0]["targetSessionId"] == target.id
        assert removed.data["removed"] == [created.data["subscriptionId"]]
        assert removed.data["remainingSubscriptions"] == 0

    async def test_subscribe_rejects_unknown_event(
        self, control: SessionControl, target: Session
    ) -> None:
        result = await control.subscribe_session_events(target.id, ["finished"])

        assert not result.success
        assert "finished" in result.error

    async def test_unsubscribe_needs_an_id(self, control: SessionControl) -> None:
        result = await control.unsubscribe_session_events()

        assert not result.success
