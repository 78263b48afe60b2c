"""Tests for the transport bridges (shared base, Telegram, Matrix)."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeRuntime, FakeTransportClient, drain, make_settings, wait_idle

from switchboard.bridges.base import BridgeContext
from switchboard.bridges.mapping import ChannelMapping, ChannelMappingStore
from switchboard.bridges.matrix import MatrixBridge, MatrixBridgePlugin, MatrixClient
from switchboard.bridges.prompts import CONTEXT_FILE, init_memory_file
from switchboard.bridges.telegram import TelegramBridge, TelegramBridgePlugin, TelegramClient
from switchboard.config import MatrixConfig, SecretsConfig, TelegramConfig
from switchboard.credentials import SettingsCredentialStore
from switchboard.errors import TransportError
from switchboard.events import (
    Complete,
    ErrorEvent,
    SessionDeleted,
    TextComplete,
    TextDelta,
    TypedError,
)
from switchboard.runtime import TextChunk

CHAT = "42"
SID = "ses_stream"


def _non_json_response(status: int) -> MagicMock:
    """A response whose body is an HTML error page from a proxy."""
    resp = MagicMock(status=status, reason="Bad Gateway")
    resp.json = AsyncMock(
        side_effect=json.JSONDecodeError("Expecting value", "<html>bad gateway</html>", 0)
    )
    return resp


def _http_returning(resp: MagicMock) -> MagicMock:
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    http = MagicMock()
    http.post.return_value = ctx
    http.request.return_value = ctx
    return http


def _context(store, engine, bus, **overrides) -> BridgeContext:
    settings = make_settings(workspace_root=store.root, **overrides)
    return BridgeContext(
        settings=settings,
        store=store,
        engine=engine,
        bus=bus,
        credentials=SettingsCredentialStore(settings),
    )


@pytest.fixture
def client() -> FakeTransportClient:
    return FakeTransportClient()


@pytest.fixture
def telegram_cfg() -> TelegramConfig:
    return TelegramConfig(enabled=True, stream_edit_interval=0.01)


@pytest.fixture
async def bridge(store, engine, bus, client, telegram_cfg):
    b = TelegramBridge(_context(store, engine, bus, telegram=telegram_cfg), client=client)
    await b.start()
    yield b
    await b.stop()


async def _settle(seconds: float = 0.05) -> None:
    await asyncio.sleep(seconds)
    await drain()


# ---------------------------------------------------------------------------
# Lifecycle and status
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_start_reports_identity(self, bridge, client) -> None:
        status = bridge.status().to_dict()

        assert client.started
        assert client.callback == bridge.on_incoming_message
        assert status == {
            "running": True,
            "identity": "@switchboard_bot",
            "hasCredentials": True,
            "error": None,
        }

    async def test_missing_token_never_starts(self, store, engine, bus) -> None:
        b = TelegramBridge(_context(store, engine, bus))

        await b.start()

        status = b.status()
        assert not status.running
        assert not status.has_credentials
        assert status.error == "Telegram bot token not configured"

    async def test_token_from_credentials_builds_client(self, store, engine, bus) -> None:
        ctx = _context(store, engine, bus, secrets=SecretsConfig(telegram_bot_token="123:abc"))

        b = TelegramBridge(ctx)

        assert isinstance(b._client, TelegramClient)
        assert b.status().has_credentials

    async def test_failed_start_records_error(self, store, engine, bus, client) -> None:
        client.get_self_identity = AsyncMock(side_effect=TransportError("Unauthorized"))
        b = TelegramBridge(_context(store, engine, bus), client=client)

        with pytest.raises(TransportError):
            await b.start()

        assert b.status().error == "Unauthorized"
        assert not b.status().running

    async def test_stop_detaches_listeners(self, bridge, client, engine, bus) -> None:
        await bridge.on_incoming_message(CHAT, "hi")
        session_id = bridge.mapping.get(CHAT).session_id
        await wait_idle(engine, session_id)
        assert bus.listener_count(session_id) == 1

        await bridge.stop()

        assert bus.listener_count(session_id) == 0
        assert not client.started


class TestPlugins:
    def test_telegram_disabled(self, store, bus) -> None:
        ctx = _context(store, None, bus)

        assert TelegramBridgePlugin().switchboard_create_bridge(context=ctx) is None

    def test_telegram_enabled(self, store, bus) -> None:
        ctx = _context(store, None, bus, telegram=TelegramConfig(enabled=True))

        bridge = TelegramBridgePlugin().switchboard_create_bridge(context=ctx)

        assert isinstance(bridge, TelegramBridge)

    def test_matrix_enabled(self, store, bus) -> None:
        ctx = _context(
            store, None, bus, matrix=MatrixConfig(enabled=True, homeserver="https://hs.example")
        )

        bridge = MatrixBridgePlugin().switchboard_create_bridge(context=ctx)

        assert isinstance(bridge, MatrixBridge)

    def test_no_context(self) -> None:
        assert MatrixBridgePlugin().switchboard_create_bridge(context=None) is None


# ---------------------------------------------------------------------------
# Inbound routing
# ---------------------------------------------------------------------------


class TestInbound:
    async def test_first_message_creates_controller_session(
        self, bridge, store, engine, runtime: FakeRuntime
    ) -> None:
        runtime.script(TextChunk(text="On it"))

        await bridge.on_incoming_message(CHAT, "hello", "Ada")

        mapping = bridge.mapping.get(CHAT)
        session = store.get(mapping.session_id)
        await wait_idle(engine, session.id)
        assert session.labels == ["telegram"]
        assert session.permission_mode == "allow-all"
        assert session.working_directory == str(store.root / "telegram")
        assert (store.root / "telegram" / CONTEXT_FILE).exists()
        assert store.memory_path(session.id).read_text().startswith("# Orchestrator Memory")
        assert (store.root / "telegram-sessions.json").exists()

    async def test_preamble_only_on_first_message(
        self, bridge, engine, runtime: FakeRuntime, client
    ) -> None:
        runtime.script(TextChunk(text="one"))
        runtime.script(TextChunk(text="two"))

        await bridge.on_incoming_message(CHAT, "hello", "Ada")
        session_id = bridge.mapping.get(CHAT).session_id
        await wait_idle(engine, session_id)
        await bridge.on_incoming_message(CHAT, "again", "Ada")
        await wait_idle(engine, session_id)

        first, second = runtime.prompts
        assert first.startswith("[ORCHESTRATOR INIT: Telegram conversation 42 (Ada)]")
        assert "@switchboard_bot" in first
        assert first.endswith("[END INIT]\n\nhello")
        assert second == "again"
        assert client.sent == [(CHAT, "one"), (CHAT, "two")]
        assert (CHAT, True) in client.typing

    async def test_conversations_get_separate_sessions(self, bridge, engine) -> None:
        await bridge.on_incoming_message("1", "a")
        await bridge.on_incoming_message("2", "b")

        first = bridge.mapping.get("1").session_id
        second = bridge.mapping.get("2").session_id
        await wait_idle(engine, first)
        await wait_idle(engine, second)
        assert first != second

    async def test_stale_mapping_gets_new_session(
        self, store, engine, bus, client, runtime: FakeRuntime
    ) -> None:
        ChannelMappingStore(store.root / "telegram-sessions.json").set(
            ChannelMapping(external_id=CHAT, session_id="ses_gone", workspace_id="default")
        )
        b = TelegramBridge(_context(store, engine, bus), client=client)
        await b.start()

        await b.on_incoming_message(CHAT, "are you there?")

        session_id = b.mapping.get(CHAT).session_id
        await wait_idle(engine, session_id)
        assert session_id != "ses_gone"
        assert store.get(session_id) is not None
        assert runtime.prompts[0].startswith("[ORCHESTRATOR INIT")
        reloaded = ChannelMappingStore(store.root / "telegram-sessions.json")
        reloaded.load()
        assert reloaded.get(CHAT).session_id == session_id
        await b.stop()

    async def test_deleted_session_replaced_on_next_message(
        self, bridge, store, engine, runtime: FakeRuntime
    ) -> None:
        await bridge.on_incoming_message(CHAT, "first")
        old_id = bridge.mapping.get(CHAT).session_id
        await wait_idle(engine, old_id)

        await store.delete(old_id)
        await drain()
        assert bridge.mapping.get(CHAT).session_id == old_id

        await bridge.on_incoming_message(CHAT, "second")
        new_id = bridge.mapping.get(CHAT).session_id
        await wait_idle(engine, new_id)
        assert new_id != old_id
        assert runtime.prompts[1].startswith("[ORCHESTRATOR INIT")

    async def test_engine_failure_replies_with_error(self, bridge, engine, client) -> None:
        engine.send_message = AsyncMock(side_effect=RuntimeError("engine down"))

        await bridge.on_incoming_message(CHAT, "hi")

        assert client.sent == [(CHAT, "Error: engine down")]


def test_memory_file_never_overwritten(tmp_path) -> None:
    path = tmp_path / "ses_1" / "memory.md"
    path.parent.mkdir()
    path.write_text("my notes")

    assert init_memory_file(path, "telegram", "@bot", CHAT) is False
    assert path.read_text() == "my notes"


# ---------------------------------------------------------------------------
# Outbound rendering
# ---------------------------------------------------------------------------


class TestStreaming:
    async def test_post_then_edit(self, bridge, client) -> None:
        await bridge.handle_event(CHAT, TextDelta(session_id=SID, delta="Hel"))
        await _settle()
        await bridge.handle_event(CHAT, TextDelta(session_id=SID, delta="lo"))
        await _settle()
        await bridge.handle_event(CHAT, TextComplete(session_id=SID, text="Hello there"))

        assert client.sent == [(CHAT, "Hel")]
        assert client.edits == [(CHAT, 1, "Hello"), (CHAT, 1, "Hello there")]

    async def test_deltas_coalesce_within_interval(self, bridge, client) -> None:
        for delta in ("a", "b", "c"):
            await bridge.handle_event(CHAT, TextDelta(session_id=SID, delta=delta))
        await _settle()

        assert client.sent == [(CHAT, "abc")]

    async def test_edit_cap_holds_until_final(self, store, engine, bus, client) -> None:
        cfg = TelegramConfig(enabled=True, stream_edit_interval=0.01, max_edits_per_message=2)
        b = TelegramBridge(_context(store, engine, bus, telegram=cfg), client=client)

        for delta in ("a", "b", "c", "d"):
            await b.handle_event(CHAT, TextDelta(session_id=SID, delta=delta))
            await _settle()
        await b.handle_event(CHAT, TextComplete(session_id=SID, text="abcd!"))

        assert client.sent == [(CHAT, "a")]
        assert client.edits == [(CHAT, 1, "ab"), (CHAT, 1, "abcd!")]

    async def test_intermediate_text_separates_blocks(self, bridge, client) -> None:
        await bridge.handle_event(CHAT, TextDelta(session_id=SID, delta="Checking"))
        await bridge.handle_event(
            CHAT, TextComplete(session_id=SID, text="Checking", is_intermediate=True)
        )
        await bridge.handle_event(CHAT, TextDelta(session_id=SID, delta="Done"))
        await _settle()

        assert client.sent == [(CHAT, "Checking\n\nDone")]

    async def test_long_final_reply_is_split(self, store, engine, bus, client) -> None:
        cfg = TelegramConfig(enabled=True, message_limit=50)
        b = TelegramBridge(_context(store, engine, bus, telegram=cfg), client=client)
        text = " ".join(f"word{i}" for i in range(25))

        await b.handle_event(CHAT, TextComplete(session_id=SID, text=text))

        assert len(client.sent) > 1
        assert all(len(chunk) <= 50 for _, chunk in client.sent)
        assert " ".join(chunk for _, chunk in client.sent) == text

    async def test_split_counts_utf16_units(self, store, engine, bus, client) -> None:
        cfg = TelegramConfig(enabled=True, message_limit=100)
        b = TelegramBridge(_context(store, engine, bus, telegram=cfg), client=client)

        await b.handle_event(CHAT, TextComplete(session_id=SID, text="😀" * 120))

        assert [len(chunk) for _, chunk in client.sent] == [50, 50, 20]

    async def test_final_edit_failure_sends_new_message(self, bridge, client) -> None:
        await bridge.handle_event(CHAT, TextDelta(session_id=SID, delta="partial"))
        await _settle()
        client.edit_error = TransportError("Bad Request: message to edit not found")

        await bridge.handle_event(CHAT, TextComplete(session_id=SID, text="full answer"))

        assert client.sent == [(CHAT, "partial"), (CHAT, "full answer")]

    async def test_not_modified_is_success(self, bridge, client) -> None:
        await bridge.handle_event(CHAT, TextDelta(session_id=SID, delta="same"))
        await _settle()
        client.edit_error = TransportError("Bad Request: message is not modified")

        await bridge.handle_event(CHAT, TextComplete(session_id=SID, text="same"))

        assert client.sent == [(CHAT, "same")]

    async def test_empty_final_sends_nothing(self, bridge, client) -> None:
        await bridge.handle_event(CHAT, TextComplete(session_id=SID, text="  "))

        assert client.sent == []


class TestEventRendering:
    async def test_errors_are_reported(self, bridge, client) -> None:
        await bridge.handle_event(CHAT, ErrorEvent(session_id=SID, error="boom"))
        await bridge.handle_event(CHAT, TypedError(session_id=SID, message="rate limited"))

        assert client.sent == [(CHAT, "Error: boom"), (CHAT, "Error: rate limited")]

    async def test_complete_clears_typing_and_stream(self, bridge, client) -> None:
        await bridge.handle_event(CHAT, TextDelta(session_id=SID, delta="x"))
        await bridge.handle_event(CHAT, Complete(session_id=SID))
        await _settle()

        assert client.typing[-1] == (CHAT, False)
        assert client.sent == []

    async def test_session_deleted_drops_stream(self, bridge, client) -> None:
        await bridge.handle_event(CHAT, TextDelta(session_id=SID, delta="x"))
        await bridge.handle_event(CHAT, SessionDeleted(session_id=SID))
        await _settle()

        assert client.sent == []


# ---------------------------------------------------------------------------
# Transport clients
# ---------------------------------------------------------------------------


class TestTelegramClient:
    async def test_dispatch_text_message(self) -> None:
        received = []

        async def on_text(chat_id, text, sender):
            received.append((chat_id, text, sender))

        tg = TelegramClient("123:abc")
        tg.on_incoming_text(on_text)

        await tg._dispatch(
            {
                "update_id": 1,
                "message": {"chat": {"id": 42}, "text": "hi", "from": {"first_name": "Ada"}},
            }
        )
        await tg._dispatch({"update_id": 2, "message": {"chat": {"id": 42}, "sticker": {}}})

        assert received == [("42", "hi", "Ada")]

    async def test_html_rejected_falls_back_to_plain(self) -> None:
        tg = TelegramClient("123:abc")
        tg._call = AsyncMock(
            side_effect=[
                TransportError("Bad Request: can't parse entities: unclosed tag", status=400),
                {"message_id": 7},
            ]
        )

        handle = await tg.send_text(CHAT, "**hi**")

        assert handle == 7
        html_call, plain_call = tg._call.await_args_list
        assert html_call.args[1]["parse_mode"] == "HTML"
        assert html_call.args[1]["text"] == "<b>hi</b>"
        assert plain_call.args[1] == {"chat_id": CHAT, "text": "**hi**"}

    async def test_other_errors_propagate(self) -> None:
        tg = TelegramClient("123:abc")
        tg._call = AsyncMock(side_effect=TransportError("Forbidden: bot was blocked", status=403))

        with pytest.raises(TransportError):
            await tg.send_text(CHAT, "hi")

    async def test_typing_off_is_a_no_op(self) -> None:
        tg = TelegramClient("123:abc")
        tg._call = AsyncMock()

        await tg.set_typing(CHAT, False)
        await tg.set_typing(CHAT, True)

        tg._call.assert_awaited_once_with("sendChatAction", {"chat_id": CHAT, "action": "typing"})

    async def test_non_json_response_raises_transport_error(self) -> None:
        tg = TelegramClient("123:abc")
        http = _http_returning(_non_json_response(502))
        tg._http = lambda: http

        with pytest.raises(TransportError) as exc_info:
            await tg._call("getUpdates")

        assert exc_info.value.status == 502
        assert "not JSON" in str(exc_info.value)

    async def test_poll_loop_survives_failures(self, monkeypatch) -> None:
        monkeypatch.setattr("switchboard.bridges.telegram._MAX_BACKOFF", 0)
        received = []

        async def on_text(chat_id, text, sender):
            received.append(text)

        tg = TelegramClient("123:abc")
        tg.on_incoming_text(on_text)
        update = {"update_id": 9, "message": {"chat": {"id": 42}, "text": "still here"}}
        tg._call = AsyncMock(
            side_effect=[
                TransportError("getUpdates: HTTP 502, response is not JSON", status=502),
                KeyError("result"),
                [update],
                asyncio.CancelledError(),
            ]
        )

        with pytest.raises(asyncio.CancelledError):
            await tg._poll_loop()

        assert received == ["still here"]
        assert tg._call.await_args_list[-1].args[1]["offset"] == 10


class TestMatrix:
    def test_status_includes_homeserver(self, store, bus) -> None:
        ctx = _context(
            store,
            None,
            bus,
            matrix=MatrixConfig(enabled=True, homeserver="https://hs.example"),
            secrets=SecretsConfig(matrix_access_token="tok"),
        )

        status = MatrixBridge(ctx).status().to_dict()

        assert status["homeserver"] == "https://hs.example"
        assert status["hasCredentials"] is True

    async def test_missing_homeserver(self, store, bus) -> None:
        ctx = _context(store, None, bus, matrix=MatrixConfig(enabled=True))
        bridge = MatrixBridge(ctx)

        await bridge.start()

        assert bridge.status().error == "Matrix homeserver not configured"

    async def test_missing_token(self, store, bus) -> None:
        ctx = _context(store, None, bus, matrix=MatrixConfig(homeserver="https://hs.example"))
        bridge = MatrixBridge(ctx)

        await bridge.start()

        assert bridge.status().error == "Matrix access token not configured"

    def test_streaming_off_by_default(self, store, bus) -> None:
        ctx = _context(store, None, bus, matrix=MatrixConfig(homeserver="https://hs.example"))

        assert MatrixBridge(ctx).streaming is False

    async def test_sync_filters_events_and_joins_invites(self) -> None:
        received = []

        async def on_text(room_id, text, sender):
            received.append((room_id, text, sender))

        mx = MatrixClient("https://hs.example", "tok", max_message_age=30, clock=lambda: 1000.0)
        mx.user_id = "@bot:hs.example"
        mx.on_incoming_text(on_text)
        mx.join = AsyncMock()
        now_ms = 1_000_000

        def message(body, *, sender="@ada:hs.example", age_ms=0, **content):
            return {
                "type": "m.room.message",
                "sender": sender,
                "origin_server_ts": now_ms - age_ms,
                "content": {"msgtype": "m.text", "body": body, **content},
            }

        await mx.handle_sync(
            {
                "rooms": {
                    "invite": {"!new:hs.example": {}},
                    "join": {
                        "!room:hs.example": {
                            "timeline": {
                                "events": [
                                    message("mine", sender="@bot:hs.example"),
                                    message("stale", age_ms=60_000),
                                    message("* fixed", **{"m.new_content": {"body": "fixed"}}),
                                    message("pic", msgtype="m.image"),
                                    {"type": "m.room.member", "sender": "@ada:hs.example"},
                                    message("hello bot"),
                                ]
                            }
                        }
                    },
                }
            }
        )

        mx.join.assert_awaited_once_with("!new:hs.example")
        assert received == [("!room:hs.example", "hello bot", "@ada:hs.example")]

    async def test_edit_uses_replace_relation(self) -> None:
        mx = MatrixClient("https://hs.example", "tok")
        mx._send_event = AsyncMock(return_value={"event_id": "$e2"})

        await mx.edit_text("!room:hs.example", "$e1", "**new**")

        room, content = mx._send_event.await_args.args
        assert room == "!room:hs.example"
        assert content["body"] == "* **new**"
        assert content["m.relates_to"] == {"rel_type": "m.replace", "event_id": "$e1"}
        assert content["m.new_content"]["formatted_body"] == "<strong>new</strong>"

    async def test_non_json_response_raises_transport_error(self) -> None:
        mx = MatrixClient("https://hs.example", "tok")
        http = _http_returning(_non_json_response(502))
        mx._http = lambda: http

        with pytest.raises(TransportError) as exc_info:
            await mx._request("GET", "/sync")

        assert exc_info.value.status == 502

    async def test_sync_loop_survives_failures(self, monkeypatch) -> None:
        monkeypatch.setattr("switchboard.bridges.matrix._MAX_BACKOFF", 0)
        mx = MatrixClient("https://hs.example", "tok")
        mx.handle_sync = AsyncMock()
        batch = {"next_batch": "s1", "rooms": {}}
        mx._request = AsyncMock(
            side_effect=[
                TransportError("GET /sync: HTTP 502, response is not JSON", status=502),
                ValueError("unexpected payload"),
                batch,
                asyncio.CancelledError(),
            ]
        )

        with pytest.raises(asyncio.CancelledError):
            await mx._sync_loop()

        mx.handle_sync.assert_awaited_once_with(batch)
        assert mx._request.await_args_list[-1].kwargs["params"]["since"] == "s1"
