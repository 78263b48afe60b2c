"""Built-in Telegram bridge plugin.

Talks to the Bot API directly over aiohttp: long-polling ``getUpdates`` for
inbound text, ``sendMessage``/``editMessageText`` (HTML parse mode) for
replies. Each Telegram chat id maps to one session.

Activation: ``[telegram] enabled = true`` in config.toml plus a bot token
(``SECRETS__TELEGRAM_BOT_TOKEN``). Without a token the bridge is still
created so its status can report the missing credentials.
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
import pluggy

from switchboard.bridges.base import BridgeContext, IncomingCallback, TransportBridge
from switchboard.bridges.formatting import markdown_to_telegram_html, utf16_len
from switchboard.errors import TransportError
from switchboard.logger import scoped
from switchboard.utils import create_background_task

hookimpl = pluggy.HookimplMarker("switchboard")

log = scoped("telegram")

_MAX_BACKOFF = 30.0
_TRANSIENT_ERRORS = (TransportError, aiohttp.ClientError, TimeoutError)


class TelegramClient:
    """Minimal Bot API client implementing ``TransportClient``."""

    def __init__(
        self,
        token: str,
        *,
        api_base: str = "https://api.telegram.org",
        poll_timeout: int = 30,
    ) -> None:
        self._base_url = f"{api_base.rstrip('/')}/bot{token}"
        self._poll_timeout = poll_timeout
        self._session: aiohttp.ClientSession | None = None
        self._callback: IncomingCallback | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._offset: int | None = None

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _call(
        self, method: str, payload: dict[str, Any] | None = None, *, timeout: float = 30
    ) -> Any:
        async with self._http().post(
            f"{self._base_url}/{method}",
            json=payload or {},
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError as exc:
                raise TransportError(
                    f"{method}: HTTP {resp.status}, response is not JSON", status=resp.status
                ) from exc
        if not isinstance(data, dict) or not data.get("ok"):
            data = data if isinstance(data, dict) else {}
            raise TransportError(
                data.get("description", f"{method} failed"),
                status=data.get("error_code", resp.status),
            )
        return data.get("result")

    # ------------------------------------------------------------------
    # TransportClient
    # ------------------------------------------------------------------

    def on_incoming_text(self, callback: IncomingCallback) -> None:
        self._callback = callback

    async def get_self_identity(self) -> str:
        me = await self._call("getMe")
        username = me.get("username")
        return f"@{username}" if username else str(me.get("first_name", "telegram-bot"))

    async def start(self) -> None:
        self._poll_task = create_background_task(self._poll_loop(), name="telegram-poll")

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def send_text(self, target: str, text: str) -> int:
        result = await self._with_html_fallback("sendMessage", {"chat_id": target}, text)
        return result["message_id"]

    async def edit_text(self, target: str, handle: Any, text: str) -> None:
        await self._with_html_fallback(
            "editMessageText", {"chat_id": target, "message_id": handle}, text
        )

    async def set_typing(self, target: str, on: bool) -> None:
        # Telegram clears the chat action by itself after ~5s or on the next message
        if on:
            await self._call("sendChatAction", {"chat_id": target, "action": "typing"})

    async def _with_html_fallback(self, method: str, payload: dict[str, Any], text: str) -> Any:
        """Send as HTML; resend as plain text if Telegram rejects the markup."""
        try:
            return await self._call(
                method,
                {**payload, "text": markdown_to_telegram_html(text), "parse_mode": "HTML"},
            )
        except TransportError as exc:
            if not exc.is_parse_error:
                raise
            log.debug("HTML rejected, retrying as plain text", method=method, err=str(exc))
        return await self._call(method, {**payload, "text": text})

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        failures = 0
        while True:
            try:
                payload: dict[str, Any] = {
                    "timeout": self._poll_timeout,
                    "allowed_updates": ["message"],
                }
                if self._offset is not None:
                    payload["offset"] = self._offset
                updates = await self._call(
                    "getUpdates",
                    payload,
                    timeout=self._poll_timeout + 10,
                )
                failures = 0
            except Exception as exc:
                failures += 1
                delay = min(2.0 * failures, _MAX_BACKOFF)
                if isinstance(exc, _TRANSIENT_ERRORS):
                    log.warning("getUpdates failed", err=str(exc), retry_in=delay)
                else:
                    log.exception("Unexpected getUpdates failure", retry_in=delay)
                await asyncio.sleep(delay)
                continue

            for update in updates or []:
                self._offset = update["update_id"] + 1
                await self._dispatch(update)

    async def _dispatch(self, update: dict[str, Any]) -> None:
        message = update.get("message")
        if not message or not message.get("text") or self._callback is None:
            return
        chat_id = str(message["chat"]["id"])
        sender = message.get("from") or {}
        sender_name = sender.get("first_name") or sender.get("username")
        await self._callback(chat_id, message["text"], sender_name)


class TelegramBridge(TransportBridge):
    name = "telegram"

    def __init__(self, context: BridgeContext, client: Any | None = None) -> None:
        cfg = context.settings.telegram
        token = context.credentials.get("telegram_bot_token")
        if client is None and token:
            client = TelegramClient(
                token,
                api_base=cfg.api_base,
                poll_timeout=cfg.poll_timeout,
            )
        super().__init__(
            context,
            client,
            message_limit=cfg.message_limit,
            streaming=True,
            edit_interval=cfg.stream_edit_interval,
            max_edits=cfg.max_edits_per_message,
            missing_credentials="Telegram bot token not configured",
            length_fn=utf16_len,
        )


class TelegramBridgePlugin:
    """Built-in plugin that activates when ``[telegram] enabled = true``."""

    @hookimpl
    def switchboard_create_bridge(self, context: Any) -> TelegramBridge | None:
        if context is None or not context.settings.telegram.enabled:
            log.debug("Telegram bridge skipped: not enabled")
            return None
        return TelegramBridge(context)
