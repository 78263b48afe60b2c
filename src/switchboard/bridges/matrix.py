"""Built-in Matrix bridge plugin.

Uses the client-server API (v3) over aiohttp: a ``/sync`` long-poll loop
delivers room messages and invites, replies go out as ``m.room.message``
events carrying both a plain ``body`` and an ``org.matrix.custom.html``
``formatted_body``. Each room id maps to one session.

Invites are accepted automatically. The bridge ignores its own messages,
non-text messages and anything older than ``matrix.max_message_age`` (so a
restart does not replay history).

Activation: ``[matrix] enabled = true`` plus ``matrix.homeserver`` and an
access token (``SECRETS__MATRIX_ACCESS_TOKEN``).
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import aiohttp
import pluggy

from switchboard.bridges.base import (
    BridgeContext,
    BridgeStatus,
    IncomingCallback,
    TransportBridge,
)
from switchboard.bridges.formatting import markdown_to_matrix_html
from switchboard.errors import TransportError
from switchboard.logger import scoped
from switchboard.utils import create_background_task, generate_id

hookimpl = pluggy.HookimplMarker("switchboard")

log = scoped("matrix")

_API = "/_matrix/client/v3"
_HTML_FORMAT = "org.matrix.custom.html"
_MAX_BACKOFF = 30.0
_TRANSIENT_ERRORS = (TransportError, aiohttp.ClientError, TimeoutError)
# Only the newest few events per room matter; older ones are filtered by age anyway
_SYNC_FILTER = json.dumps({"room": {"timeline": {"limit": 10}}})


def _room(room_id: str) -> str:
    return quote(room_id, safe="")


class MatrixClient:
    """Minimal Matrix client implementing ``TransportClient``."""

    def __init__(
        self,
        homeserver: str,
        access_token: str,
        *,
        max_message_age: float = 30.0,
        typing_timeout_ms: int = 30000,
        sync_timeout_ms: int = 30000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._base_url = homeserver.rstrip("/") + _API
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._max_age_ms = max_message_age * 1000
        self._typing_timeout_ms = typing_timeout_ms
        self._sync_timeout_ms = sync_timeout_ms
        self._clock = clock
        self._session: aiohttp.ClientSession | None = None
        self._callback: IncomingCallback | None = None
        self._sync_task: asyncio.Task[None] | None = None
        self._since: str | None = None
        self.user_id: str | None = None

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers)
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        timeout: float = 30,
    ) -> dict[str, Any]:
        async with self._http().request(
            method,
            f"{self._base_url}{path}",
            json=body,
            params=params,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError as exc:
                raise TransportError(
                    f"{method} {path}: HTTP {resp.status}, response is not JSON",
                    status=resp.status,
                ) from exc
            if resp.status >= 400 or not isinstance(data, (dict, type(None))):
                data = data if isinstance(data, dict) else {}
                raise TransportError(
                    f"{data.get('errcode', 'M_UNKNOWN')}: {data.get('error', resp.reason)}",
                    status=resp.status,
                )
            return data or {}

    # ------------------------------------------------------------------
    # TransportClient
    # ------------------------------------------------------------------

    def on_incoming_text(self, callback: IncomingCallback) -> None:
        self._callback = callback

    async def get_self_identity(self) -> str:
        data = await self._request("GET", "/account/whoami")
        self.user_id = data["user_id"]
        return self.user_id

    async def start(self) -> None:
        self._sync_task = create_background_task(self._sync_loop(), name="matrix-sync")

    async def stop(self) -> None:
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def send_text(self, target: str, text: str) -> str:
        content = {
            "msgtype": "m.text",
            "body": text,
            "format": _HTML_FORMAT,
            "formatted_body": markdown_to_matrix_html(text),
        }
        data = await self._send_event(target, content)
        return data["event_id"]

    async def edit_text(self, target: str, handle: Any, text: str) -> None:
        new_content = {
            "msgtype": "m.text",
            "body": text,
            "format": _HTML_FORMAT,
            "formatted_body": markdown_to_matrix_html(text),
        }
        content = {
            "msgtype": "m.text",
            "body": f"* {text}",
            "m.new_content": new_content,
            "m.relates_to": {"rel_type": "m.replace", "event_id": handle},
        }
        await self._send_event(target, content)

    async def set_typing(self, target: str, on: bool) -> None:
        if self.user_id is None:
            return
        body: dict[str, Any] = {"typing": on}
        if on:
            body["timeout"] = self._typing_timeout_ms
        await self._request(
            "PUT", f"/rooms/{_room(target)}/typing/{quote(self.user_id, safe='')}", body=body
        )

    async def join(self, room_id: str) -> None:
        await self._request("POST", f"/join/{_room(room_id)}", body={})

    async def _send_event(self, room_id: str, content: dict[str, Any]) -> dict[str, Any]:
        txn = generate_id("txn")
        return await self._request(
            "PUT", f"/rooms/{_room(room_id)}/send/m.room.message/{txn}", body=content
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _sync_loop(self) -> None:
        failures = 0
        while True:
            params = {"timeout": str(self._sync_timeout_ms), "filter": _SYNC_FILTER}
            if self._since:
                params["since"] = self._since
            try:
                data = await self._request(
                    "GET", "/sync", params=params, timeout=self._sync_timeout_ms / 1000 + 10
                )
                failures = 0
            except Exception as exc:
                failures += 1
                delay = min(2.0 * failures, _MAX_BACKOFF)
                if isinstance(exc, _TRANSIENT_ERRORS):
                    log.warning("Sync failed", err=str(exc), retry_in=delay)
                else:
                    log.exception("Unexpected sync failure", retry_in=delay)
                await asyncio.sleep(delay)
                continue

            self._since = data.get("next_batch", self._since)
            await self.handle_sync(data)

    async def handle_sync(self, data: dict[str, Any]) -> None:
        """Process one ``/sync`` response: accept invites, dispatch new text."""
        rooms = data.get("rooms") or {}
        for room_id in rooms.get("invite") or {}:
            try:
                await self.join(room_id)
                log.info("Joined room on invite", room=room_id)
            except (TransportError, aiohttp.ClientError) as exc:
                log.warning("Failed to join room", room=room_id, err=str(exc))

        for room_id, room in (rooms.get("join") or {}).items():
            for event in (room.get("timeline") or {}).get("events") or []:
                text = self._text_of(event)
                if text is not None and self._callback is not None:
                    await self._callback(room_id, text, event.get("sender"))

    def _text_of(self, event: dict[str, Any]) -> str | None:
        if event.get("type") != "m.room.message":
            return None
        if event.get("sender") == self.user_id:
            return None
        content = event.get("content") or {}
        if content.get("msgtype") != "m.text" or "m.new_content" in content:
            return None
        sent_at = event.get("origin_server_ts")
        if sent_at is not None and self._clock() * 1000 - sent_at > self._max_age_ms:
            return None
        return content.get("body")


class MatrixBridge(TransportBridge):
    name = "matrix"

    def __init__(self, context: BridgeContext, client: Any | None = None) -> None:
        cfg = context.settings.matrix
        token = context.credentials.get("matrix_access_token")
        if client is None and token and cfg.homeserver:
            client = MatrixClient(
                cfg.homeserver,
                token,
                max_message_age=cfg.max_message_age,
                typing_timeout_ms=cfg.typing_timeout_ms,
                sync_timeout_ms=cfg.sync_timeout_ms,
            )
        missing = None
        if not cfg.homeserver:
            missing = "Matrix homeserver not configured"
        elif not token:
            missing = "Matrix access token not configured"
        super().__init__(
            context,
            client,
            message_limit=cfg.message_limit,
            streaming=cfg.stream_edits,
            edit_interval=cfg.stream_edit_interval,
            max_edits=cfg.max_edits_per_message,
            missing_credentials=missing,
        )
        self.homeserver = cfg.homeserver

    def status(self) -> BridgeStatus:
        status = super().status()
        status.extra["homeserver"] = self.homeserver
        return status


class MatrixBridgePlugin:
    """Built-in plugin that activates when ``[matrix] enabled = true``."""

    @hookimpl
    def switchboard_create_bridge(self, context: Any) -> MatrixBridge | None:
        if context is None or not context.settings.matrix.enabled:
            log.debug("Matrix bridge skipped: not enabled")
            return None
        return MatrixBridge(context)
