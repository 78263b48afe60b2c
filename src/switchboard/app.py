"""Application wiring.

Builds the event bus, session store, agent runtime, engine, subscription
manager and transport bridges from settings, then runs until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any

from switchboard.bridges.base import BridgeContext, TransportBridge
from switchboard.config import Settings, get_settings
from switchboard.control import SessionControl, SubscriptionManager
from switchboard.control.tools import BoundTool, bind_tools
from switchboard.credentials import CredentialStore, SettingsCredentialStore
from switchboard.event_bus import SessionEventBus
from switchboard.logger import logger, set_level
from switchboard.plugin import get_plugin_manager
from switchboard.runtime import AgentRuntime
from switchboard.sessions import SessionEngine, SessionStore
from switchboard.sessions.rephrase import rephrase_message, rephrase_text, transform_for_voice
from switchboard.types import Session


class SwitchboardApp:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        runtime: AgentRuntime | None = None,
        credentials: CredentialStore | None = None,
        plugin_manager: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        if s.logging.level:
            set_level(s.logging.level)
        self._pm = plugin_manager or get_plugin_manager()
        self.credentials = credentials or SettingsCredentialStore(s)

        self.bus = SessionEventBus()
        self.store = SessionStore(
            s.workspace_root, self.bus, default_permission_mode=s.sessions.default_permission_mode
        )
        self.runtime = runtime or self._pm.hook.switchboard_agent_runtime(settings=s)
        if self.runtime is None:
            raise RuntimeError(f"No plugin provides agent runtime '{s.agent.runtime}'")
        self.engine = SessionEngine(self.store, self.bus, self.runtime, model=s.agent.model)
        self.store.set_stop_fn(self.engine.halt)
        self.subscriptions = SubscriptionManager(
            self.store,
            self.engine,
            self.bus,
            poll_interval=s.subscriptions.poll_interval,
            long_running_threshold=s.subscriptions.long_running_threshold,
            long_running_repeat=s.subscriptions.long_running_repeat,
        )
        self.engine.set_tool_provider(self._control_tools)
        self.bridges: list[TransportBridge] = []
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------
    # Remote control
    # ------------------------------------------------------------------

    def control_for(self, controller_id: str) -> SessionControl:
        """The control protocol as seen from *controller_id*."""
        return SessionControl(
            controller_id,
            store=self.store,
            engine=self.engine,
            bus=self.bus,
            subscriptions=self.subscriptions,
            default_workspace=self.settings.sessions.default_workspace,
            send_timeout_ms=self.settings.control.send_timeout_ms,
        )

    def _control_tools(self, session: Session) -> list[BoundTool]:
        if not session.has_label(*self.settings.control.controller_labels):
            return []
        return bind_tools(self.control_for(session.id))

    # ------------------------------------------------------------------
    # Rewrite helpers
    # ------------------------------------------------------------------

    async def rephrase(self, text: str, *, mentions: list[str] | None = None) -> str | None:
        return await rephrase_text(
            self.runtime, text, mentions=mentions, model=self.settings.agent.rephrase_model
        )

    async def rephrase_session_message(
        self, session_id: str, message_id: str, *, mentions: list[str] | None = None
    ) -> str | None:
        session = self.store.require(session_id)
        return await rephrase_message(
            self.runtime,
            session,
            message_id,
            mentions=mentions,
            model=self.settings.agent.rephrase_model,
        )

    async def voice(self, text: str) -> str | None:
        return await transform_for_voice(self.runtime, text, model=self.settings.agent.voice_model)

    # ------------------------------------------------------------------
    # Bridges
    # ------------------------------------------------------------------

    def create_bridges(self) -> list[TransportBridge]:
        context = BridgeContext(
            settings=self.settings,
            store=self.store,
            engine=self.engine,
            bus=self.bus,
            credentials=self.credentials,
        )
        results = self._pm.hook.switchboard_create_bridge(context=context)
        self.bridges = [b for b in results if b is not None]
        return self.bridges

    def bridge_status(self) -> dict[str, dict[str, Any]]:
        return {b.name: b.status().to_dict() for b in self.bridges}

    async def _start_bridges(self) -> None:
        for bridge in self.bridges:
            try:
                await bridge.start()
            except Exception:
                logger.exception("Bridge failed to start, skipping", bridge=bridge.name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_stop(self, sig_name: str = "manual") -> None:
        logger.info("Shutdown requested", signal=sig_name)
        self._stop.set()

    async def shutdown(self) -> None:
        for bridge in self.bridges:
            try:
                await bridge.stop()
            except Exception:
                logger.exception("Bridge failed to stop cleanly", bridge=bridge.name)
        self.subscriptions.close()
        await self.engine.shutdown()
        self.bus.close()
        logger.info("Shutdown complete")

    async def run(self) -> None:
        """Main entry point: start bridges and serve until signalled."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self.request_stop(s.name))

        self.create_bridges()
        await self._start_bridges()
        logger.info(
            "Switchboard running",
            workspace_root=str(self.settings.workspace_root),
            bridges=self.bridge_status(),
        )
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()
