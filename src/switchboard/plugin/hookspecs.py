"""Pluggy hook specifications for switchboard plugins.

All hooks use the "switchboard" namespace and are validated by pluggy at
registration time.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("switchboard")


class SwitchboardSpec:
    """Hook specifications for switchboard plugins.

    Plugins provide agent runtimes and transport bridges. A single plugin can
    implement both hooks.
    """

    @hookspec(firstresult=True)
    def switchboard_agent_runtime(self, settings: Any) -> Any | None:
        """Provide the agent runtime that sessions run on.

        Plugins should return None unless ``settings.agent.runtime`` names
        them. The first non-None result wins.

        Returns:
            Object implementing ``switchboard.runtime.AgentRuntime``, or None.
        """

    @hookspec
    def switchboard_create_bridge(self, context: Any) -> Any | None:
        """Create a transport bridge.

        Args:
            context: ``switchboard.bridges.base.BridgeContext`` with the
                settings, session store, engine and event bus.

        Returns:
            Object implementing ``switchboard.bridges.base.TransportBridge``,
            or None if this transport is disabled or unconfigured.
        """
