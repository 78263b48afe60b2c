"""Plugin system for switchboard.

Plugins supply the agent runtime and transport bridges. Built on pluggy.

Usage:
    from switchboard.plugin import get_plugin_manager

    pm = get_plugin_manager()
    runtime = pm.hook.switchboard_agent_runtime(settings=s)
    bridges = pm.hook.switchboard_create_bridge(context=ctx)
"""

from __future__ import annotations

import importlib

import pluggy

from switchboard.logger import logger
from switchboard.plugin.hookspecs import SwitchboardSpec

__all__ = [
    "get_plugin_manager",
]

# Static registry of built-in plugins: (module_path, class_name, name)
_BUILTIN_PLUGIN_SPECS: list[tuple[str, str, str]] = [
    ("switchboard.runtimes.claude", "ClaudeRuntimePlugin", "claude"),
    ("switchboard.bridges.telegram", "TelegramBridgePlugin", "telegram"),
    ("switchboard.bridges.matrix", "MatrixBridgePlugin", "matrix"),
]


def get_plugin_manager(*, load_entrypoints: bool = True) -> pluggy.PluginManager:
    """Create and configure the plugin manager.

    Registers the built-in plugins, then third-party plugins from the
    "switchboard" entry-point group.
    """
    pm = pluggy.PluginManager("switchboard")
    pm.add_hookspecs(SwitchboardSpec)

    for module_path, class_name, name in _BUILTIN_PLUGIN_SPECS:
        try:
            mod = importlib.import_module(module_path)
            cls = getattr(mod, class_name)
            pm.register(cls(), name=f"builtin-{name}")
            logger.debug("Registered built-in plugin", name=name)
        except Exception:
            logger.exception("Failed to load built-in plugin", plugin=name)

    if load_entrypoints:
        discovered = pm.load_setuptools_entrypoints("switchboard")
        if discovered:
            logger.info("Discovered third-party plugins", count=discovered)

    # Entry points can hand back classes instead of instances
    for plugin in list(pm.get_plugins()):
        if isinstance(plugin, type):
            plugin_name = pm.get_name(plugin) or plugin.__name__
            pm.unregister(plugin=plugin)
            logger.warning("Unregistered invalid class-based plugin object", plugin=plugin_name)

    logger.info("Plugin manager ready", plugins=[pm.get_name(p) for p in pm.get_plugins()])
    return pm
