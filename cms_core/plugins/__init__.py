"""
CMS Plugin Runtime

Public API for the plugin system:
    PluginDescriptor — immutable plugin identity
    PluginBase       — abstract base class for all plugins
    PluginContext    — identifier-bound registration builder passed to setup()
    PluginRegistry   — registry + lifecycle controller
    PluginRuntime    — post-boot handle bound to each plugin (emit, webhooks, jobs)
    HookBus          — action/filter dispatcher

Discovery sources and `build_registry` live in cms_core.plugins.loader.
"""

from .base import PluginBase, PluginDescriptor
from .context import PluginContext
from .hook_bus import HookBus
from .registry import PluginRegistry, PluginState
from .routes import RouteSpec
from .runtime import PluginRuntime

__all__ = [
    "HookBus",
    "PluginBase",
    "PluginContext",
    "PluginDescriptor",
    "PluginRegistry",
    "PluginRuntime",
    "PluginState",
    "RouteSpec",
]
