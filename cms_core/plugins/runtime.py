"""
Plugin Runtime Handle

`plugin.runtime` is bound by the registry next to `plugin.settings` once
setup has succeeded. Unlike the setup context it stays usable after boot:
it lets a running plugin emit actions, run filters, trigger its own
webhooks and queue one-off jobs, always under its own identifier.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cms_core.plugins.registry import PluginRegistry


class PluginRuntime:
    def __init__(self, identifier: str, registry: PluginRegistry):
        self.identifier = identifier
        self._registry = registry

    @property
    def active(self) -> bool:
        return self._registry.is_active(self.identifier)

    async def emit(self, event: str, payload: Any = None) -> int:
        """Fire a hook bus action; returns how many callbacks completed."""
        return await self._registry.hook_bus.fire(event, payload)

    async def apply(self, name: str, value: Any, context: Any = None) -> Any:
        return await self._registry.hook_bus.apply(name, value, context)

    def trigger_webhook(self, event: str, payload: Any = None) -> list[asyncio.Task]:
        """Deliver `payload` to this plugin's webhooks for `event` only."""
        return self._registry.webhooks.trigger(self.identifier, event, payload)

    def enqueue(self, name: str, handler: Callable[..., Any], *args: Any, run_at: datetime | None = None) -> str:
        return self._registry.scheduler.enqueue(self.identifier, name, handler, *args, run_at=run_at)

    def enqueue_in(self, name: str, delay: timedelta | float, handler: Callable[..., Any], *args: Any) -> str:
        return self._registry.scheduler.enqueue_in(self.identifier, name, delay, handler, *args)

    def __repr__(self) -> str:
        return f"<PluginRuntime {self.identifier}>"
