"""
Hook Bus

Named action and filter pipelines shared by the host and its plugins.

Actions are fire-and-forget: every subscriber runs in priority order and a
subscriber that raises is logged and skipped, so one misbehaving plugin never
prevents others from running or breaks the request that fired the action.

Filters thread a value through every subscriber in priority order. A filter
that raises propagates to the caller, because a half-applied transform is
not a value anyone should act on.

Priorities ascend (lower runs first); ties resolve by registration order,
which follows plugin discovery order and is therefore stable across restarts.
"""

from __future__ import annotations

import inspect
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cms_core.exceptions import RegistrationClosedError
from cms_core.plugins.hooks import lifecycle_owner

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 10


class HookKind(str, Enum):
    ACTION = "action"
    FILTER = "filter"


@dataclass(frozen=True)
class HookRegistration:
    """One callback subscribed to a named hook."""

    name: str
    kind: HookKind
    callback: Callable[..., Any]
    priority: int = DEFAULT_PRIORITY
    plugin: str | None = None
    sequence: int = field(default=0, compare=False)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.sequence)


async def _call(callback: Callable[..., Any], *args: Any) -> Any:
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class HookBus:
    """
    Process-wide action/filter dispatcher.

    Args:
        is_active: Predicate consulted on every dispatch for callbacks owned
                   by a plugin; callbacks of inactive plugins are skipped.
                   A plugin's own lifecycle actions ("<id>.deactivated",
                   "<id>.before_uninstall", ...) always reach it.
                   Host callbacks (plugin=None) always run.
    """

    def __init__(self, is_active: Callable[[str], bool] | None = None) -> None:
        self.is_active = is_active
        self._actions: dict[str, tuple[HookRegistration, ...]] = {}
        self._filters: dict[str, tuple[HookRegistration, ...]] = {}
        self._sequence = itertools.count()
        self._frozen = False

    # ── Registration ──────────────────────────────────────────────────────────

    def on(
        self,
        name: str,
        callback: Callable[[Any], Any],
        priority: int = DEFAULT_PRIORITY,
        plugin: str | None = None,
    ) -> HookRegistration:
        """Subscribe a side-effect callback to the action `name`."""
        return self._add(self._actions, HookKind.ACTION, name, callback, priority, plugin)

    def add_filter(
        self,
        name: str,
        callback: Callable[[Any, Any], Any],
        priority: int = DEFAULT_PRIORITY,
        plugin: str | None = None,
    ) -> HookRegistration:
        """Subscribe a `(value, context) -> value` transform to the filter `name`."""
        return self._add(self._filters, HookKind.FILTER, name, callback, priority, plugin)

    def _add(
        self,
        table: dict[str, tuple[HookRegistration, ...]],
        kind: HookKind,
        name: str,
        callback: Callable[..., Any],
        priority: int,
        plugin: str | None,
    ) -> HookRegistration:
        if self._frozen:
            raise RegistrationClosedError("HookBus")
        if not callable(callback):
            raise TypeError(f"Hook callback for '{name}' is not callable")

        registration = HookRegistration(
            name=name,
            kind=kind,
            callback=callback,
            priority=int(priority),
            plugin=plugin,
            sequence=next(self._sequence),
        )
        # Copy-on-write: readers always see a complete, sorted tuple
        table[name] = tuple(sorted((*table.get(name, ()), registration), key=lambda r: r.sort_key))
        logger.debug("Registered %s %s (priority=%d, plugin=%s)", kind.value, name, priority, plugin)
        return registration

    def freeze(self) -> None:
        """Reject further registrations (called once boot has finished)."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ── Introspection ─────────────────────────────────────────────────────────

    def registrations(self, name: str, kind: HookKind = HookKind.ACTION) -> tuple[HookRegistration, ...]:
        table = self._actions if kind is HookKind.ACTION else self._filters
        return table.get(name, ())

    def has_hook(self, name: str) -> bool:
        return name in self._actions or name in self._filters

    def hook_names(self) -> list[str]:
        return sorted(set(self._actions) | set(self._filters))

    def _runnable(self, registration: HookRegistration) -> bool:
        if registration.plugin is None or self.is_active is None:
            return True
        # A plugin always hears its own lifecycle events, active or not
        if lifecycle_owner(registration.name) == registration.plugin:
            return True
        return self.is_active(registration.plugin)

    # ── Dispatch ──────────────────────────────────────────────────────────────

    async def fire(self, name: str, payload: Any = None) -> int:
        """
        Run every action subscribed to `name`.

        Exceptions are caught and logged per callback; this method never
        raises because of a subscriber.

        Returns:
            Number of callbacks that completed without raising.
        """
        completed = 0
        for registration in self._actions.get(name, ()):
            if not self._runnable(registration):
                continue
            try:
                await _call(registration.callback, payload)
                completed += 1
            except Exception:
                logger.exception(
                    "Action %s raised in callback owned by %s",
                    name,
                    registration.plugin or "host",
                )
        return completed

    async def apply(self, name: str, value: Any, context: Any = None) -> Any:
        """
        Thread `value` through every filter subscribed to `name`.

        With no subscribers the value is returned unchanged. A filter that
        raises aborts the pipeline and the exception propagates.
        """
        for registration in self._filters.get(name, ()):
            if not self._runnable(registration):
                continue
            try:
                value = await _call(registration.callback, value, context)
            except Exception:
                logger.error(
                    "Filter %s failed in callback owned by %s",
                    name,
                    registration.plugin or "host",
                )
                raise
        return value
