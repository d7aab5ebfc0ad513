"""
Plugin Setup Context

The builder handed to `PluginBase.setup`. Every method is bound to the
plugin's identifier, so a plugin can only register hooks, routes, settings,
tasks, webhooks, blocks and tables inside its own namespace.

Registrations are validated as they are made but only buffered; the
registry commits them to the shared components once `setup` has returned.
A setup that raises therefore leaves nothing behind.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import Column, Connection, MetaData, Table

from cms_core.exceptions import DuplicateIdentifierError, InvalidScheduleError, RegistrationClosedError
from cms_core.plugins.blocks import BlockLocation, BlockPosition
from cms_core.plugins.hook_bus import DEFAULT_PRIORITY
from cms_core.plugins.hooks import is_known_action, is_known_filter
from cms_core.plugins.migrations import PluginMigration
from cms_core.plugins.routes import (
    AssetAudience,
    RouteSpec,
    coerce_route,
    infer_asset_kind,
    normalise_route_path,
)
from cms_core.plugins.settings_schema import SettingField, SettingSection, SettingsSchema

if TYPE_CHECKING:
    from cms_core.plugins.registry import PluginRegistry

logger = logging.getLogger(__name__)


class PluginContext:
    """
    Identifier-bound registration builder.

    Args:
        identifier:       Owning plugin identifier.
        default_priority: Hook priority used when a call does not pass one.
    """

    def __init__(self, identifier: str, default_priority: int = DEFAULT_PRIORITY):
        self.identifier = identifier
        self.default_priority = default_priority
        self.schema = SettingsSchema(identifier)
        self.metadata = MetaData()
        self.migrations: list[PluginMigration] = []
        self._pending: list[tuple[str, str, tuple[Any, ...], dict[str, Any]]] = []
        self._task_names: set[str] = set()
        self._block_keys: set[str] = set()
        self._committed = False

    def _check_open(self) -> None:
        if self._committed:
            raise RegistrationClosedError(f"Setup context for '{self.identifier}'")

    def _defer(self, component_name: str, method_name: str, *args: Any, **kwargs: Any) -> None:
        self._check_open()
        self._pending.append((component_name, method_name, args, kwargs))

    @property
    def pending(self) -> int:
        return len(self._pending)

    # ── Hooks ─────────────────────────────────────────────────────────────────

    def on(self, name: str, callback: Callable[[Any], Any], priority: int | None = None) -> None:
        if not callable(callback):
            raise TypeError(f"Hook callback for '{name}' is not callable")
        if not is_known_action(name):
            raise ValueError(f"Unknown action '{name}'; plugins may only subscribe to host-defined hooks")
        priority = self.default_priority if priority is None else priority
        self._defer("hook_bus", "on", name, callback, priority=priority, plugin=self.identifier)

    def add_filter(self, name: str, callback: Callable[[Any, Any], Any], priority: int | None = None) -> None:
        if not callable(callback):
            raise TypeError(f"Filter callback for '{name}' is not callable")
        if not is_known_filter(name):
            raise ValueError(f"Unknown filter '{name}'; plugins may only subscribe to host-defined hooks")
        priority = self.default_priority if priority is None else priority
        self._defer("hook_bus", "add_filter", name, callback, priority=priority, plugin=self.identifier)

    # ── Settings ──────────────────────────────────────────────────────────────

    def section(self, title: str, description: str | None = None) -> SettingSection:
        self._check_open()
        return self.schema.section(title, description)

    def define_field(self, key: str, type: str = "string", label: str | None = None, **options: Any) -> SettingField:
        self._check_open()
        return self.schema.define_field(key, type, label, **options)

    # ── Routes, pages & assets ────────────────────────────────────────────────

    def register_admin_routes(self, routes: Iterable[RouteSpec | Sequence[Any]]) -> None:
        specs = [coerce_route(self.identifier, item) for item in routes]
        self._defer("routes", "register_admin_routes", self.identifier, specs)

    def register_frontend_routes(self, routes: Iterable[RouteSpec | Sequence[Any]]) -> None:
        specs = [coerce_route(self.identifier, item) for item in routes]
        self._defer("routes", "register_frontend_routes", self.identifier, specs)

    def admin_route(self, path: str, method: str = "GET", name: str | None = None) -> Callable:
        """Decorator form of `register_admin_routes` for a single handler."""

        def decorator(handler: Callable[..., Any]) -> Callable[..., Any]:
            self.register_admin_routes([RouteSpec(path, method, handler, name)])
            return handler

        return decorator

    def frontend_route(self, path: str, method: str = "GET", name: str | None = None) -> Callable:
        """Decorator form of `register_frontend_routes` for a single handler."""

        def decorator(handler: Callable[..., Any]) -> Callable[..., Any]:
            self.register_frontend_routes([RouteSpec(path, method, handler, name)])
            return handler

        return decorator

    def register_admin_page(self, slug: str = "settings", title: str | None = None, **options: Any) -> None:
        normalise_route_path(self.identifier, slug)
        self._defer("routes", "register_admin_page", self.identifier, slug, title, **options)

    def register_asset(
        self,
        filename: str,
        audience: AssetAudience | str = AssetAudience.BOTH,
        kind: str | None = None,
        priority: int = 10,
    ) -> None:
        relative = normalise_route_path(self.identifier, filename)
        if kind is None:
            kind = infer_asset_kind(relative)
        self._defer("routes", "register_asset", self.identifier, relative, AssetAudience(audience), kind, priority)

    # ── Tasks & webhooks ──────────────────────────────────────────────────────

    def schedule_recurring(self, name: str, cron: str, handler: Callable[[], Any]) -> None:
        if name in self._task_names:
            raise DuplicateIdentifierError(f"{self.identifier}:{name}", kind="Scheduled task")
        if not callable(handler):
            raise TypeError(f"Handler for task '{self.identifier}:{name}' is not callable")
        try:
            CronTrigger.from_crontab(cron)
        except ValueError as e:
            raise InvalidScheduleError(self.identifier, name, cron) from e
        self._task_names.add(name)
        self._defer("scheduler", "schedule_recurring", self.identifier, name, cron, handler)

    def register_webhook(
        self,
        event: str,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        secret: str | None = None,
        timeout: float | None = None,
    ) -> None:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Webhook URL must be an absolute http(s) URL, got '{url}'")
        if not is_known_action(event):
            raise ValueError(f"Unknown action '{event}' for webhook {url}")
        self._defer(
            "webhooks",
            "register_webhook",
            self.identifier,
            event,
            url,
            method=method,
            headers=headers,
            secret=secret,
            timeout=timeout,
        )

    # ── UI blocks ─────────────────────────────────────────────────────────────

    def register_block(self, key: str, **options: Any) -> None:
        if key in self._block_keys:
            raise DuplicateIdentifierError(f"{self.identifier}.{key}", kind="UI block")
        if options.get("render") is None:
            raise ValueError(f"Block {self.identifier}.{key} needs a template path or render callable")
        locations = options.get("locations", ("post", "page"))
        for location in (locations,) if isinstance(locations, str) else locations:
            BlockLocation(location)
        BlockPosition(options.get("position", "sidebar"))
        self._block_keys.add(key)
        self._defer("blocks", "register_block", self.identifier, key, **options)

    # ── Tables & migrations ───────────────────────────────────────────────────

    def table(self, name: str, *columns: Column, **kwargs: Any) -> Table:
        """Declare a plugin-private table, stored as "<identifier>_<name>"."""
        self._check_open()
        return Table(f"{self.identifier}_{name}", self.metadata, *columns, **kwargs)

    def add_migration(
        self,
        version: int,
        upgrade: Callable[[Connection], Any] | None = None,
        tables: Iterable[Table | str] = (),
        description: str = "",
    ) -> PluginMigration:
        self._check_open()
        if not isinstance(version, int) or version < 1:
            raise ValueError(f"Migration version for '{self.identifier}' must be a positive integer")
        if any(m.version == version for m in self.migrations):
            raise DuplicateIdentifierError(f"{self.identifier} v{version}", kind="Migration")
        resolved = []
        for table in tables:
            if isinstance(table, str):
                table = self.metadata.tables[f"{self.identifier}_{table}"]
            resolved.append(table)
        if upgrade is None and not resolved:
            raise ValueError(f"Migration {self.identifier} v{version} has neither an upgrade callable nor tables")
        migration = PluginMigration(
            plugin=self.identifier,
            version=version,
            upgrade=upgrade,
            tables=tuple(resolved),
            description=description,
        )
        self.migrations.append(migration)
        return migration

    @property
    def schema_version(self) -> int:
        return max((m.version for m in self.migrations), default=0)

    # ── Commit ────────────────────────────────────────────────────────────────

    def commit(self, registry: PluginRegistry) -> int:
        """Apply buffered registrations to the registry's components."""
        self._check_open()
        registry.settings_engine.register_schema(self.schema)
        for component_name, method_name, args, kwargs in self._pending:
            getattr(getattr(registry, component_name), method_name)(*args, **kwargs)
        self._committed = True
        logger.debug("Committed %d registration(s) for %s", len(self._pending), self.identifier)
        return len(self._pending)
