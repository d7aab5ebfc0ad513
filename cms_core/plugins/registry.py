"""
Plugin Registry & Lifecycle Controller

One registry per process. It owns the shared components (hook bus, settings
engine, route registrar, task scheduler, webhook dispatcher, UI blocks),
runs each plugin's setup against an identifier-bound context, and drives the
install → activate → deactivate → uninstall lifecycle against the plugin
store and migration runner.

Boot is sequential: discover, register, setup, freeze, activate. A plugin
that fails at any step is recorded as errored and skipped; it never stops the
others from booting.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, FastAPI

from cms_core.exceptions import (
    DuplicateIdentifierError,
    MigrationFailureError,
    PluginActivationError,
    PluginError,
    PluginNotFoundError,
    PluginStateError,
    RegistrationClosedError,
)
from cms_core.plugins.base import PluginBase
from cms_core.plugins.blocks import UiBlockRegistry
from cms_core.plugins.context import PluginContext
from cms_core.plugins.hook_bus import DEFAULT_PRIORITY, HookBus
from cms_core.plugins.hooks import ACTIVATED, BEFORE_UNINSTALL, DEACTIVATED, plugin_hook
from cms_core.plugins.migrations import SqlAlchemyMigrationRunner, pending_migrations
from cms_core.plugins.routes import AssetAudience, AssetContribution, RouteContribution, RouteRegistrar
from cms_core.plugins.runtime import PluginRuntime
from cms_core.plugins.settings_schema import SettingsSchemaEngine
from cms_core.scheduler import TaskScheduler
from cms_core.services.plugin_store import InMemoryPluginStore, PluginStore

if TYPE_CHECKING:
    from cms_core.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


class PluginState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERRORED = "errored"
    UNINSTALLED = "uninstalled"


@dataclass
class _Entry:
    plugin: PluginBase
    state: PluginState = PluginState.REGISTERED
    context: PluginContext | None = None
    error: str | None = None
    setup_failed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class PluginRegistry:
    """
    Process-wide plugin registry.

    Every collaborator can be injected; anything left out gets a default
    (in-memory store, fresh components, the module-level APScheduler).

    Args:
        store:            PluginRecord persistence.
        migration_runner: Applies plugin-private migrations; required only by
                          plugins that declare migrations or tables.
        sources:          Plugin sources iterated by `load_all`.
        authorize:        Host capability predicate for UI blocks.
        default_priority: Hook priority when a plugin does not pass one.
        tenant_id:        Tenant scope for newly created records.
    """

    def __init__(
        self,
        store: PluginStore | None = None,
        hook_bus: HookBus | None = None,
        settings_engine: SettingsSchemaEngine | None = None,
        routes: RouteRegistrar | None = None,
        scheduler: TaskScheduler | None = None,
        webhooks: WebhookDispatcher | None = None,
        blocks: UiBlockRegistry | None = None,
        migration_runner: SqlAlchemyMigrationRunner | None = None,
        sources: Sequence[Iterable[PluginBase]] = (),
        authorize: Callable[[dict[str, Any], str], bool] | None = None,
        default_priority: int = DEFAULT_PRIORITY,
        tenant_id: int | None = None,
    ):
        from cms_core.services.webhook_dispatcher import WebhookDispatcher

        self.store = store if store is not None else InMemoryPluginStore()
        self.hook_bus = hook_bus if hook_bus is not None else HookBus()
        self.settings_engine = settings_engine if settings_engine is not None else SettingsSchemaEngine(self.store)
        self.routes = routes if routes is not None else RouteRegistrar()
        self.scheduler = scheduler if scheduler is not None else TaskScheduler()
        self.webhooks = webhooks if webhooks is not None else WebhookDispatcher(self.hook_bus)
        self.blocks = blocks if blocks is not None else UiBlockRegistry(authorize=authorize)
        self.migration_runner = migration_runner
        self.sources = list(sources)
        self.default_priority = default_priority
        self.tenant_id = tenant_id

        # Activity is read from the registry on every dispatch
        for component in (self.hook_bus, self.scheduler, self.blocks):
            if component.is_active is None:
                component.is_active = self._is_running

        self._entries: dict[str, _Entry] = {}
        self._frozen = False

    # ── Lookup ────────────────────────────────────────────────────────────────

    def _entry(self, identifier: str) -> _Entry:
        entry = self._entries.get(identifier)
        if entry is None:
            raise PluginNotFoundError(identifier)
        return entry

    def _is_running(self, identifier: str) -> bool:
        entry = self._entries.get(identifier)
        return entry is not None and entry.state is PluginState.ACTIVE

    def get(self, identifier: str) -> PluginBase:
        return self._entry(identifier).plugin

    def state(self, identifier: str) -> PluginState:
        entry = self._entries.get(identifier)
        return entry.state if entry is not None else PluginState.UNREGISTERED

    def is_active(self, identifier: str) -> bool:
        return self._entry(identifier).state is PluginState.ACTIVE

    def context(self, identifier: str) -> PluginContext | None:
        return self._entry(identifier).context

    def all_plugins(self) -> list[PluginBase]:
        return [entry.plugin for entry in self._entries.values()]

    def errors(self) -> dict[str, str]:
        return {identifier: entry.error for identifier, entry in self._entries.items() if entry.error}

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ── Registration & boot ───────────────────────────────────────────────────

    def register(self, plugin: PluginBase) -> PluginBase:
        if self._frozen:
            raise RegistrationClosedError("PluginRegistry")
        identifier = plugin.descriptor.identifier
        if identifier in self._entries:
            raise DuplicateIdentifierError(identifier)
        self._entries[identifier] = _Entry(plugin=plugin)
        logger.info("Plugin registered: %s v%s", identifier, plugin.descriptor.version)
        return plugin

    async def load_all(self, sources: Sequence[Iterable[PluginBase]] | None = None) -> list[PluginBase]:
        """
        Discover, set up and activate every plugin.

        Sources are read once; after boot has frozen the registry a further
        call only reports the active plugins.

        Returns:
            The plugins that ended up active.
        """
        if self._frozen:
            logger.warning("Plugin sources already loaded; ignoring load_all after boot")
            return self._active_plugins()

        for source in self.sources if sources is None else sources:
            for plugin in source:
                try:
                    self.register(plugin)
                except DuplicateIdentifierError:
                    logger.warning("Skipping duplicate plugin %s from %r", plugin.descriptor.identifier, source)

        for entry in list(self._entries.values()):
            if entry.context is None and not entry.setup_failed:
                await self._setup(entry)

        self.freeze()

        for identifier, entry in self._entries.items():
            if entry.setup_failed or entry.state is not PluginState.INACTIVE:
                continue
            record = await self.store.get(identifier)
            if record is None or not record.active:
                continue
            try:
                await self.activate(identifier)
            except PluginError:
                logger.error("Plugin %s could not be activated at boot", identifier)

        active = self._active_plugins()
        logger.info(
            "Plugin boot complete: %d registered, %d active, %d errored",
            len(self._entries),
            len(active),
            sum(1 for entry in self._entries.values() if entry.state is PluginState.ERRORED),
        )
        return active

    def _active_plugins(self) -> list[PluginBase]:
        return [entry.plugin for entry in self._entries.values() if entry.state is PluginState.ACTIVE]

    async def _setup(self, entry: _Entry) -> None:
        identifier = entry.plugin.descriptor.identifier
        record_exists = False
        try:
            await self.store.ensure(identifier, self.tenant_id)
            record_exists = True
            ctx = PluginContext(identifier, self.default_priority)
            entry.plugin.setup(ctx)
            ctx.commit(self)
        except Exception as e:
            entry.state = PluginState.ERRORED
            entry.setup_failed = True
            entry.error = f"{type(e).__name__}: {e}"
            logger.exception("Setup failed for plugin %s", identifier)
            if record_exists:
                await self.store.update(identifier, last_error=entry.error)
            return

        entry.context = ctx
        entry.state = PluginState.INACTIVE
        entry.plugin.settings = self.settings_engine.bind(identifier)
        entry.plugin.runtime = PluginRuntime(identifier, self)
        logger.debug("Plugin %s set up", identifier)

    def freeze(self) -> None:
        """Close every component to further registrations."""
        self.hook_bus.freeze()
        self.settings_engine.freeze()
        self.routes.freeze()
        self.scheduler.freeze()
        self.webhooks.freeze()
        self.blocks.freeze()
        self._frozen = True

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def _record_failure(self, identifier: str, entry: _Entry, state: PluginState, error: Exception) -> None:
        entry.state = state
        entry.error = str(error)
        await self.store.update(identifier, active=False, last_error=entry.error)

    async def _migrate(self, identifier: str, ctx: PluginContext, current_version: int) -> int:
        pending = pending_migrations(ctx.migrations, current_version)
        if not pending:
            return current_version
        if self.migration_runner is None:
            raise MigrationFailureError(identifier, pending[0].version, "no migration runner configured")
        return await self.migration_runner.migrate(identifier, pending, current_version)

    async def activate(self, identifier: str) -> PluginState:
        entry = self._entry(identifier)
        async with entry.lock:
            if entry.state is PluginState.ACTIVE:
                return entry.state
            if entry.setup_failed or entry.context is None or entry.state is PluginState.UNINSTALLED:
                raise PluginStateError(identifier, entry.state.value, "activate")

            problems = entry.plugin.check_requirements()
            if problems:
                error = PluginActivationError(identifier, "unmet requirements: " + "; ".join(problems))
                await self._record_failure(identifier, entry, PluginState.ERRORED, error)
                logger.error("Plugin %s not activated, requirements unmet: %s", identifier, problems)
                raise error

            record = await self.store.ensure(identifier, self.tenant_id)
            try:
                version = await self._migrate(identifier, entry.context, record.schema_version or 0)
            except MigrationFailureError as e:
                await self._record_failure(identifier, entry, PluginState.ERRORED, e)
                logger.error("Activation of %s failed during migrations: %s", identifier, e.message)
                raise

            await self.store.update(identifier, active=True, schema_version=version, last_error=None)
            entry.state = PluginState.ACTIVE
            entry.error = None
            self.scheduler.resume(identifier)

            try:
                await entry.plugin.on_activate()
            except Exception as e:
                self.scheduler.suspend(identifier)
                await self._record_failure(identifier, entry, PluginState.ERRORED, e)
                logger.exception("on_activate failed for plugin %s", identifier)
                raise PluginActivationError(identifier, str(e)) from e

        logger.info("Plugin activated: %s (schema v%d)", identifier, version)
        await self.hook_bus.fire(plugin_hook(identifier, ACTIVATED), {"plugin": identifier})
        return entry.state

    async def deactivate(self, identifier: str) -> PluginState:
        entry = self._entry(identifier)
        async with entry.lock:
            if entry.state is PluginState.UNINSTALLED:
                raise PluginStateError(identifier, entry.state.value, "deactivate")
            if entry.state is not PluginState.ACTIVE:
                return entry.state
            await self._deactivate(identifier, entry)
        await self.hook_bus.fire(plugin_hook(identifier, DEACTIVATED), {"plugin": identifier})
        return entry.state

    async def _deactivate(self, identifier: str, entry: _Entry) -> None:
        entry.state = PluginState.INACTIVE
        await self.store.update(identifier, active=False)
        self.scheduler.suspend(identifier)
        try:
            await entry.plugin.on_deactivate()
        except Exception as e:
            entry.error = f"on_deactivate failed: {e}"
            await self.store.update(identifier, last_error=entry.error)
            logger.exception("on_deactivate failed for plugin %s", identifier)
        logger.info("Plugin deactivated: %s", identifier)

    async def uninstall(self, identifier: str) -> PluginState:
        """
        Remove a plugin's persistent footprint.

        Phase 1 notifies listeners and the plugin. Phase 2 drops its tables,
        removes its jobs and deletes its record. A failure leaves the plugin
        INACTIVE with the error recorded, and uninstall can be retried.
        """
        entry = self._entry(identifier)
        async with entry.lock:
            if entry.state is PluginState.UNINSTALLED:
                raise PluginStateError(identifier, entry.state.value, "uninstall")
            was_active = entry.state is PluginState.ACTIVE
            if was_active:
                await self._deactivate(identifier, entry)
        if was_active:
            await self.hook_bus.fire(plugin_hook(identifier, DEACTIVATED), {"plugin": identifier})

        async with entry.lock:
            if entry.state is PluginState.UNINSTALLED:
                raise PluginStateError(identifier, entry.state.value, "uninstall")

            await self.hook_bus.fire(plugin_hook(identifier, BEFORE_UNINSTALL), {"plugin": identifier})
            try:
                await entry.plugin.before_uninstall()
            except Exception as e:
                await self._record_failure(identifier, entry, PluginState.INACTIVE, e)
                logger.exception("before_uninstall failed for plugin %s", identifier)
                raise PluginError(
                    f"Plugin '{identifier}' failed to prepare for uninstall: {e}",
                    details={"identifier": identifier, "reason": str(e)},
                ) from e

            ctx = entry.context
            try:
                if ctx is not None and ctx.metadata.tables:
                    if self.migration_runner is None:
                        raise MigrationFailureError(identifier, None, "no migration runner configured")
                    await self.migration_runner.drop_tables(identifier, ctx.metadata)
            except MigrationFailureError as e:
                await self._record_failure(identifier, entry, PluginState.INACTIVE, e)
                logger.error("Uninstall of %s failed: %s", identifier, e.message)
                raise

            self.scheduler.remove(identifier)
            await self.store.delete(identifier)
            entry.state = PluginState.UNINSTALLED
            entry.error = None
        logger.info("Plugin uninstalled: %s", identifier)
        return entry.state

    # ── Host integration ──────────────────────────────────────────────────────

    def materialize_routes(
        self, router: APIRouter | FastAPI, admin_dependencies: Sequence[Any] | None = None
    ) -> list[RouteContribution]:
        return self.routes.materialize(router, admin_dependencies=admin_dependencies)

    def assets_for(self, audience: AssetAudience | str, kind: str | None = None) -> list[AssetContribution]:
        return self.routes.assets_for(audience, kind=kind, is_active=self._is_running)

    async def aclose(self) -> None:
        await self.webhooks.aclose()
