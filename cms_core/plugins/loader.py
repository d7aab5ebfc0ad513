"""
Plugin Loader

Discovery sources that yield plugin instances in a stable order, and the
`build_registry` factory that wires a PluginRegistry from application
settings.

A source is any iterable of PluginBase instances:
  - ModulePluginSource     dotted module names (the bundled plugins)
  - DirectoryPluginSource  <dir>/<name>/plugin.py drop-in plugins
  - EntryPointPluginSource installed distributions advertising an entry point

Import errors are logged per module and skipped, so one broken plugin
never prevents the rest from booting.
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import logging
import sys
from collections.abc import Callable, Iterator
from importlib.metadata import entry_points
from pathlib import Path
from types import ModuleType
from typing import Any

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cms_core.config import Settings
from cms_core.plugins.base import PluginBase
from cms_core.plugins.hook_bus import HookBus
from cms_core.plugins.migrations import SqlAlchemyMigrationRunner
from cms_core.plugins.registry import PluginRegistry
from cms_core.plugins.routes import RouteRegistrar
from cms_core.scheduler import TaskScheduler
from cms_core.services.plugin_store import SqlAlchemyPluginStore
from cms_core.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

DEFAULT_ENTRY_POINT_GROUP = "cms_core.plugins"
DIRECTORY_MODULE_PREFIX = "cms_core_ext"


def _instantiate(cls: type[PluginBase]) -> PluginBase | None:
    try:
        return cls()
    except Exception:
        logger.exception("Could not instantiate plugin class %s.%s", cls.__module__, cls.__qualname__)
        return None


def plugins_in_module(module: ModuleType) -> list[PluginBase]:
    """
    The plugins a module provides.

    A module-level `plugin` instance wins; otherwise every concrete
    PluginBase subclass defined in the module, in definition order.
    """
    instance = getattr(module, "plugin", None)
    if isinstance(instance, PluginBase):
        return [instance]

    found = []
    for obj in vars(module).values():
        if (
            isinstance(obj, type)
            and issubclass(obj, PluginBase)
            and obj.__module__ == module.__name__
            and not inspect.isabstract(obj)
        ):
            plugin = _instantiate(obj)
            if plugin is not None:
                found.append(plugin)
    if not found:
        logger.warning("Module %s does not define any plugin", module.__name__)
    return found


class ModulePluginSource:
    def __init__(self, module_names: list[str] | tuple[str, ...]):
        self.module_names = list(module_names)

    def __iter__(self) -> Iterator[PluginBase]:
        for name in self.module_names:
            try:
                module = importlib.import_module(name)
            except Exception:
                logger.exception("Failed to import plugin module %s", name)
                continue
            yield from plugins_in_module(module)

    def __repr__(self) -> str:
        return f"ModulePluginSource({self.module_names!r})"


class DirectoryPluginSource:
    """Drop-in plugins: every sub-directory of `path` holding a plugin.py, sorted by name."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self, directory: Path) -> ModuleType | None:
        module_name = f"{DIRECTORY_MODULE_PREFIX}_{directory.name}"
        spec = importlib.util.spec_from_file_location(module_name, directory / "plugin.py")
        if spec is None or spec.loader is None:
            logger.warning("Cannot load plugin from %s", directory)
            return None
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(module_name, None)
            logger.exception("Failed to import plugin from %s", directory)
            return None
        return module

    def __iter__(self) -> Iterator[PluginBase]:
        if not self.path.is_dir():
            logger.warning("Plugin directory %s does not exist", self.path)
            return
        for directory in sorted(self.path.iterdir(), key=lambda p: p.name):
            if not directory.is_dir() or not (directory / "plugin.py").is_file():
                continue
            module = self._load(directory)
            if module is not None:
                yield from plugins_in_module(module)

    def __repr__(self) -> str:
        return f"DirectoryPluginSource({str(self.path)!r})"


class EntryPointPluginSource:
    """
    Plugins shipped by installed distributions.

    An entry point may name a plugin instance, a PluginBase subclass or a
    module; entry points are visited sorted by name.
    """

    def __init__(self, group: str = DEFAULT_ENTRY_POINT_GROUP):
        self.group = group

    def __iter__(self) -> Iterator[PluginBase]:
        for ep in sorted(entry_points(group=self.group), key=lambda ep: ep.name):
            try:
                target = ep.load()
            except Exception:
                logger.exception("Failed to load plugin entry point %s", ep.name)
                continue
            if isinstance(target, PluginBase):
                yield target
            elif isinstance(target, type) and issubclass(target, PluginBase):
                plugin = _instantiate(target)
                if plugin is not None:
                    yield plugin
            elif isinstance(target, ModuleType):
                yield from plugins_in_module(target)
            else:
                logger.warning("Entry point %s does not reference a plugin: %r", ep.name, target)

    def __repr__(self) -> str:
        return f"EntryPointPluginSource({self.group!r})"


# ── Registry factory ──────────────────────────────────────────────────────────


def build_sources(app_settings: Settings) -> list[Any]:
    sources: list[Any] = [ModulePluginSource(app_settings.plugin_modules)]
    if app_settings.plugin_directory:
        sources.append(DirectoryPluginSource(app_settings.plugin_directory))
    if app_settings.plugin_entry_point_group:
        sources.append(EntryPointPluginSource(app_settings.plugin_entry_point_group))
    return sources


def build_registry(
    app_settings: Settings | None = None,
    engine: AsyncEngine | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    job_queue: AsyncIOScheduler | None = None,
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
    authorize: Callable[[dict[str, Any], str], bool] | None = None,
) -> PluginRegistry:
    """
    Build the process-wide PluginRegistry from configuration.

    Defaults come from cms_core.config.settings and cms_core.database;
    tests pass their own engine and session factory.
    """
    if app_settings is None or engine is None or session_factory is None:
        from cms_core import database
        from cms_core.config import settings

        app_settings = app_settings or settings
        engine = engine or database.engine
        session_factory = session_factory or database.AsyncSessionLocal

    hook_bus = HookBus()
    webhooks = WebhookDispatcher(
        hook_bus,
        client_factory=client_factory,
        max_retries=app_settings.webhook_max_retries,
        backoff_base=app_settings.webhook_backoff_base,
        backoff_cap=app_settings.webhook_backoff_cap,
        timeout=app_settings.webhook_timeout_seconds,
    )
    return PluginRegistry(
        store=SqlAlchemyPluginStore(session_factory),
        hook_bus=hook_bus,
        routes=RouteRegistrar(app_settings.admin_route_prefix, app_settings.frontend_route_prefix),
        scheduler=TaskScheduler(job_queue),
        webhooks=webhooks,
        migration_runner=SqlAlchemyMigrationRunner(engine),
        sources=build_sources(app_settings),
        authorize=authorize,
        default_priority=app_settings.default_hook_priority,
    )
