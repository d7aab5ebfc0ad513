"""
Route & Asset Registrar

Collects the HTTP routes, admin menu pages and static assets that plugins
contribute during setup, and mounts the routes into the host router once
boot has finished.

Every route lives under /<scope-root>/<plugin-identifier>/...; the registrar
builds that prefix itself from the owning identifier, so a plugin can only
ever name paths inside its own namespace. Collisions are still checked
before anything is mounted.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

from fastapi import APIRouter, FastAPI

from cms_core.exceptions import InvalidRouteError, RegistrationClosedError, RouteCollisionError

logger = logging.getLogger(__name__)

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})


class RouteScope(str, Enum):
    ADMIN = "admin"
    FRONTEND = "frontend"


class AssetAudience(str, Enum):
    ADMIN = "admin"
    FRONTEND = "frontend"
    BOTH = "both"


class AssetKind(str, Enum):
    JAVASCRIPT = "javascript"
    STYLESHEET = "stylesheet"
    IMAGE = "image"


_ASSET_SUFFIXES = {
    ".js": AssetKind.JAVASCRIPT,
    ".mjs": AssetKind.JAVASCRIPT,
    ".css": AssetKind.STYLESHEET,
    ".png": AssetKind.IMAGE,
    ".jpg": AssetKind.IMAGE,
    ".jpeg": AssetKind.IMAGE,
    ".gif": AssetKind.IMAGE,
    ".svg": AssetKind.IMAGE,
    ".webp": AssetKind.IMAGE,
}


@dataclass(frozen=True)
class RouteSpec:
    """A route as a plugin declares it: relative to the plugin's namespace."""

    path: str
    method: str = "GET"
    handler: Callable[..., Any] | None = None
    name: str | None = None


@dataclass(frozen=True)
class RouteContribution:
    plugin: str
    scope: RouteScope
    path: str  # normalised, relative to the namespace root
    method: str
    handler: Callable[..., Any]
    absolute_path: str
    name: str | None = None
    sequence: int = field(default=0, compare=False)


@dataclass(frozen=True)
class AssetContribution:
    plugin: str
    filename: str
    kind: AssetKind
    url: str
    audience: AssetAudience = AssetAudience.BOTH
    priority: int = 10
    sequence: int = field(default=0, compare=False)


@dataclass(frozen=True)
class AdminPage:
    plugin: str
    slug: str
    title: str
    menu_title: str
    path: str
    icon: str = "puzzle"
    position: int = 100
    parent: str | None = None
    capability: str = "administrator"
    sequence: int = field(default=0, compare=False)


def normalise_route_path(plugin: str, path: str) -> str:
    """Strip slashes and reject anything that could leave the plugin namespace."""
    raw = (path or "").strip()
    if "://" in raw or raw.startswith("//"):
        raise InvalidRouteError(plugin, raw, "must be a path, not a URL")
    if "\\" in raw:
        raise InvalidRouteError(plugin, raw, "backslashes are not allowed")
    segments = [segment for segment in raw.split("/") if segment]
    if any(segment in (".", "..") for segment in segments):
        raise InvalidRouteError(plugin, raw, "relative segments are not allowed")
    return "/".join(segments)


def coerce_route(plugin: str, item: RouteSpec | Sequence[Any]) -> RouteSpec:
    """Validate a declared route and return it with a normalised path and method."""
    if isinstance(item, (tuple, list)) and len(item) in (3, 4):
        item = RouteSpec(*item)
    if not isinstance(item, RouteSpec):
        raise TypeError(f"Route must be a RouteSpec or a (path, method, handler[, name]) tuple, got {item!r}")
    method = str(item.method).upper()
    if method not in HTTP_METHODS:
        raise InvalidRouteError(plugin, item.path, f"unsupported HTTP method {method}")
    if not callable(item.handler):
        raise InvalidRouteError(plugin, item.path, "handler is not callable")
    return RouteSpec(normalise_route_path(plugin, item.path), method, item.handler, item.name)


def infer_asset_kind(filename: str) -> AssetKind:
    suffix = PurePosixPath(filename).suffix.lower()
    if suffix not in _ASSET_SUFFIXES:
        raise ValueError(f"Cannot infer asset kind of '{filename}'; pass kind explicitly")
    return _ASSET_SUFFIXES[suffix]


class RouteRegistrar:
    """
    Pending route table, admin menu and asset list for all plugins.

    Args:
        admin_prefix:    Namespace root for admin-scope routes.
        frontend_prefix: Namespace root for frontend-scope routes.
    """

    def __init__(self, admin_prefix: str = "/admin", frontend_prefix: str = "/plugins"):
        self.prefixes = {
            RouteScope.ADMIN: "/" + admin_prefix.strip("/"),
            RouteScope.FRONTEND: "/" + frontend_prefix.strip("/"),
        }
        self._routes: list[RouteContribution] = []
        self._assets: list[AssetContribution] = []
        self._pages: list[AdminPage] = []
        self._sequence = itertools.count()
        self._frozen = False
        self._materialized: list[tuple[APIRouter | FastAPI, list[RouteContribution]]] = []

    def _ensure_open(self) -> None:
        if self._frozen:
            raise RegistrationClosedError("RouteRegistrar")

    def freeze(self) -> None:
        self._frozen = True

    def namespace(self, plugin: str, scope: RouteScope) -> str:
        return f"{self.prefixes[scope]}/{plugin}"

    # ── Routes ────────────────────────────────────────────────────────────────

    def register_admin_routes(self, plugin: str, routes: Iterable[RouteSpec | Sequence[Any]]) -> list[RouteContribution]:
        return self._register(plugin, RouteScope.ADMIN, routes)

    def register_frontend_routes(self, plugin: str, routes: Iterable[RouteSpec | Sequence[Any]]) -> list[RouteContribution]:
        return self._register(plugin, RouteScope.FRONTEND, routes)

    def _register(
        self, plugin: str, scope: RouteScope, routes: Iterable[RouteSpec | Sequence[Any]]
    ) -> list[RouteContribution]:
        self._ensure_open()
        added = []
        for item in routes:
            spec = coerce_route(plugin, item)
            absolute = self.namespace(plugin, scope) + (f"/{spec.path}" if spec.path else "")
            contribution = RouteContribution(
                plugin=plugin,
                scope=scope,
                path=spec.path,
                method=spec.method,
                handler=spec.handler,
                absolute_path=absolute,
                name=spec.name,
                sequence=next(self._sequence),
            )
            added.append(contribution)
            logger.debug("Route registered: %s %s (%s)", spec.method, absolute, plugin)
        self._routes.extend(added)
        return added

    def routes(self, plugin: str | None = None) -> list[RouteContribution]:
        return [r for r in self._routes if plugin is None or r.plugin == plugin]

    def check_collisions(self, router: APIRouter | FastAPI | None = None) -> None:
        """Raise RouteCollisionError if any two routes share method and absolute path."""
        owners: dict[tuple[str, str], str] = {}
        if router is not None:
            for route in router.routes:
                for method in getattr(route, "methods", None) or ():
                    owners[(method, route.path)] = "host"
        for contribution in self._routes:
            key = (contribution.method, contribution.absolute_path)
            if key in owners:
                raise RouteCollisionError(contribution.method, contribution.absolute_path, [owners[key], contribution.plugin])
            owners[key] = contribution.plugin

    def materialize(
        self,
        router: APIRouter | FastAPI,
        admin_dependencies: Sequence[Any] | None = None,
    ) -> list[RouteContribution]:
        """
        Mount every pending route on the host router.

        Collisions are checked before the first route is added, so a failure
        leaves the router untouched. Materialising into the same router twice
        returns the earlier result without mounting anything.
        """
        for mounted_router, mounted in self._materialized:
            if mounted_router is router:
                return mounted

        self.check_collisions(router)
        for contribution in self._routes:
            dependencies = list(admin_dependencies or ()) if contribution.scope is RouteScope.ADMIN else []
            router.add_api_route(
                contribution.absolute_path,
                contribution.handler,
                methods=[contribution.method],
                name=f"{contribution.plugin}.{contribution.name or contribution.path or 'index'}.{contribution.method.lower()}",
                tags=[f"plugin:{contribution.plugin}"],
                dependencies=dependencies,
            )
        mounted = list(self._routes)
        self._materialized.append((router, mounted))
        logger.info("Materialized %d plugin route(s)", len(mounted))
        return mounted

    # ── Admin pages ───────────────────────────────────────────────────────────

    def register_admin_page(
        self,
        plugin: str,
        slug: str = "settings",
        title: str | None = None,
        menu_title: str | None = None,
        icon: str = "puzzle",
        position: int = 100,
        parent: str | None = None,
        capability: str = "administrator",
    ) -> AdminPage:
        self._ensure_open()
        relative = normalise_route_path(plugin, slug)
        if not relative:
            raise InvalidRouteError(plugin, slug, "admin page slug is empty")
        page = AdminPage(
            plugin=plugin,
            slug=relative,
            title=title or f"{plugin.replace('_', ' ').title()} Settings",
            menu_title=menu_title or plugin.replace("_", " ").title(),
            path=f"{self.namespace(plugin, RouteScope.ADMIN)}/{relative}",
            icon=icon,
            position=position,
            parent=parent,
            capability=capability,
            sequence=next(self._sequence),
        )
        self._pages.append(page)
        logger.debug("Admin page registered: %s", page.path)
        return page

    def admin_pages(self, plugin: str | None = None) -> list[AdminPage]:
        pages = [p for p in self._pages if plugin is None or p.plugin == plugin]
        return sorted(pages, key=lambda p: (p.position, p.sequence))

    # ── Assets ────────────────────────────────────────────────────────────────

    def register_asset(
        self,
        plugin: str,
        filename: str,
        audience: AssetAudience | str = AssetAudience.BOTH,
        kind: AssetKind | str | None = None,
        priority: int = 10,
    ) -> AssetContribution:
        self._ensure_open()
        relative = normalise_route_path(plugin, filename)
        if not relative:
            raise InvalidRouteError(plugin, filename, "asset filename is empty")
        if kind is None:
            kind = infer_asset_kind(relative)
        asset = AssetContribution(
            plugin=plugin,
            filename=relative,
            kind=AssetKind(kind),
            url=f"{self.namespace(plugin, RouteScope.FRONTEND)}/assets/{relative}",
            audience=AssetAudience(audience),
            priority=priority,
            sequence=next(self._sequence),
        )
        self._assets.append(asset)
        logger.debug("Asset registered: %s (%s, %s)", asset.url, asset.kind.value, asset.audience.value)
        return asset

    def assets_for(
        self,
        audience: AssetAudience | str,
        kind: AssetKind | str | None = None,
        is_active: Callable[[str], bool] | None = None,
    ) -> list[AssetContribution]:
        """
        Ordered asset list for one audience.

        The admin and frontend views include assets targeted at both; asking
        for BOTH returns only assets explicitly targeted at both.
        """
        audience = AssetAudience(audience)
        wanted = {audience, AssetAudience.BOTH}
        selected = [
            a
            for a in self._assets
            if a.audience in wanted
            and (kind is None or a.kind is AssetKind(kind))
            and (is_active is None or is_active(a.plugin))
        ]
        return sorted(selected, key=lambda a: (a.priority, a.sequence))
