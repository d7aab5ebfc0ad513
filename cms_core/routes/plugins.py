"""
Plugin Administration Routes

Every route requires the X-Admin-Token header when an admin token is
configured.

GET    /api/v1/plugins                       → list registered plugins
GET    /api/v1/plugins/blocks/{location}     → UI blocks selected for an editor surface
GET    /api/v1/plugins/assets/{audience}     → ordered asset list
GET    /api/v1/plugins/{identifier}          → single plugin
POST   /api/v1/plugins/{identifier}/activate   → activate (runs pending migrations)
POST   /api/v1/plugins/{identifier}/deactivate → deactivate
DELETE /api/v1/plugins/{identifier}          → uninstall
GET    /api/v1/plugins/{identifier}/settings → settings form generated from the schema
PUT    /api/v1/plugins/{identifier}/settings → validate and store settings (all or nothing)
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from cms_core.config import settings
from cms_core.plugins.blocks import BlockLocation, BlockPosition
from cms_core.plugins.registry import PluginRegistry
from cms_core.plugins.routes import AssetAudience

router = APIRouter(tags=["Plugins"])
logger = logging.getLogger(__name__)


# ── Pydantic schemas ───────────────────────────────────────────────────────────


class PluginResponse(BaseModel):
    identifier: str
    name: str
    version: str
    description: str
    author: str
    license: str | None = None
    url: str | None = None
    state: str
    active: bool
    schema_version: int
    last_error: str | None = None


class UninstallResponse(BaseModel):
    identifier: str
    state: str


class SettingsUpdate(BaseModel):
    values: dict[str, Any]


class BlockResponse(BaseModel):
    id: str
    plugin: str
    key: str
    label: str
    description: str
    icon: str | None = None
    locations: list[str]
    position: str
    order: int
    template: str | None = None


class AssetResponse(BaseModel):
    plugin: str
    filename: str
    kind: str
    url: str
    audience: str
    priority: int


# ── Dependencies ───────────────────────────────────────────────────────────────


def get_registry(request: Request) -> PluginRegistry:
    registry = getattr(request.app.state, "plugin_registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Plugin registry is not initialised",
        )
    return registry


def require_admin(request: Request, x_admin_token: str | None = Header(default=None)) -> None:
    """Check X-Admin-Token against the configured token; open when none is configured."""
    expected = getattr(request.app.state, "admin_token", settings.admin_token)
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid admin token",
        )


# ── Helpers ────────────────────────────────────────────────────────────────────


async def _build_response(registry: PluginRegistry, identifier: str) -> PluginResponse:
    plugin = registry.get(identifier)
    descriptor = plugin.descriptor
    record = await registry.store.get(identifier)
    state = registry.state(identifier)
    return PluginResponse(
        identifier=descriptor.identifier,
        name=descriptor.name,
        version=descriptor.version,
        description=descriptor.description,
        author=descriptor.author,
        license=descriptor.license,
        url=descriptor.url,
        state=state.value,
        active=registry.is_active(identifier),
        schema_version=(record.schema_version or 0) if record is not None else 0,
        last_error=registry.errors().get(identifier) or (record.last_error if record is not None else None),
    )


# ── Routes ─────────────────────────────────────────────────────────────────────


@router.get("/", response_model=list[PluginResponse])
async def list_plugins(registry: PluginRegistry = Depends(get_registry)) -> list[PluginResponse]:
    """List all registered plugins with their lifecycle state."""
    return [await _build_response(registry, p.descriptor.identifier) for p in registry.all_plugins()]


@router.get("/blocks/{location}", response_model=list[BlockResponse])
async def list_blocks(
    location: BlockLocation,
    request: Request,
    position: BlockPosition | None = None,
    registry: PluginRegistry = Depends(get_registry),
) -> list[BlockResponse]:
    """
    Blocks to draw on an editor surface.

    Query parameters other than `position` are passed to the blocks'
    visibility predicates as the render context.
    """
    context = {key: value for key, value in request.query_params.items() if key != "position"}
    return [BlockResponse(**block.to_dict()) for block in registry.blocks.blocks_for(location, context, position)]


@router.get("/assets/{audience}", response_model=list[AssetResponse])
async def list_assets(
    audience: AssetAudience,
    registry: PluginRegistry = Depends(get_registry),
) -> list[AssetResponse]:
    """Assets of active plugins for one audience, in include order."""
    return [
        AssetResponse(
            plugin=asset.plugin,
            filename=asset.filename,
            kind=asset.kind.value,
            url=asset.url,
            audience=asset.audience.value,
            priority=asset.priority,
        )
        for asset in registry.assets_for(audience)
    ]


@router.get("/{identifier}", response_model=PluginResponse)
async def get_plugin(identifier: str, registry: PluginRegistry = Depends(get_registry)) -> PluginResponse:
    """Get a single plugin by identifier."""
    return await _build_response(registry, identifier)


@router.post("/{identifier}/activate", response_model=PluginResponse)
async def activate_plugin(identifier: str, registry: PluginRegistry = Depends(get_registry)) -> PluginResponse:
    """Activate a plugin; a no-op when it is already active."""
    await registry.activate(identifier)
    return await _build_response(registry, identifier)


@router.post("/{identifier}/deactivate", response_model=PluginResponse)
async def deactivate_plugin(identifier: str, registry: PluginRegistry = Depends(get_registry)) -> PluginResponse:
    """Deactivate a plugin; a no-op when it is not active."""
    await registry.deactivate(identifier)
    return await _build_response(registry, identifier)


@router.delete("/{identifier}", response_model=UninstallResponse)
async def uninstall_plugin(identifier: str, registry: PluginRegistry = Depends(get_registry)) -> UninstallResponse:
    """Uninstall a plugin: drops its tables, jobs, settings and record."""
    state = await registry.uninstall(identifier)
    logger.info("Plugin uninstalled via admin API: %s", identifier)
    return UninstallResponse(identifier=identifier, state=state.value)


@router.get("/{identifier}/settings")
async def get_plugin_settings(identifier: str, registry: PluginRegistry = Depends(get_registry)) -> dict[str, Any]:
    """Settings form (sections, fields, current values) generated from the plugin's schema."""
    registry.get(identifier)
    return await registry.settings_engine.form(identifier)


@router.put("/{identifier}/settings")
async def update_plugin_settings(
    identifier: str,
    payload: SettingsUpdate,
    registry: PluginRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Validate and store settings. Nothing is written unless every value is valid."""
    registry.get(identifier)
    await registry.settings_engine.set_values(identifier, payload.values)
    return await registry.settings_engine.form(identifier)
