"""
SEO Plugin

Bundled example plugin exercising the runtime:
  - settings   api_key (required), json_ld_enabled, sitemap_changefreq
  - hooks      post.saved, content.published/updated/deleted, page.head filter
  - routes     GET /admin/seo/status
  - UI         "SEO" sidebar block on posts and pages, admin settings page, admin script

It carries no SEO logic of its own; hook handlers only record and log the
sitemap invalidation signal.
"""

from __future__ import annotations

import logging
from html import escape
from typing import Any

from cms_core.plugins.base import PluginBase, PluginDescriptor
from cms_core.plugins.context import PluginContext
from cms_core.plugins.hooks import (
    FILTER_PAGE_HEAD,
    HOOK_CONTENT_DELETED,
    HOOK_CONTENT_PUBLISHED,
    HOOK_CONTENT_UPDATED,
    HOOK_POST_SAVED,
)

logger = logging.getLogger(__name__)

_DESCRIPTOR = PluginDescriptor(
    identifier="seo",
    name="SEO",
    version="1.0.0",
    description="Sitemap invalidation signals, JSON-LD toggle and an SEO panel for the editor",
    license="MIT",
)


class SEOPlugin(PluginBase):
    """SEO example plugin."""

    def __init__(self) -> None:
        self.saved_posts: list[Any] = []
        self.invalidations = 0

    @property
    def descriptor(self) -> PluginDescriptor:
        return _DESCRIPTOR

    def setup(self, ctx: PluginContext) -> None:
        ctx.section("API", "Credentials for the SEO analysis service")
        ctx.define_field("api_key", "string", "API key", section="API", required=True, placeholder="sk-...")
        ctx.section("Output")
        ctx.define_field("json_ld_enabled", "boolean", "Emit JSON-LD", section="Output", default=True)
        ctx.define_field(
            "sitemap_changefreq",
            "select",
            "Sitemap change frequency",
            section="Output",
            default="weekly",
            choices=["daily", "weekly", "monthly"],
        )

        ctx.on(HOOK_POST_SAVED, self.on_post_saved)
        for hook in (HOOK_CONTENT_PUBLISHED, HOOK_CONTENT_UPDATED, HOOK_CONTENT_DELETED):
            ctx.on(hook, self.invalidate_sitemap)
        ctx.add_filter(FILTER_PAGE_HEAD, self.add_meta_tags)

        ctx.register_admin_routes([("status", "GET", self.status, "status")])
        ctx.register_admin_page("settings", "SEO Settings", menu_title="SEO", icon="search")
        ctx.register_asset("js/seo-admin.js", audience="admin")
        ctx.register_block(
            "panel",
            label="SEO",
            locations=("post", "page"),
            position="sidebar",
            order=20,
            render="seo/panel.html",
            capability="edit_posts",
            icon="search",
        )

    async def on_post_saved(self, payload: dict[str, Any] | None) -> None:
        post_id = (payload or {}).get("id")
        self.saved_posts.append(post_id)
        logger.debug("SEOPlugin: post.saved (id=%s)", post_id)

    async def invalidate_sitemap(self, payload: dict[str, Any] | None) -> None:
        self.invalidations += 1
        logger.debug("SEOPlugin: sitemap cache invalidation signalled (content_id=%s)", (payload or {}).get("content_id"))

    async def add_meta_tags(self, head: str, context: Any) -> str:
        if self.settings is None or not await self.settings.enabled("json_ld_enabled"):
            return head
        title = (context or {}).get("title") if isinstance(context, dict) else None
        if not title:
            return head
        return f'{head}<meta property="og:title" content="{escape(title)}">'

    async def status(self) -> dict[str, Any]:
        configured = bool(self.settings and await self.settings.get("api_key"))
        return {
            "plugin": self.identifier,
            "configured": configured,
            "saved_posts": len(self.saved_posts),
            "sitemap_invalidations": self.invalidations,
        }
