"""
Social Plugin

Bundled example plugin exercising the runtime:
  - settings   auto_post_enabled, default_platform, share_base_url
  - hooks      content.published action, content.body filter (share links)
  - tasks      social:refresh_share_counts every 30 minutes
               plus a one-off refresh after each publish when auto-post is on
  - webhooks   optional auto-post endpoint for content.published
  - tables     social_shares (v1)
  - routes     GET /plugins/social/share-links

Posting to real networks is out of scope; the webhook stands in for it.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from sqlalchemy import Column, DateTime, Integer, String, func

from cms_core.plugins.base import PluginBase, PluginDescriptor
from cms_core.plugins.context import PluginContext
from cms_core.plugins.hooks import FILTER_CONTENT_BODY, HOOK_CONTENT_PUBLISHED, WEBHOOK_FAILED, plugin_hook

logger = logging.getLogger(__name__)

PLATFORMS = {
    "twitter": "https://twitter.com/intent/tweet?url={url}",
    "facebook": "https://www.facebook.com/sharer/sharer.php?u={url}",
    "linkedin": "https://www.linkedin.com/sharing/share-offsite/?url={url}",
}

_DESCRIPTOR = PluginDescriptor(
    identifier="social",
    name="Social Sharing",
    version="1.0.0",
    description="Share links for published content and an optional auto-post webhook",
    license="MIT",
)


class SocialPlugin(PluginBase):
    """
    Social sharing example plugin.

    Args:
        auto_post_url: Endpoint notified on content.published; no webhook is
                       registered when omitted.
    """

    def __init__(self, auto_post_url: str | None = None) -> None:
        self.auto_post_url = auto_post_url
        self.published: list[Any] = []
        self.failed_deliveries: list[dict[str, Any]] = []
        self.refreshes = 0

    @property
    def descriptor(self) -> PluginDescriptor:
        return _DESCRIPTOR

    def setup(self, ctx: PluginContext) -> None:
        ctx.define_field("auto_post_enabled", "boolean", "Auto-post on publish", default=False)
        ctx.define_field(
            "default_platform",
            "select",
            "Default platform",
            default="twitter",
            choices=[(key, key.title()) for key in PLATFORMS],
        )
        ctx.define_field(
            "share_base_url",
            "url",
            "Public site URL",
            description="Prefix for links in generated share URLs",
            placeholder="https://example.com",
        )

        ctx.on(HOOK_CONTENT_PUBLISHED, self.on_content_published)
        ctx.on(plugin_hook(self.identifier, WEBHOOK_FAILED), self.on_webhook_failed)
        ctx.add_filter(FILTER_CONTENT_BODY, self.append_share_links, priority=50)

        ctx.schedule_recurring("refresh_share_counts", "*/30 * * * *", self.refresh_share_counts)
        if self.auto_post_url:
            ctx.register_webhook(HOOK_CONTENT_PUBLISHED, self.auto_post_url)

        shares = ctx.table(
            "shares",
            Column("id", Integer, primary_key=True),
            Column("content_id", Integer, nullable=False, index=True),
            Column("platform", String(20), nullable=False),
            Column("created_at", DateTime(timezone=True), server_default=func.now()),
        )
        ctx.add_migration(1, tables=[shares], description="create social_shares")

        ctx.register_frontend_routes([("share-links", "GET", self.share_links, "share_links")])

    async def on_content_published(self, payload: dict[str, Any] | None) -> None:
        content_id = (payload or {}).get("content_id")
        self.published.append(content_id)
        logger.debug("SocialPlugin: content.published (content_id=%s)", content_id)
        if self.runtime is not None and await self.settings.enabled("auto_post_enabled"):
            self.runtime.enqueue("refresh_after_publish", self.refresh_share_counts)

    async def on_webhook_failed(self, payload: dict[str, Any]) -> None:
        self.failed_deliveries.append(payload)
        logger.warning("SocialPlugin: auto-post failed after %s attempt(s): %s", payload["attempts"], payload["error"])

    def refresh_share_counts(self) -> None:
        self.refreshes += 1
        logger.debug("SocialPlugin: share counts refreshed")

    async def append_share_links(self, body: str, context: Any) -> str:
        url = (context or {}).get("url") if isinstance(context, dict) else None
        if not url:
            return body
        links = " ".join(
            f'<a class="share-{name}" href="{template.format(url=quote(url, safe=""))}">{name.title()}</a>'
            for name, template in PLATFORMS.items()
        )
        return f'{body}<div class="share-links">{links}</div>'

    async def share_links(self, url: str) -> dict[str, str]:
        return {name: template.format(url=quote(url, safe="")) for name, template in PLATFORMS.items()}
