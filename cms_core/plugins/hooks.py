"""
Plugin Hook Names

Centralised list of host-defined hook names that plugins can subscribe to.
Hook names follow the `category.action` convention.

Per-plugin lifecycle actions are namespaced by the plugin identifier,
e.g. "seo.activated"; build them with `plugin_hook()`.
"""

from __future__ import annotations

import re

# ── Content lifecycle actions ─────────────────────────────────────────────────
HOOK_CONTENT_CREATED = "content.created"
HOOK_CONTENT_UPDATED = "content.updated"
HOOK_CONTENT_DELETED = "content.deleted"
HOOK_CONTENT_PUBLISHED = "content.published"
HOOK_CONTENT_UNPUBLISHED = "content.unpublished"
HOOK_POST_SAVED = "post.saved"

# ── Comment actions ───────────────────────────────────────────────────────────
HOOK_COMMENT_CREATED = "comment.created"
HOOK_COMMENT_APPROVED = "comment.approved"

# ── User actions ──────────────────────────────────────────────────────────────
HOOK_USER_REGISTERED = "user.registered"
HOOK_USER_UPDATED = "user.updated"
HOOK_USER_DELETED = "user.deleted"

# ── Media actions ─────────────────────────────────────────────────────────────
HOOK_MEDIA_UPLOADED = "media.uploaded"

# ── Filters ───────────────────────────────────────────────────────────────────
FILTER_CONTENT_BODY = "content.body"
FILTER_CONTENT_TITLE = "content.title"
FILTER_PAGE_HEAD = "page.head"

# ── Per-plugin lifecycle suffixes ─────────────────────────────────────────────
ACTIVATED = "activated"
DEACTIVATED = "deactivated"
BEFORE_UNINSTALL = "before_uninstall"
WEBHOOK_FAILED = "webhook_failed"

LIFECYCLE_EVENTS: tuple[str, ...] = (ACTIVATED, DEACTIVATED, BEFORE_UNINSTALL, WEBHOOK_FAILED)

# ── Master lists ──────────────────────────────────────────────────────────────
ALL_ACTIONS: list[str] = [
    HOOK_CONTENT_CREATED,
    HOOK_CONTENT_UPDATED,
    HOOK_CONTENT_DELETED,
    HOOK_CONTENT_PUBLISHED,
    HOOK_CONTENT_UNPUBLISHED,
    HOOK_POST_SAVED,
    HOOK_COMMENT_CREATED,
    HOOK_COMMENT_APPROVED,
    HOOK_USER_REGISTERED,
    HOOK_USER_UPDATED,
    HOOK_USER_DELETED,
    HOOK_MEDIA_UPLOADED,
]

ALL_FILTERS: list[str] = [
    FILTER_CONTENT_BODY,
    FILTER_CONTENT_TITLE,
    FILTER_PAGE_HEAD,
]


_LIFECYCLE_NAME = re.compile(r"^[a-z][a-z0-9_]*\.(" + "|".join(LIFECYCLE_EVENTS) + r")$")


def plugin_hook(identifier: str, event: str) -> str:
    """Return the namespaced lifecycle action name, e.g. ("seo", "activated") -> "seo.activated"."""
    return f"{identifier}.{event}"


def lifecycle_owner(name: str) -> str | None:
    """Return the plugin a lifecycle action belongs to, e.g. "seo.activated" -> "seo"."""
    if _LIFECYCLE_NAME.match(name):
        return name.split(".", 1)[0]
    return None


def is_known_action(name: str) -> bool:
    return name in ALL_ACTIONS or lifecycle_owner(name) is not None


def is_known_filter(name: str) -> bool:
    return name in ALL_FILTERS
