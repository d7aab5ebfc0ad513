"""
Plugin Setup Context Tests

Test classes:
    TestEagerValidation — mistakes surface inside setup, at the offending call
    TestCommit          — buffered registrations reach the shared components
    TestTablesAndMigrations
    TestClosedAfterCommit — a committed context accepts nothing more
"""

from __future__ import annotations

import pytest
from sqlalchemy import Column, Integer, String

from cms_core.exceptions import (
    DuplicateIdentifierError,
    InvalidRouteError,
    InvalidScheduleError,
    RegistrationClosedError,
)
from cms_core.plugins.context import PluginContext
from cms_core.plugins.hook_bus import HookKind


def handler():
    return {}


# ══════════════════════════════════════════════════════════════════════════════
# 1. TestEagerValidation
# ══════════════════════════════════════════════════════════════════════════════


class TestEagerValidation:
    def test_route_errors_raise_at_registration(self):
        ctx = PluginContext("seo")
        with pytest.raises(InvalidRouteError):
            ctx.register_admin_routes([("../escape", "GET", handler)])
        with pytest.raises(InvalidRouteError):
            ctx.register_frontend_routes([("items", "BREW", handler)])
        assert ctx.pending == 0

    def test_bad_cron_and_duplicate_task(self):
        ctx = PluginContext("social")
        with pytest.raises(InvalidScheduleError):
            ctx.schedule_recurring("refresh", "every half hour", handler)
        ctx.schedule_recurring("refresh", "*/30 * * * *", handler)
        with pytest.raises(DuplicateIdentifierError):
            ctx.schedule_recurring("refresh", "0 * * * *", handler)

    def test_webhook_url_checked(self):
        with pytest.raises(ValueError):
            PluginContext("social").register_webhook("content.published", "mailto:ops@example.com")

    def test_block_checks(self):
        ctx = PluginContext("seo")
        with pytest.raises(ValueError):
            ctx.register_block("panel")
        with pytest.raises(ValueError):
            ctx.register_block("panel", render="x.html", locations=["attic"])
        with pytest.raises(ValueError):
            ctx.register_block("panel", render="x.html", position="upside_down")
        ctx.register_block("panel", render="x.html")
        with pytest.raises(DuplicateIdentifierError):
            ctx.register_block("panel", render="y.html")

    def test_asset_kind_inferred_eagerly(self):
        with pytest.raises(ValueError):
            PluginContext("seo").register_asset("readme.txt")

    def test_non_callable_hook_rejected(self):
        with pytest.raises(TypeError):
            PluginContext("seo").on("post.saved", None)

    def test_hook_names_limited_to_host_set(self):
        ctx = PluginContext("seo")
        with pytest.raises(ValueError):
            ctx.on("post.teleported", handler)
        with pytest.raises(ValueError):
            ctx.add_filter("post.saved", lambda v, c: v)
        with pytest.raises(ValueError):
            ctx.register_webhook("seo.whenever", "https://hooks.test/seo")
        ctx.on("social.before_uninstall", handler)
        ctx.add_filter("page.head", lambda v, c: v)
        assert ctx.pending == 2


# ══════════════════════════════════════════════════════════════════════════════
# 2. TestCommit
# ══════════════════════════════════════════════════════════════════════════════


class TestCommit:
    def test_commit_applies_every_registration(self, registry, job_queue):
        ctx = PluginContext("seo", default_priority=7)
        ctx.on("post.saved", handler)
        ctx.add_filter("content.title", lambda v, c: v, priority=3)
        ctx.define_field("api_key", required=True)
        ctx.register_admin_routes([("status", "GET", handler)])

        @ctx.frontend_route("sitemap.xml")
        def sitemap():
            return ""

        ctx.register_admin_page()
        ctx.register_asset("css/seo.css", audience="frontend")
        ctx.schedule_recurring("ping", "0 * * * *", handler)
        ctx.register_webhook("content.published", "https://hooks.test/seo")
        ctx.register_block("panel", render="seo/panel.html")

        assert ctx.commit(registry) == 9

        (action,) = [r for r in registry.hook_bus.registrations("post.saved") if r.plugin == "seo"]
        assert action.priority == 7
        assert registry.hook_bus.registrations("content.title", HookKind.FILTER)[0].priority == 3
        assert registry.settings_engine.schema_for("seo").field("api_key").required
        assert [r.absolute_path for r in registry.routes.routes("seo")] == [
            "/admin/seo/status",
            "/plugins/seo/sitemap.xml",
        ]
        assert registry.routes.admin_pages("seo")[0].path == "/admin/seo/settings"
        assert "seo:ping" in job_queue.jobs
        assert registry.webhooks.webhooks("seo")[0].url == "https://hooks.test/seo"
        assert registry.blocks.get("seo", "panel") is not None

    def test_uncommitted_context_leaves_components_untouched(self, registry):
        ctx = PluginContext("seo")
        ctx.on("post.saved", handler)
        ctx.register_admin_routes([("status", "GET", handler)])

        assert registry.hook_bus.registrations("post.saved") == ()
        assert registry.routes.routes() == []

    def test_commit_is_single_use(self, registry):
        ctx = PluginContext("seo")
        ctx.commit(registry)
        with pytest.raises(RegistrationClosedError):
            ctx.commit(registry)
        with pytest.raises(RegistrationClosedError):
            ctx.on("post.saved", handler)


# ══════════════════════════════════════════════════════════════════════════════
# 3. TestTablesAndMigrations
# ══════════════════════════════════════════════════════════════════════════════


class TestTablesAndMigrations:
    def test_tables_are_prefixed_with_identifier(self):
        ctx = PluginContext("social")
        table = ctx.table("shares", Column("id", Integer, primary_key=True), Column("url", String(500)))
        assert table.name == "social_shares"
        assert "social_shares" in ctx.metadata.tables

    def test_migration_resolves_table_names(self):
        ctx = PluginContext("social")
        table = ctx.table("shares", Column("id", Integer, primary_key=True))
        migration = ctx.add_migration(1, tables=["shares"])
        assert migration.tables == (table,)
        assert ctx.schema_version == 1

    def test_migration_versions_validated(self):
        ctx = PluginContext("social")
        ctx.add_migration(1, upgrade=lambda conn: None)
        with pytest.raises(DuplicateIdentifierError):
            ctx.add_migration(1, upgrade=lambda conn: None)
        with pytest.raises(ValueError):
            ctx.add_migration(0, upgrade=lambda conn: None)
        with pytest.raises(ValueError):
            ctx.add_migration(2)
        assert ctx.schema_version == 1


# ══════════════════════════════════════════════════════════════════════════════
# 4. TestClosedAfterCommit
# ══════════════════════════════════════════════════════════════════════════════


class TestClosedAfterCommit:
    def test_webhook_registration_reaches_dispatcher(self, registry):
        ctx = PluginContext("social")
        ctx.register_webhook("content.published", "https://hooks.test/in", method="put", secret="s3cret", timeout=5)

        assert ctx.commit(registry) == 1
        (webhook,) = registry.webhooks.webhooks("social")
        assert webhook.method == "PUT"
        assert webhook.timeout == 5
        assert [r.plugin for r in registry.hook_bus.registrations("content.published")] == ["social"]

    def test_settings_tables_and_migrations_closed(self, registry):
        ctx = PluginContext("seo")
        ctx.define_field("api_key")
        ctx.commit(registry)

        with pytest.raises(RegistrationClosedError):
            ctx.define_field("late")
        with pytest.raises(RegistrationClosedError):
            ctx.section("Late")
        with pytest.raises(RegistrationClosedError):
            ctx.table("late", Column("id", Integer, primary_key=True))
        with pytest.raises(RegistrationClosedError):
            ctx.add_migration(1, upgrade=lambda conn: None)

        assert registry.settings_engine.schema_for("seo").field("late") is None
        assert "seo_late" not in ctx.metadata.tables
        assert ctx.migrations == []
