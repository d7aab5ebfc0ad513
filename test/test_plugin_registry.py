"""
Plugin Registry & Lifecycle Tests

Test classes:
    TestRegistration     — duplicates, freezing, lookup
    TestBoot             — setup isolation, boot-time activation
    TestActivation       — migrations, idempotence, task resumption, failures
    TestDeactivation     — hook gating, task suspension, callback failures
    TestUninstall        — two-phase removal and its failure modes
    TestEndToEnd         — bundled plugins driven through the whole runtime
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from utils.mocks import SimplePlugin

from cms_core.exceptions import (
    DuplicateIdentifierError,
    MigrationFailureError,
    PluginActivationError,
    PluginError,
    PluginNotFoundError,
    PluginStateError,
    RegistrationClosedError,
    ValidationError,
)
from cms_core.plugins.registry import PluginRegistry, PluginState
from cms_core.plugins.seo_plugin import SEOPlugin
from cms_core.plugins.social_plugin import SocialPlugin


async def boot(registry, *plugins):
    return await registry.load_all([list(plugins)])


# ══════════════════════════════════════════════════════════════════════════════
# 1. TestRegistration
# ══════════════════════════════════════════════════════════════════════════════


class TestRegistration:
    def test_duplicate_identifier_rejected(self, registry):
        registry.register(SimplePlugin("seo"))
        with pytest.raises(DuplicateIdentifierError):
            registry.register(SimplePlugin("seo", version="2.0.0"))
        assert len(registry) == 1

    def test_lookup_of_unknown_plugin(self, registry):
        assert registry.state("ghost") is PluginState.UNREGISTERED
        assert "ghost" not in registry
        with pytest.raises(PluginNotFoundError):
            registry.get("ghost")
        with pytest.raises(PluginNotFoundError):
            registry.is_active("ghost")

    async def test_registration_closes_after_boot(self, registry):
        await boot(registry, SimplePlugin("seo"))
        assert registry.frozen
        with pytest.raises(RegistrationClosedError):
            registry.register(SimplePlugin("late"))
        with pytest.raises(RegistrationClosedError):
            registry.hook_bus.on("post.saved", print)

    def test_invalid_identifier_rejected_by_descriptor(self):
        with pytest.raises(ValueError):
            SimplePlugin("Not-A-Slug")

    async def test_duplicate_from_second_source_is_skipped(self, registry, caplog):
        first = SimplePlugin("seo")
        await registry.load_all([[first], [SimplePlugin("seo")]])
        assert registry.get("seo") is first
        assert "duplicate" in caplog.text.lower()

    async def test_load_all_after_boot_only_reports_active(self, registry, caplog):
        seo = SimplePlugin("seo")
        await boot(registry, seo)
        await registry.activate("seo")

        assert await registry.load_all([[SimplePlugin("late")]]) == [seo]
        assert "late" not in registry
        assert "ignoring load_all" in caplog.text


# ══════════════════════════════════════════════════════════════════════════════
# 2. TestBoot
# ══════════════════════════════════════════════════════════════════════════════


class TestBoot:
    async def test_failing_setup_is_isolated_and_leaves_nothing_behind(self, registry, store):
        def half_setup(ctx):
            ctx.on("post.saved", print)
            ctx.register_admin_routes([("items", "GET", print)])
            raise RuntimeError("half way")

        broken = SimplePlugin("broken", setup=half_setup)
        fine = SimplePlugin("fine", setup=lambda ctx: ctx.on("post.saved", print))
        await boot(registry, broken, fine)

        assert registry.state("broken") is PluginState.ERRORED
        assert registry.state("fine") is PluginState.INACTIVE
        assert "half way" in registry.errors()["broken"]
        assert "half way" in (await store.get("broken")).last_error
        assert [r.plugin for r in registry.hook_bus.registrations("post.saved")] == ["fine"]
        assert registry.routes.routes() == []

    async def test_plugin_with_failed_setup_cannot_activate(self, registry):
        await boot(registry, SimplePlugin("broken", fail_on=("setup",)))
        with pytest.raises(PluginStateError):
            await registry.activate("broken")

    async def test_records_marked_active_are_activated_at_boot(self, registry, store):
        await store.ensure("seo")
        await store.update("seo", active=True)
        seo, other = SimplePlugin("seo"), SimplePlugin("other")

        active = await boot(registry, seo, other)

        assert active == [seo]
        assert registry.is_active("seo")
        assert registry.state("other") is PluginState.INACTIVE
        assert seo.calls == ["setup", "on_activate"]

    async def test_boot_activation_failure_does_not_stop_others(self, registry, store):
        for identifier in ("flaky", "steady"):
            await store.ensure(identifier)
            await store.update(identifier, active=True)

        await boot(registry, SimplePlugin("flaky", fail_on=("on_activate",)), SimplePlugin("steady"))

        assert registry.state("flaky") is PluginState.ERRORED
        assert registry.state("steady") is PluginState.ACTIVE

    async def test_settings_bound_after_setup(self, registry):
        plugin = SimplePlugin("seo", setup=lambda ctx: ctx.define_field("limit", "number", default=3))
        await boot(registry, plugin)
        assert await plugin.settings.get("limit") == 3

    async def test_runtime_bound_after_setup(self, registry):
        plugin = SimplePlugin("seo")
        broken = SimplePlugin("broken", fail_on=("setup",))
        await boot(registry, plugin, broken)
        assert plugin.runtime.identifier == "seo"
        assert plugin.runtime.active is False
        assert broken.runtime is None

    async def test_schema_is_immutable_after_boot(self, registry):
        captured = []

        def setup(ctx):
            ctx.define_field("api_key")
            captured.append(ctx)

        await boot(registry, SimplePlugin("seo", setup=setup))
        (ctx,) = captured

        with pytest.raises(RegistrationClosedError):
            ctx.define_field("late", "string")
        with pytest.raises(RegistrationClosedError):
            registry.settings_engine.schema_for("seo").define_field("late")
        assert registry.settings_engine.schema_for("seo").field("late") is None


# ══════════════════════════════════════════════════════════════════════════════
# 3. TestActivation
# ══════════════════════════════════════════════════════════════════════════════


class TestActivation:
    async def test_activate_runs_migrations_and_records_version(self, registry, store, migration_runner):
        await boot(registry, SocialPlugin())

        assert await registry.activate("social") is PluginState.ACTIVE
        record = await store.get("social")
        assert record.active is True
        assert record.schema_version == 1
        assert migration_runner.applied == [("social", 1)]

    async def test_activate_is_idempotent(self, registry, migration_runner):
        plugin = SocialPlugin()
        await boot(registry, plugin)
        await registry.activate("social")
        await registry.activate("social")
        assert migration_runner.applied == [("social", 1)]

    async def test_concurrent_activations_serialize(self, registry, migration_runner):
        plugin = SimplePlugin("seo")
        await boot(registry, plugin)
        await asyncio.gather(registry.activate("seo"), registry.activate("seo"))
        assert plugin.calls.count("on_activate") == 1

    async def test_reactivation_does_not_rerun_migrations(self, registry, migration_runner):
        await boot(registry, SocialPlugin())
        await registry.activate("social")
        await registry.deactivate("social")
        await registry.activate("social")
        assert migration_runner.applied == [("social", 1)]

    async def test_tasks_resume_on_activation(self, registry, job_queue):
        await boot(registry, SocialPlugin())
        assert job_queue.jobs["social:refresh_share_counts"]["paused"] is True
        await registry.activate("social")
        assert job_queue.jobs["social:refresh_share_counts"]["paused"] is False

    async def test_on_activate_failure_marks_errored(self, registry, store, job_queue):
        def setup(ctx):
            ctx.schedule_recurring("tick", "* * * * *", print)

        await boot(registry, SimplePlugin("flaky", setup=setup, fail_on=("on_activate",)))

        with pytest.raises(PluginActivationError) as exc:
            await registry.activate("flaky")
        assert exc.value.identifier == "flaky"
        assert registry.state("flaky") is PluginState.ERRORED
        record = await store.get("flaky")
        assert record.active is False
        assert "on_activate exploded" in record.last_error
        assert job_queue.jobs["flaky:tick"]["paused"] is True

    async def test_unmet_requirements_block_activation(self, registry, store, migration_runner):
        plugin = SimplePlugin("needy", setup=lambda ctx: ctx.add_migration(1, upgrade=print))
        plugin.missing = ["image library not installed"]
        await boot(registry, plugin)

        with pytest.raises(PluginActivationError) as exc:
            await registry.activate("needy")
        assert "image library not installed" in exc.value.message
        assert registry.state("needy") is PluginState.ERRORED
        assert "on_activate" not in plugin.calls
        assert migration_runner.applied == []
        assert "image library not installed" in (await store.get("needy")).last_error

        plugin.missing.clear()
        assert await registry.activate("needy") is PluginState.ACTIVE

    async def test_migration_failure_is_recoverable(self, registry, store, migration_runner):
        await boot(registry, SocialPlugin())
        migration_runner.fail_migrate = True

        with pytest.raises(MigrationFailureError) as exc:
            await registry.activate("social")
        assert exc.value.version == 1
        assert registry.state("social") is PluginState.ERRORED
        assert (await store.get("social")).schema_version == 0

        migration_runner.fail_migrate = False
        await registry.activate("social")
        assert registry.is_active("social")
        assert (await store.get("social")).last_error is None

    async def test_pending_migrations_without_runner_fail(self, store, job_queue):
        from cms_core.scheduler import TaskScheduler

        registry = PluginRegistry(store=store, scheduler=TaskScheduler(job_queue))
        await boot(registry, SocialPlugin())
        with pytest.raises(MigrationFailureError):
            await registry.activate("social")

    async def test_activated_event_fired(self, registry):
        events = []
        registry.hook_bus.on("seo.activated", events.append)
        await boot(registry, SimplePlugin("seo"))
        await registry.activate("seo")
        assert events == [{"plugin": "seo"}]


# ══════════════════════════════════════════════════════════════════════════════
# 4. TestDeactivation
# ══════════════════════════════════════════════════════════════════════════════


class TestDeactivation:
    async def test_deactivated_plugin_hooks_stop_running(self, registry):
        seo = SEOPlugin()
        await boot(registry, seo)
        await registry.activate("seo")
        await registry.hook_bus.fire("post.saved", {"id": 1})
        await registry.deactivate("seo")
        await registry.hook_bus.fire("post.saved", {"id": 2})
        assert seo.saved_posts == [1]

    async def test_tasks_suspended_and_event_fired(self, registry, job_queue):
        events = []
        registry.hook_bus.on("social.deactivated", events.append)
        await boot(registry, SocialPlugin())
        await registry.activate("social")

        assert await registry.deactivate("social") is PluginState.INACTIVE
        assert job_queue.jobs["social:refresh_share_counts"]["paused"] is True
        assert events == [{"plugin": "social"}]

    async def test_deactivate_when_inactive_is_a_no_op(self, registry):
        plugin = SimplePlugin("seo")
        await boot(registry, plugin)
        assert await registry.deactivate("seo") is PluginState.INACTIVE
        assert "on_deactivate" not in plugin.calls

    async def test_on_deactivate_failure_still_deactivates(self, registry, store):
        await boot(registry, SimplePlugin("seo", fail_on=("on_deactivate",)))
        await registry.activate("seo")
        await registry.deactivate("seo")

        assert registry.state("seo") is PluginState.INACTIVE
        record = await store.get("seo")
        assert record.active is False
        assert "on_deactivate exploded" in record.last_error

    async def test_inactive_plugin_assets_hidden(self, registry):
        await boot(registry, SEOPlugin())
        assert registry.assets_for("admin") == []
        await registry.activate("seo")
        assert [a.url for a in registry.assets_for("admin")] == ["/plugins/seo/assets/js/seo-admin.js"]


# ══════════════════════════════════════════════════════════════════════════════
# 5. TestUninstall
# ══════════════════════════════════════════════════════════════════════════════


class TestUninstall:
    async def test_uninstall_active_plugin_removes_everything(self, registry, store, job_queue, migration_runner):
        events = []
        for suffix in ("deactivated", "before_uninstall"):
            registry.hook_bus.on(f"social.{suffix}", lambda p, s=suffix: events.append(s))
        await boot(registry, SocialPlugin())
        await registry.activate("social")

        assert await registry.uninstall("social") is PluginState.UNINSTALLED
        assert events == ["deactivated", "before_uninstall"]
        assert migration_runner.dropped == ["social"]
        assert "social:refresh_share_counts" not in job_queue.jobs
        assert await store.get("social") is None

    async def test_uninstalled_plugin_cannot_be_driven_further(self, registry):
        await boot(registry, SimplePlugin("seo"))
        await registry.uninstall("seo")
        for action in (registry.activate, registry.deactivate, registry.uninstall):
            with pytest.raises(PluginStateError):
                await action("seo")

    async def test_plugin_hears_its_own_lifecycle_events(self, registry):
        events = []

        def setup(ctx):
            ctx.on("exporter.deactivated", lambda p: events.append("deactivated"))
            ctx.on("exporter.before_uninstall", lambda p: events.append("before_uninstall"))

        watcher_events = []
        watcher = SimplePlugin(
            "watcher", setup=lambda ctx: ctx.on("exporter.before_uninstall", watcher_events.append)
        )
        await boot(registry, SimplePlugin("exporter", setup=setup), watcher)
        await registry.activate("exporter")

        await registry.uninstall("exporter")
        assert events == ["deactivated", "before_uninstall"]
        assert watcher_events == []

    async def test_plugin_without_tables_skips_drop(self, registry, migration_runner):
        await boot(registry, SEOPlugin())
        await registry.uninstall("seo")
        assert migration_runner.dropped == []

    async def test_before_uninstall_failure_keeps_record(self, registry, store):
        await boot(registry, SimplePlugin("sticky", fail_on=("before_uninstall",)))

        with pytest.raises(PluginError) as exc:
            await registry.uninstall("sticky")
        assert "prepare for uninstall" in exc.value.message
        assert registry.state("sticky") is PluginState.INACTIVE
        assert "before_uninstall exploded" in (await store.get("sticky")).last_error

    async def test_drop_failure_is_retryable(self, registry, store, job_queue, migration_runner):
        await boot(registry, SocialPlugin())
        migration_runner.fail_drop = True

        with pytest.raises(MigrationFailureError):
            await registry.uninstall("social")
        assert registry.state("social") is PluginState.INACTIVE
        assert await store.get("social") is not None
        assert "social:refresh_share_counts" in job_queue.jobs

        migration_runner.fail_drop = False
        assert await registry.uninstall("social") is PluginState.UNINSTALLED


# ══════════════════════════════════════════════════════════════════════════════
# 6. TestEndToEnd
# ══════════════════════════════════════════════════════════════════════════════


class TestEndToEnd:
    async def test_seo_requires_api_key(self, registry, store):
        seo = SEOPlugin()
        await boot(registry, seo)

        with pytest.raises(ValidationError) as exc:
            await seo.settings.set("api_key", "")
        assert exc.value.field == "api_key"
        assert exc.value.reason == "required"
        assert (await store.get("seo")).settings == {}

    async def test_post_saved_reaches_active_seo_exactly_once(self, registry):
        seo = SEOPlugin()
        await boot(registry, seo)
        await registry.activate("seo")
        assert await registry.hook_bus.fire("post.saved", {"id": 42}) == 1
        assert seo.saved_posts == [42]

    async def test_priorities_order_callbacks_across_plugins(self, registry):
        order = []
        late = SimplePlugin("late", setup=lambda ctx: ctx.on("user.registered", lambda p: order.append(10), priority=10))
        early = SimplePlugin("early", setup=lambda ctx: ctx.on("user.registered", lambda p: order.append(5), priority=5))
        await boot(registry, late, early)
        await registry.activate("late")
        await registry.activate("early")

        await registry.hook_bus.fire("user.registered", {"id": 1})
        assert order == [5, 10]

    async def test_same_relative_route_in_two_plugins(self, registry):
        def items():
            return []

        first = SimplePlugin("first", setup=lambda ctx: ctx.register_admin_routes([("items", "GET", items)]))
        second = SimplePlugin("second", setup=lambda ctx: ctx.register_admin_routes([("items", "GET", items)]))
        await boot(registry, first, second)

        assert sorted(r.absolute_path for r in registry.routes.routes()) == [
            "/admin/first/items",
            "/admin/second/items",
        ]
        registry.routes.check_collisions()

    async def test_unreachable_auto_post_webhook_reports_failure_once(self, store, job_queue, migration_runner):
        from cms_core.plugins.hook_bus import HookBus
        from cms_core.scheduler import TaskScheduler
        from cms_core.services.webhook_dispatcher import WebhookDispatcher

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        delays = []

        async def sleep(delay):
            delays.append(delay)

        bus = HookBus()
        dispatcher = WebhookDispatcher(
            bus,
            client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
            sleep=sleep,
        )
        registry = PluginRegistry(
            store=store,
            hook_bus=bus,
            webhooks=dispatcher,
            scheduler=TaskScheduler(job_queue),
            migration_runner=migration_runner,
        )
        social = SocialPlugin(auto_post_url="https://unreachable.test/auto-post")
        await boot(registry, social)
        await registry.activate("social")

        await bus.fire("content.published", {"content_id": 9})
        await dispatcher.drain()

        assert social.published == [9]
        assert delays == [1.0, 2.0, 4.0]
        (failure,) = social.failed_deliveries
        assert failure["attempts"] == 4
        await registry.aclose()

    async def test_social_filter_and_task(self, registry, job_queue):
        social = SocialPlugin()
        await boot(registry, social)
        await registry.activate("social")

        body = await registry.hook_bus.apply("content.body", "<p>Hi</p>", {"url": "https://blog.test/p/1"})
        assert body.startswith("<p>Hi</p>")
        assert "share-twitter" in body
        assert "https%3A%2F%2Fblog.test%2Fp%2F1" in body

        await job_queue.run("social:refresh_share_counts")
        assert social.refreshes == 1

    async def test_publish_queues_one_off_refresh_when_auto_post_enabled(self, registry, job_queue):
        social = SocialPlugin()
        await boot(registry, social)
        await registry.activate("social")

        await registry.hook_bus.fire("content.published", {"content_id": 1})
        assert registry.scheduler.pending_jobs("social") == []

        await social.settings.set("auto_post_enabled", True)
        await registry.hook_bus.fire("content.published", {"content_id": 2})
        (job_id,) = registry.scheduler.pending_jobs("social")
        assert job_id == "social:refresh_after_publish#1"

        assert await job_queue.run(job_id) is True
        assert social.refreshes == 1

    async def test_runtime_emits_and_triggers_own_webhooks(self, store, job_queue, migration_runner):
        from cms_core.plugins.hook_bus import HookBus
        from cms_core.scheduler import TaskScheduler
        from cms_core.services.webhook_dispatcher import WebhookDispatcher

        received = []

        def accept(request):
            received.append(json.loads(request.content))
            return httpx.Response(200)

        bus = HookBus()
        dispatcher = WebhookDispatcher(bus, client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(accept)))
        registry = PluginRegistry(
            store=store,
            hook_bus=bus,
            webhooks=dispatcher,
            scheduler=TaskScheduler(job_queue),
            migration_runner=migration_runner,
        )
        seo = SEOPlugin()
        social = SocialPlugin(auto_post_url="https://hooks.test/auto-post")
        await boot(registry, seo, social)
        await registry.activate("seo")

        assert await seo.runtime.emit("post.saved", {"id": 8}) == 1
        assert seo.saved_posts == [8]

        assert seo.runtime.trigger_webhook("content.published", {"content_id": 3}) == []
        (task,) = social.runtime.trigger_webhook("content.published", {"content_id": 3})
        await dispatcher.drain()

        assert task.result() is True
        assert received[0]["plugin"] == "social"
        assert received[0]["data"] == {"content_id": 3}
        await registry.aclose()
