"""
Mock utilities for testing the plugin runtime

Provides in-memory stand-ins for:
- The APScheduler job queue
- The migration runner
- Plugins built from plain callables
"""

from typing import Any

from cms_core.exceptions import MigrationFailureError
from cms_core.plugins.base import PluginBase, PluginDescriptor


class FakeJobQueue:
    """Records jobs with the subset of the AsyncIOScheduler API the TaskScheduler uses"""

    def __init__(self):
        self.jobs: dict[str, dict[str, Any]] = {}
        self.running = False

    def add_job(self, func, trigger=None, args=None, id=None, name=None, replace_existing=False, **kwargs):
        self.jobs[id] = {
            "func": func,
            "args": list(args or []),
            "trigger": trigger,
            "name": name,
            "paused": "next_run_time" in kwargs and kwargs["next_run_time"] is None,
        }

    def pause_job(self, job_id: str):
        self.jobs[job_id]["paused"] = True

    def resume_job(self, job_id: str):
        self.jobs[job_id]["paused"] = False

    def remove_job(self, job_id: str):
        del self.jobs[job_id]

    def get_job(self, job_id: str):
        return self.jobs.get(job_id)

    async def run(self, job_id: str):
        """Run a job the way the scheduler would when its trigger fires"""
        job = self.jobs[job_id]
        return await job["func"](*job["args"])


class RecordingMigrationRunner:
    """Migration runner that records calls; can be told to fail"""

    def __init__(self):
        self.applied: list[tuple[str, int]] = []
        self.dropped: list[str] = []
        self.fail_migrate = False
        self.fail_drop = False

    async def migrate(self, plugin, migrations, current_version):
        pending = sorted((m for m in migrations if m.version > current_version), key=lambda m: m.version)
        if self.fail_migrate and pending:
            raise MigrationFailureError(plugin, pending[0].version, "boom")
        for migration in pending:
            self.applied.append((plugin, migration.version))
        return pending[-1].version if pending else current_version

    async def drop_tables(self, plugin, metadata):
        if self.fail_drop:
            raise MigrationFailureError(plugin, None, "cannot drop")
        self.dropped.append(plugin)


class SimplePlugin(PluginBase):
    """Plugin whose setup and lifecycle callbacks are supplied by the test"""

    def __init__(self, identifier: str, setup=None, version: str = "1.0.0", fail_on: tuple[str, ...] = ()):
        self._descriptor = PluginDescriptor(identifier=identifier, name=identifier.title(), version=version)
        self._setup = setup
        self.fail_on = set(fail_on)
        self.missing: list[str] = []
        self.calls: list[str] = []

    @property
    def descriptor(self) -> PluginDescriptor:
        return self._descriptor

    def check_requirements(self):
        return list(self.missing)

    def setup(self, ctx):
        self.calls.append("setup")
        if "setup" in self.fail_on:
            raise RuntimeError("setup exploded")
        if self._setup is not None:
            self._setup(ctx)

    async def _callback(self, name: str):
        self.calls.append(name)
        if name in self.fail_on:
            raise RuntimeError(f"{name} exploded")

    async def on_activate(self):
        await self._callback("on_activate")

    async def on_deactivate(self):
        await self._callback("on_deactivate")

    async def before_uninstall(self):
        await self._callback("before_uninstall")
