from __future__ import annotations

import inspect
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from cms_core.exceptions import DuplicateIdentifierError, InvalidScheduleError, RegistrationClosedError

scheduler = AsyncIOScheduler()

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledTaskDefinition:
    plugin: str
    name: str
    cron: str
    handler: Callable[[], Any]
    trigger: CronTrigger = field(compare=False, repr=False)

    @property
    def job_id(self) -> str:
        return f"{self.plugin}:{self.name}"


class TaskScheduler:
    """
    Plugin-owned recurring tasks on top of the APScheduler job queue.

    Jobs are added paused and resumed when their plugin activates, so a
    plugin that never activates never runs a task.
    """

    def __init__(self, job_queue: AsyncIOScheduler | None = None, is_active: Callable[[str], bool] | None = None):
        self.job_queue = job_queue if job_queue is not None else scheduler
        self.is_active = is_active
        self._tasks: dict[tuple[str, str], ScheduledTaskDefinition] = {}
        self._one_off: dict[str, set[str]] = {}
        self._one_off_sequence = itertools.count(1)
        self._frozen = False

    def freeze(self) -> None:
        self._frozen = True

    def schedule_recurring(self, plugin: str, name: str, cron: str, handler: Callable[[], Any]) -> ScheduledTaskDefinition:
        if self._frozen:
            raise RegistrationClosedError("TaskScheduler")
        if (plugin, name) in self._tasks:
            raise DuplicateIdentifierError(f"{plugin}:{name}", kind="Scheduled task")
        if not callable(handler):
            raise TypeError(f"Handler for task '{plugin}:{name}' is not callable")
        try:
            trigger = CronTrigger.from_crontab(cron)
        except ValueError as e:
            raise InvalidScheduleError(plugin, name, cron) from e

        task = ScheduledTaskDefinition(plugin=plugin, name=name, cron=cron, handler=handler, trigger=trigger)
        self.job_queue.add_job(
            self._run,
            trigger=trigger,
            args=[task],
            id=task.job_id,
            name=task.job_id,
            replace_existing=True,
            next_run_time=None,
        )
        self._tasks[(plugin, name)] = task
        logger.info("[Scheduler] Task %s registered (%s), paused until activation", task.job_id, cron)
        return task

    def tasks(self, plugin: str | None = None) -> list[ScheduledTaskDefinition]:
        return [t for t in self._tasks.values() if plugin is None or t.plugin == plugin]

    def resume(self, plugin: str) -> int:
        tasks = self.tasks(plugin)
        for task in tasks:
            self.job_queue.resume_job(task.job_id)
        if tasks:
            logger.info("[Scheduler] Resumed %d task(s) for %s", len(tasks), plugin)
        return len(tasks)

    def suspend(self, plugin: str) -> int:
        tasks = self.tasks(plugin)
        for task in tasks:
            self.job_queue.pause_job(task.job_id)
        if tasks:
            logger.info("[Scheduler] Suspended %d task(s) for %s", len(tasks), plugin)
        return len(tasks)

    def remove(self, plugin: str) -> int:
        tasks = self.tasks(plugin)
        for job_id in self._one_off.pop(plugin, set()):
            if self.job_queue.get_job(job_id) is not None:
                self.job_queue.remove_job(job_id)
        for task in tasks:
            if self.job_queue.get_job(task.job_id) is not None:
                self.job_queue.remove_job(task.job_id)
            del self._tasks[(task.plugin, task.name)]
        if tasks:
            logger.info("[Scheduler] Removed %d task(s) for %s", len(tasks), plugin)
        return len(tasks)

    def enqueue(
        self,
        plugin: str,
        name: str,
        handler: Callable[..., Any],
        *args: Any,
        run_at: datetime | None = None,
    ) -> str:
        """
        Run `handler(*args)` once, at `run_at` or as soon as possible.

        One-off jobs may be queued at any time, also after boot. They skip
        silently when their plugin is no longer active by the time they run.

        Returns:
            The job id, "<plugin>:<name>#<n>".
        """
        if not callable(handler):
            raise TypeError(f"Handler for job '{plugin}:{name}' is not callable")
        job_id = f"{plugin}:{name}#{next(self._one_off_sequence)}"
        self.job_queue.add_job(
            self._run_once,
            trigger=DateTrigger(run_date=run_at),
            args=[plugin, job_id, handler, list(args)],
            id=job_id,
            name=f"{plugin}:{name}",
            replace_existing=True,
        )
        self._one_off.setdefault(plugin, set()).add(job_id)
        logger.info("[Scheduler] Job %s queued for %s", job_id, run_at or "now")
        return job_id

    def enqueue_in(
        self, plugin: str, name: str, delay: timedelta | float, handler: Callable[..., Any], *args: Any
    ) -> str:
        if not isinstance(delay, timedelta):
            delay = timedelta(seconds=delay)
        return self.enqueue(plugin, name, handler, *args, run_at=datetime.now(timezone.utc) + delay)

    def pending_jobs(self, plugin: str) -> list[str]:
        return sorted(self._one_off.get(plugin, ()))

    async def run_task(self, plugin: str, name: str) -> bool:
        """Run a task immediately, outside its schedule."""
        return await self._run(self._tasks[(plugin, name)])

    async def _run(self, task: ScheduledTaskDefinition) -> bool:
        return await self._invoke(task.plugin, task.job_id, task.handler)

    async def _run_once(self, plugin: str, job_id: str, handler: Callable[..., Any], args: list[Any]) -> bool:
        self._one_off.get(plugin, set()).discard(job_id)
        return await self._invoke(plugin, job_id, handler, *args)

    async def _invoke(self, plugin: str, job_id: str, handler: Callable[..., Any], *args: Any) -> bool:
        if self.is_active is not None and not self.is_active(plugin):
            logger.debug("[Scheduler] Skipping %s, plugin inactive", job_id)
            return False
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("[Scheduler] Task %s failed", job_id)
            return False
        return True
