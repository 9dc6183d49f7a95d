"""Monitoring scheduler — fires a scan on a cron schedule.

One ``MonitoringScheduler`` owns one timer task. Each firing enqueues a scan
and drains the queue, so the scan and every check it queued finish before
the firing counts as done. A firing that arrives while the previous one is
still running is skipped.

When started from the host's own startup hook, pass the context you were
given (``start(context=...)``). Without it the scheduler acquires one from
the host, which does not hand contexts out until startup has finished.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from croniter import croniter

from ..config import settings
from ..errors import InvalidScheduleError
from .context import MonitorContext
from .tasks import SCAN_TASK

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE = "* * * * *"

ContextProvider = Callable[[], Awaitable[MonitorContext]]


def validate_schedule(expression: str) -> str:
    """Return the expression unchanged or raise ``InvalidScheduleError``."""
    if not expression or not croniter.is_valid(expression):
        raise InvalidScheduleError(expression)
    return expression


def seconds_until_next(expression: str, now: datetime | None = None) -> float:
    now = now or datetime.now(timezone.utc)
    nxt = croniter(expression, now).get_next(datetime)
    return max((nxt - now).total_seconds(), 0.0)


class MonitoringScheduler:
    """Start/stop/status around a single recurring scan timer.

    Lifecycle:
        scheduler = MonitoringScheduler(host.acquire)
        await scheduler.start(context=ctx)   # from a startup hook
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        acquire_context: ContextProvider,
        default_schedule: str | None = None,
        default_enabled: bool | None = None,
    ) -> None:
        self._acquire_context = acquire_context
        self._default_schedule = default_schedule or settings.monitoring_schedule
        self._default_enabled = (
            settings.enable_auto_monitoring if default_enabled is None else default_enabled
        )
        self._schedule = DEFAULT_SCHEDULE
        self._timer: asyncio.Task[None] | None = None
        self._firings: set[asyncio.Task[None]] = set()
        self._scan_lock = asyncio.Lock()
        self.last_run: dict[str, Any] | None = None

    # -- public API ------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._timer is not None

    def status(self) -> dict[str, Any]:
        return {"running": self.running, "schedule": self._schedule}

    async def start(
        self, schedule: str | None = None, context: MonitorContext | None = None,
    ) -> bool:
        """Register the timer. Returns False when already running or disabled.

        Raises ``InvalidScheduleError`` before anything is registered if the
        effective schedule is not a valid cron expression.
        """
        if self._timer is not None:
            logger.info("Monitoring scheduler already running (%s)", self._schedule)
            return False

        enabled, stored_schedule = await self._load_settings(context)
        if not enabled:
            logger.info("Monitoring disabled in settings, scheduler not started")
            return False

        final = schedule or stored_schedule or self._default_schedule or DEFAULT_SCHEDULE
        try:
            validate_schedule(final)
        except InvalidScheduleError:
            logger.error("Invalid cron schedule: %s", final)
            raise

        self._schedule = final
        self._timer = asyncio.create_task(self._timer_loop(final), name="monitoring-scheduler")
        logger.info("Monitoring scheduler started (schedule=%s)", final)
        return True

    async def stop(self) -> None:
        """Cancel the timer and any in-flight firing. Safe to call when stopped."""
        if self._timer is None:
            return
        timer, self._timer = self._timer, None
        timer.cancel()
        for task in list(self._firings):
            task.cancel()
        await asyncio.gather(timer, *self._firings, return_exceptions=True)
        self._firings.clear()
        logger.info("Monitoring scheduler stopped")

    async def restart(self, schedule: str | None = None) -> bool:
        """Stop, then start again with freshly resolved settings."""
        logger.info("Restarting monitoring scheduler")
        await self.stop()
        return await self.start(schedule)

    async def run_scheduled_scan(self) -> dict[str, Any] | None:
        """One timer firing: queue a scan, then drain the queue.

        Never raises. Returns None when skipped because a previous firing is
        still in progress.
        """
        if self._scan_lock.locked():
            logger.warning("Previous monitoring run still in progress, skipping this firing")
            return None

        async with self._scan_lock:
            started = datetime.now(timezone.utc)
            try:
                ctx = await self._acquire_context()
                job = ctx.queue.enqueue(SCAN_TASK, {})
                jobs = await ctx.runner.run()
            except Exception as e:
                logger.exception("Scheduled monitoring run failed")
                self.last_run = {"started_at": started.isoformat(), "error": str(e)}
                return self.last_run

            self.last_run = {
                "started_at": started.isoformat(),
                "scan_job_id": job.id,
                "jobs": len(jobs),
                "failed": sum(1 for j in jobs if j.status == "failed"),
            }
            return self.last_run

    # -- internals -------------------------------------------------------------

    async def _load_settings(self, context: MonitorContext | None) -> tuple[bool, str | None]:
        try:
            ctx = context if context is not None else await self._acquire_context()
            stored = ctx.store.find_global_settings()
            return stored.monitoring_enabled, stored.monitoring_schedule_cron
        except Exception:
            logger.info("Could not load monitoring settings from store, using defaults")
            return self._default_enabled, None

    async def _timer_loop(self, expression: str) -> None:
        while True:
            await asyncio.sleep(seconds_until_next(expression))
            logger.debug("Monitoring timer fired (%s)", expression)
            task = asyncio.create_task(self.run_scheduled_scan(), name="monitoring-scan")
            self._firings.add(task)
            task.add_done_callback(self._firings.discard)
