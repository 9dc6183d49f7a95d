"""Monitoring context — the store, queue and runner shared by one host.

``MonitorHost`` hands the context out only after the host has finished
starting up (``publish``). Code that runs *inside* startup already holds the
context and must pass it along instead of calling ``acquire``, which would
wait on a startup that is waiting on it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from ..targets.models import ServiceStatus
from ..targets.store import SQLiteTargetStore, TargetStore
from .jobs import Job, JobQueue, JobRunner
from .tasks import CHECK_TASK, SCAN_TASK, ScanSummary, check_one, scan

logger = logging.getLogger(__name__)

# Retry budgets for handlers that raise.
TASK_RETRIES = {CHECK_TASK: 2, SCAN_TASK: 1}


@dataclass
class MonitorContext:
    store: TargetStore
    queue: JobQueue
    runner: JobRunner
    scan_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _check_key(job: Job) -> str | None:
    if job.task == CHECK_TASK:
        return str(job.input.get("target_id"))
    return None


def build_context(store: TargetStore, max_concurrency: int = 8) -> MonitorContext:
    """Wire a queue and runner around ``store``.

    Every scan, whether fired by the timer or run by an operator, goes
    through the same single-flight lock. A scan that finds it held is skipped.
    """
    queue = JobQueue(dedupe_key=_check_key)
    scan_lock = asyncio.Lock()

    async def _check(data: dict[str, Any]) -> Any:
        return await check_one(store, data["target_id"])

    async def _scan(data: dict[str, Any]) -> Any:
        if scan_lock.locked():
            logger.warning("Scan already in progress, skipping")
            return ScanSummary(message="Scan already in progress, skipped")
        async with scan_lock:
            return await scan(store, queue)

    runner = JobRunner(
        queue,
        handlers={CHECK_TASK: _check, SCAN_TASK: _scan},
        retries=TASK_RETRIES,
        max_concurrency=max_concurrency,
        serialize_key=_check_key,
    )
    return MonitorContext(store=store, queue=queue, runner=runner, scan_lock=scan_lock)


def enqueue_on_monitoring_change(queue: JobQueue):
    """Record-mutation hook: queue a check when monitoring config changes.

    Only the queue is captured; the check itself runs on the next drain.
    """

    def hook(before: Any, after: Any) -> None:
        m_after = after.monitoring
        if not m_after.enabled or after.status == ServiceStatus.MAINTENANCE:
            return
        config_fields = ("type", "enabled", "url", "method", "host", "port", "game_type", "expected_status_code")
        changed = any(getattr(before.monitoring, f) != getattr(m_after, f) for f in config_fields)
        if changed:
            queue.enqueue(CHECK_TASK, {"target_id": str(after.id)})
            logger.info("Monitoring config changed for %s, check queued", after.slug)

    return hook


class MonitorHost:
    """Publishes the monitoring context once host startup completes."""

    def __init__(self) -> None:
        self._ready = asyncio.Event()
        self._context: MonitorContext | None = None

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def publish(self, context: MonitorContext) -> None:
        self._context = context
        self._ready.set()

    async def acquire(self) -> MonitorContext:
        await self._ready.wait()
        assert self._context is not None
        return self._context


def open_context(db_path: Any = None, max_concurrency: int = 8) -> MonitorContext:
    """Standalone context over a SQLite store (CLI use)."""
    return build_context(SQLiteTargetStore(db_path), max_concurrency=max_concurrency)
