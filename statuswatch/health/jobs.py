"""Job runtime — a queue of monitoring work and the runner that drains it.

Enqueueing and executing are separate capabilities:

- ``JobQueue.enqueue`` only records work. It is what record-mutation hooks
  and the scan coordinator get.
- ``JobRunner.run`` / ``JobRunner.run_now`` execute work. Only the scheduler
  timer and explicit operator calls hold a runner.

Checks run concurrently up to ``max_concurrency``; checks for the same
target are serialised. A job whose handler raises is retried up to the
task's retry budget, then recorded as failed. A check for a target that
already has one queued or running is not queued twice.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TaskHandler = Callable[[dict[str, Any]], Awaitable[Any]]

_MAX_FINISHED_JOBS = 500


@dataclass
class Job:
    """One unit of queued work."""

    task: str
    input: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: str = "queued"  # queued | running | completed | failed
    attempts: int = 0
    output: Any = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task,
            "input": self.input,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


class JobQueue:
    """FIFO of pending jobs plus a bounded history of recent ones.

    With a ``dedupe_key`` a job whose key matches one that is still queued or
    running is not queued again; ``enqueue`` hands back the live job instead.
    """

    def __init__(self, dedupe_key: Callable[[Job], str | None] | None = None) -> None:
        self._pending: deque[Job] = deque()
        self._jobs: OrderedDict[str, Job] = OrderedDict()
        self._dedupe_key = dedupe_key
        self._active: dict[str, Job] = {}

    def enqueue(self, task: str, input: dict[str, Any] | None = None) -> Job:
        existing = self.find_active(task, input)
        if existing is not None:
            logger.debug("Job %s already active for %s %s, not queued again", existing.id, task, input)
            return existing
        job = Job(task=task, input=dict(input or {}))
        self.track(job)
        self._pending.append(job)
        logger.debug("Queued job %s (%s %s)", job.id, task, job.input)
        return job

    def find_active(self, task: str, input: dict[str, Any] | None = None) -> Job | None:
        """The queued or running job with the same dedupe key, if any."""
        key = self._key(Job(task=task, input=dict(input or {})))
        if key is None:
            return None
        existing = self._active.get(key)
        if existing is None or existing.finished_at is not None:
            return None
        return existing

    def track(self, job: Job) -> None:
        """Record ``job`` in the history and active set without queueing it."""
        self._jobs[job.id] = job
        key = self._key(job)
        if key is not None and self.find_active(job.task, job.input) is None:
            self._active[key] = job
        self._trim()

    def _key(self, job: Job) -> str | None:
        return self._dedupe_key(job) if self._dedupe_key else None

    def _trim(self) -> None:
        excess = len(self._jobs) - _MAX_FINISHED_JOBS
        if excess <= 0:
            return
        finished = [jid for jid, j in self._jobs.items() if j.finished_at is not None]
        for jid in finished[:excess]:
            del self._jobs[jid]

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def take_pending(self) -> list[Job]:
        """Remove and return everything currently queued."""
        jobs = list(self._pending)
        self._pending.clear()
        return jobs


class JobRunner:
    """Drains a ``JobQueue`` with bounded concurrency and retries."""

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, TaskHandler],
        retries: dict[str, int] | None = None,
        max_concurrency: int = 8,
        serialize_key: Callable[[Job], str | None] | None = None,
    ) -> None:
        self.queue = queue
        self.handlers = handlers
        self.retries = retries or {}
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._serialize_key = serialize_key
        self._key_locks: dict[str, asyncio.Lock] = {}

    async def run(self) -> list[Job]:
        """Execute queued jobs until the queue is empty.

        Jobs enqueued while draining (a scan queueing its checks) are picked
        up in the same call, so the caller waits for the whole unit of work.
        """
        done: list[Job] = []
        while True:
            batch = self.queue.take_pending()
            if not batch:
                break
            await asyncio.gather(*(self._execute(job) for job in batch))
            done.extend(batch)
        if done:
            failed = sum(1 for j in done if j.status == "failed")
            logger.info("Job run finished: %d jobs, %d failed", len(done), failed)
        return done

    async def run_now(self, task: str, input: dict[str, Any] | None = None) -> Job:
        """Execute one job immediately without going through the queue.

        The job still shows up in the queue's history and active set, so a
        scan running alongside does not queue the same check again.
        """
        job = Job(task=task, input=dict(input or {}))
        self.queue.track(job)
        await self._execute(job)
        return job

    async def _execute(self, job: Job) -> None:
        handler = self.handlers.get(job.task)
        if handler is None:
            job.status = "failed"
            job.error = f"Unknown task: {job.task}"
            job.finished_at = time.time()
            logger.error("Job %s: unknown task %s", job.id, job.task)
            return

        key = self._serialize_key(job) if self._serialize_key else None
        async with self._semaphore:
            if key is None:
                await self._attempt(job, handler)
            else:
                lock = self._key_locks.setdefault(key, asyncio.Lock())
                async with lock:
                    await self._attempt(job, handler)

    async def _attempt(self, job: Job, handler: TaskHandler) -> None:
        max_attempts = self.retries.get(job.task, 0) + 1
        job.status = "running"
        while job.attempts < max_attempts:
            job.attempts += 1
            try:
                job.output = await handler(job.input)
                job.status = "completed"
                job.error = None
                break
            except Exception as e:
                job.error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "Job %s (%s) attempt %d/%d failed: %s",
                    job.id, job.task, job.attempts, max_attempts, job.error,
                )
        else:
            job.status = "failed"
            logger.error("Job %s (%s) failed after %d attempts", job.id, job.task, job.attempts)
        job.finished_at = time.time()
