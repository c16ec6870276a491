"""In-memory background job manager.

Jobs are admitted up to a fixed capacity and each one is driven on its own
asyncio task: ``pending -> processing -> complete | error``. Coroutine
processors run on the event loop; plain callables run in a worker thread.
Terminal jobs stay queryable for a grace period and are then removed by a
single reaper task, which also force-removes anything older than
``max_age`` so a hung processor can never leak its record. The reaper
starts with the first admitted job, or earlier through
:meth:`JobManager.start`.

Grace periods and the max-age sweep are measured on a monotonic clock;
``created_at`` and ``completed_at`` are reported in epoch milliseconds.

Nothing here survives a restart.
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Literal, TypeVar, Union

from .settings import (
    JOB_COMPLETE_GRACE_SECONDS,
    JOB_ERROR_GRACE_SECONDS,
    JOB_MAX_AGE_SECONDS,
    JOB_MAX_CONCURRENT,
    JOB_QUEUE_MAX_SIZE,
    JOB_SWEEP_INTERVAL_SECONDS,
)

logger = logging.getLogger(__name__)

JobStatus = Literal["pending", "processing", "complete", "error"]

P = TypeVar("P")
R = TypeVar("R")

Processor = Callable[[P], Union[Awaitable[R], R]]


class QueueFullError(RuntimeError):
    def __init__(self, max_size: int) -> None:
        super().__init__("Job queue is full. Please try again later.")
        self.max_size = max_size


@dataclass(frozen=True)
class JobSpec(Generic[P, R]):
    """What to run: a payload and the processor that turns it into a result."""

    payload: P
    processor: Processor
    kind: str = "generic"


@dataclass
class Job(Generic[P, R]):
    id: str
    kind: str
    payload: P
    processor: Processor
    created_at: float
    status: JobStatus = "pending"
    result: R | None = None
    error: str | None = None
    completed_at: float | None = None
    # scheduling clock reading at admission
    admitted: float = field(default=0.0, repr=False)


@dataclass(frozen=True)
class JobStatusSnapshot:
    status: JobStatus
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "result": self.result, "error": self.error}


def _now_ms() -> float:
    return time.time() * 1000.0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(order=True)
class _Deadline:
    at: float
    seq: int
    job_id: str = field(compare=False)
    job: Job = field(compare=False, repr=False)


class JobManager:
    def __init__(
        self,
        max_queue_size: int = JOB_QUEUE_MAX_SIZE,
        complete_grace: float = JOB_COMPLETE_GRACE_SECONDS,
        error_grace: float = JOB_ERROR_GRACE_SECONDS,
        max_age: float = JOB_MAX_AGE_SECONDS,
        sweep_interval: float = JOB_SWEEP_INTERVAL_SECONDS,
        max_concurrent: int | None = JOB_MAX_CONCURRENT or None,
        clock: Callable[[], float] = _monotonic_ms,
        wall_clock: Callable[[], float] = _now_ms,
    ) -> None:
        """Durations are in seconds.

        ``clock`` returns monotonic milliseconds and drives every deadline;
        ``wall_clock`` returns epoch milliseconds for reported timestamps.
        """
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        if max_concurrent is not None and max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1 or None")

        self.max_queue_size = max_queue_size
        self.complete_grace_ms = complete_grace * 1000.0
        self.error_grace_ms = error_grace * 1000.0
        self.max_age_ms = max_age * 1000.0
        self.sweep_interval_ms = sweep_interval * 1000.0
        self.max_concurrent = max_concurrent
        self._clock = clock
        self._wall_clock = wall_clock

        self._jobs: dict[str, Job] = {}
        # job_id -> the record whose processor is currently executing
        self._in_flight: dict[str, Job] = {}
        self._deadlines: list[_Deadline] = []
        self._seq = itertools.count()
        self._tasks: set[asyncio.Task] = set()
        self._semaphore = (
            asyncio.Semaphore(max_concurrent) if max_concurrent is not None else None
        )
        self._reaper: asyncio.Task | None = None
        self._wakeup: asyncio.Event | None = None

    # ------------------------------------------------------------------ api

    def add_job(self, job_id: str, spec: JobSpec[P, R]) -> str:
        """Admit a job and start driving it in the background.

        Must be called from inside the running event loop. Starts the reaper
        if it is not running yet. Raises :class:`QueueFullError` when the
        table is at capacity; nothing is recorded in that case.
        """
        if len(self._jobs) >= self.max_queue_size:
            logger.warning(
                "[Job %s] rejected, queue full (%d)", job_id, self.max_queue_size
            )
            raise QueueFullError(self.max_queue_size)

        loop = asyncio.get_running_loop()

        self._jobs[job_id] = Job(
            id=job_id,
            kind=spec.kind,
            payload=spec.payload,
            processor=spec.processor,
            created_at=self._wall_clock(),
            admitted=self._clock(),
        )
        logger.info(
            "[Job %s] added (%s). Queue size: %d", job_id, spec.kind, len(self._jobs)
        )

        self._ensure_reaper(loop)
        self._trigger(job_id, loop)
        return job_id

    def get_job_status(self, job_id: str) -> JobStatusSnapshot | None:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        return JobStatusSnapshot(status=job.status, result=job.result, error=job.error)

    def delete_job(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._in_flight.pop(job_id, None)

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def stats(self) -> dict[str, int]:
        counts = {"pending": 0, "processing": 0, "complete": 0, "error": 0}
        for job in self._jobs.values():
            counts[job.status] += 1
        counts["in_flight"] = len(self._in_flight)
        counts["total"] = len(self._jobs)
        return counts

    # --------------------------------------------------------------- driver

    def _trigger(self, job_id: str, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        task = loop.create_task(self._drive(job_id), name=f"job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _slot(self):
        return self._semaphore if self._semaphore is not None else contextlib.nullcontext()

    async def _drive(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            logger.debug("[Job %s] not found, nothing to run", job_id)
            return
        if job_id in self._in_flight:
            logger.debug("[Job %s] already processing", job_id)
            return
        if job.status != "pending":
            return

        self._in_flight[job_id] = job
        try:
            async with self._slot():
                await self._execute(job)
        finally:
            if self._in_flight.get(job_id) is job:
                del self._in_flight[job_id]

        # a re-submission under the same id arrived while we were running
        current = self._jobs.get(job_id)
        if current is not None and current is not job and current.status == "pending":
            self._trigger(job_id)

    async def _execute(self, job: Job) -> None:
        job.status = "processing"
        logger.info("[Job %s] starting", job.id)

        try:
            if inspect.iscoroutinefunction(job.processor):
                result = await job.processor(job.payload)
            else:
                result = await asyncio.to_thread(job.processor, job.payload)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            job.error = str(e) or e.__class__.__name__
            job.completed_at = self._wall_clock()
            job.status = "error"
            logger.exception("[Job %s] failed: %s", job.id, job.error)
            self._schedule_removal(job, self._clock() + self.error_grace_ms)
            return

        job.result = result
        job.completed_at = self._wall_clock()
        job.status = "complete"
        now = self._clock()
        logger.info("[Job %s] completed in %dms", job.id, round(now - job.admitted))
        self._schedule_removal(job, now + self.complete_grace_ms)

    async def wait_idle(self) -> None:
        """Wait until no driver task is running (including re-triggers)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------- cleanup

    def _schedule_removal(self, job: Job, at: float) -> None:
        heapq.heappush(self._deadlines, _Deadline(at, next(self._seq), job.id, job))
        if self._wakeup is not None:
            self._wakeup.set()

    def _expire_due(self, now: float) -> int:
        removed = 0
        while self._deadlines and self._deadlines[0].at <= now:
            d = heapq.heappop(self._deadlines)
            # only remove the record that scheduled this deadline
            if self._jobs.get(d.job_id) is d.job:
                self.delete_job(d.job_id)
                removed += 1
                logger.debug("[Job %s] removed after grace period", d.job_id)
        return removed

    def _sweep_stale(self, now: float) -> int:
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if now - job.admitted > self.max_age_ms
        ]
        for job_id in stale:
            logger.info("[Job %s] cleaning up stale job", job_id)
            self.delete_job(job_id)
        return len(stale)

    def reap(self, now: float | None = None) -> int:
        """Apply due grace-period removals and the max-age sweep once."""
        now = self._clock() if now is None else now
        return self._expire_due(now) + self._sweep_stale(now)

    async def _reap_forever(self) -> None:
        assert self._wakeup is not None
        next_sweep = self._clock() + self.sweep_interval_ms
        while True:
            self._wakeup.clear()
            now = self._clock()
            self._expire_due(now)
            if now >= next_sweep:
                self._sweep_stale(now)
                next_sweep = now + self.sweep_interval_ms

            wake_at = next_sweep
            if self._deadlines:
                wake_at = min(wake_at, self._deadlines[0].at)
            timeout = max(0.0, (wake_at - self._clock()) / 1000.0)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------ lifecycle

    def _ensure_reaper(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._reaper is not None:
            return
        self._wakeup = asyncio.Event()
        self._reaper = loop.create_task(self._reap_forever(), name="job-reaper")
        logger.info(
            "job manager started (max_queue_size=%d, max_concurrent=%s)",
            self.max_queue_size,
            self.max_concurrent or "unbounded",
        )

    async def start(self) -> None:
        self._ensure_reaper(asyncio.get_running_loop())

    async def stop(self) -> None:
        """Cancel the reaper and any processors still running."""
        tasks = list(self._tasks)
        if self._reaper is not None:
            tasks.append(self._reaper)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._reaper = None
        self._wakeup = None
        logger.info("job manager stopped")

    async def __aenter__(self) -> JobManager:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
