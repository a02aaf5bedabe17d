"""DeskPilot – In-process (best-effort) job queue.

Jobs run immediately as tasks on the running event loop, next to the HTTP
server. Nothing is persisted: a failing handler or a process exit loses the
job with only a log line.
"""

import asyncio
from typing import Any

import structlog

from app.core.instrumentation import JOBS_TOTAL
from app.jobs.queue import JobQueue

logger = structlog.get_logger()


class InMemoryJobQueue(JobQueue):
    """Best-effort, at-most-once job queue.

    The in-flight set only prevents the same generated job id from running
    twice concurrently; two enqueues of the same logical event get two ids
    and both run.
    """

    backend = "memory"
    job_id_prefix = "localhost"

    def __init__(self) -> None:
        super().__init__()
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _submit(self, job: Any) -> None:
        if self._stopped:
            logger.warning("jobs.memory.submit_after_stop", job_type=job.type, job_id=job.id)
        task = asyncio.get_running_loop().create_task(self._run(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: Any) -> None:
        if job.id in self._in_flight:
            logger.warning("jobs.memory.duplicate_skipped", job_type=job.type, job_id=job.id)
            return

        self._in_flight.add(job.id)
        try:
            await self._execute(job)
            JOBS_TOTAL.labels(job_type=job.type, status="completed").inc()
            logger.info("jobs.completed", job_type=job.type, job_id=job.id, backend=self.backend)
        except Exception:
            JOBS_TOTAL.labels(job_type=job.type, status="dropped").inc()
            logger.error("jobs.dropped", job_type=job.type, job_id=job.id, backend=self.backend, exc_info=True)
        finally:
            self._in_flight.discard(job.id)

    async def start(self) -> None:
        self._stopped = False
        logger.info("jobs.memory.started", job_types=[t.value for t in self.job_types])

    async def drain(self) -> None:
        """Wait until no job tasks remain, including jobs chained by handlers."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel outstanding jobs. Cancelled jobs are lost, they are never replayed."""
        self._stopped = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning("jobs.memory.lost_on_stop", count=len(tasks))
        logger.info("jobs.memory.stopped")
