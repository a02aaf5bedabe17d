"""DeskPilot – Job Queue Engine.

Producer-facing contract shared by both backends:

    job_id = await queue.enqueue(JobType.INGEST, payload)   # never waits for completion
    queue.process(JobType.INGEST, handler)                  # handler(job) per enqueued job

Backends differ in what survives a failure, and that difference is part of
the contract:

  - InMemoryJobQueue (app/jobs/memory.py): runs jobs immediately on the
    event loop. A handler exception or a process exit loses the job; only a
    log line remains (at-most-once).
  - RedisJobQueue (app/jobs/redis_queue.py): jobs are stored in Redis,
    leased per consumer, retried with exponential backoff and dead-lettered
    after the attempt budget. A job interrupted by a crash is re-run when
    its consumer restarts (at-least-once).
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import structlog
from pydantic import BaseModel

from app.jobs.schemas import JobType, build_job, new_job_id

logger = structlog.get_logger()

JobHandler = Callable[[Any], Awaitable[None]]


class UnknownJobType(ValueError):
    """Raised for a job type with no payload model or no registered handler."""


def resolve_job_type(job_type: JobType | str) -> JobType:
    try:
        return JobType(job_type)
    except ValueError as exc:
        raise UnknownJobType(f"Unknown job type: {job_type!r}") from exc


class JobQueue(ABC):
    """Base class for job queue backends."""

    backend: str = "abstract"
    job_id_prefix: str = "job"

    def __init__(self) -> None:
        self._handlers: dict[JobType, JobHandler] = {}

    def process(self, job_type: JobType | str, handler: JobHandler) -> None:
        """Register the handler invoked once per enqueued job of this type."""
        resolved = resolve_job_type(job_type)
        if resolved in self._handlers:
            logger.warning("jobs.handler_replaced", job_type=resolved.value, backend=self.backend)
        self._handlers[resolved] = handler

    @property
    def job_types(self) -> list[JobType]:
        return list(self._handlers)

    async def enqueue(self, job_type: JobType | str, payload: BaseModel | dict[str, Any]) -> str:
        """Submit a job and return its id once the backend has accepted it.

        Raises:
            UnknownJobType: For an unrecognised job type.
            pydantic.ValidationError: If the payload does not match the job type.
        """
        resolved = resolve_job_type(job_type)
        job = build_job(resolved, payload, new_job_id(self.job_id_prefix))
        await self._submit(job)
        logger.info("jobs.enqueued", job_type=resolved.value, job_id=job.id, backend=self.backend)
        return job.id

    async def _execute(self, job: Any) -> None:
        """Run the registered handler for a job. Exceptions propagate to the backend."""
        handler = self._handlers.get(JobType(job.type))
        if handler is None:
            raise UnknownJobType(f"No handler registered for job type {job.type!r}")
        await handler(job)

    @abstractmethod
    async def _submit(self, job: Any) -> None:
        """Hand a validated job to the backend."""

    async def start(self) -> None:
        """Begin consuming jobs for the registered handlers."""

    async def stop(self) -> None:
        """Stop consuming. In-flight work follows the backend's loss policy."""
