"""DeskPilot – Durable (Redis) job queue.

Per job type the queue keeps four structures (see app/core/redis_keys.py):

  - pending     LIST   jobs waiting to run (RPUSH in, LMOVE out)
  - processing  LIST   jobs leased by one consumer; a job stays here until
                       its handler finished, so a crashed consumer finds its
                       unfinished work again on restart
  - delayed     ZSET   failed jobs waiting for their backoff, scored by due time
  - failed      LIST   dead-lettered jobs that used up their attempts

LMOVE is atomic, so two consumers never lease the same job. Delivery is
at-least-once: handlers must tolerate re-execution after a crash.

Every running consumer refreshes its score in the consumers ZSET. A
processing list whose owner has not been seen for lease_ttl seconds (or was
never registered, or stopped) is orphaned, and any live consumer moves its
jobs back to pending. A worker host that is replaced under a new consumer id
therefore does not strand its leases.
"""

import asyncio
import time
from typing import Any

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from app.core.instrumentation import JOBS_TOTAL
from app.core.redis_keys import (
    JOBS_PREFIX,
    consumers_key,
    delayed_key,
    failed_key,
    pending_key,
    processing_key,
)
from app.jobs.queue import JobQueue
from app.jobs.schemas import JobType, job_from_json

logger = structlog.get_logger()


class RedisJobQueue(JobQueue):
    """Redis-backed job queue with leases, retries and a dead-letter list."""

    backend = "redis"
    job_id_prefix = "job"

    def __init__(
        self,
        client: redis.Redis,
        *,
        consumer_id: str,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        poll_interval: float = 1.0,
        failed_retention: int = 1000,
        concurrency: int = 1,
        lease_ttl: float = 60.0,
        prefix: str = JOBS_PREFIX,
    ) -> None:
        super().__init__()
        self._client = client
        self._consumer_id = consumer_id
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._poll_interval = poll_interval
        self._failed_retention = failed_retention
        self._concurrency = max(1, concurrency)
        self._lease_ttl = lease_ttl
        self._prefix = prefix
        self._workers: list[asyncio.Task] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._running = False

    @property
    def consumer_id(self) -> str:
        return self._consumer_id

    # ──────────────────────────────────────────────────────────────
    # Producer side
    # ──────────────────────────────────────────────────────────────

    async def _submit(self, job: Any) -> None:
        await self._client.rpush(pending_key(job.type, self._prefix), job.model_dump_json())

    # ──────────────────────────────────────────────────────────────
    # Consumer side
    # ──────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Recover unfinished leases (own and orphaned), then start worker loops."""
        if self._running:
            return
        self._running = True
        await self.heartbeat()
        for job_type in self.job_types:
            await self.recover(job_type)
            await self.reclaim_orphans(job_type)
            for _ in range(self._concurrency):
                self._workers.append(asyncio.create_task(self._worker_loop(job_type)))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(
            "jobs.redis.started",
            consumer_id=self._consumer_id,
            job_types=[t.value for t in self.job_types],
        )

    async def stop(self) -> None:
        """Stop worker loops and deregister.

        Jobs interrupted mid-handler stay leased; they are recovered when this
        consumer restarts, or reclaimed by any live consumer in the meantime.
        """
        self._running = False
        tasks = list(self._workers)
        if self._heartbeat_task is not None:
            tasks.append(self._heartbeat_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._heartbeat_task = None
        try:
            await self._client.zrem(consumers_key(self._prefix), self._consumer_id)
        except (redis.ConnectionError, redis.TimeoutError) as exc:
            logger.warning("jobs.redis.deregister_failed", consumer_id=self._consumer_id, error=str(exc))
        logger.info("jobs.redis.stopped", consumer_id=self._consumer_id)

    async def heartbeat(self) -> None:
        """Mark this consumer as alive."""
        await self._client.zadd(consumers_key(self._prefix), {self._consumer_id: time.time()})

    async def _heartbeat_loop(self) -> None:
        interval = max(self._lease_ttl / 3, 0.1)
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.heartbeat()
                for job_type in self.job_types:
                    await self.reclaim_orphans(job_type)
            except (redis.ConnectionError, redis.TimeoutError) as exc:
                logger.error("jobs.redis.heartbeat_failed", consumer_id=self._consumer_id, error=str(exc))

    async def recover(self, job_type: JobType | str) -> int:
        """Move jobs leased by this consumer back to the head of the pending list."""
        job_type = JobType(job_type).value
        recovered = await self._release(job_type, self._consumer_id)
        if recovered:
            logger.warning(
                "jobs.recovered",
                job_type=job_type,
                consumer_id=self._consumer_id,
                count=recovered,
            )
        return recovered

    async def _release(self, job_type: str, consumer_id: str) -> int:
        processing = processing_key(job_type, consumer_id, self._prefix)
        pending = pending_key(job_type, self._prefix)
        released = 0
        while await self._client.lmove(processing, pending, "RIGHT", "LEFT") is not None:
            released += 1
        return released

    async def processing_by_consumer(self, job_type: JobType | str) -> dict[str, int]:
        """Leased job count per consumer id, including consumers other than this one."""
        job_type = JobType(job_type).value
        marker = processing_key(job_type, "", self._prefix)
        counts: dict[str, int] = {}
        async for key in self._client.scan_iter(match=processing_key(job_type, "*", self._prefix)):
            count = await self._client.llen(key)
            if count:
                counts[key[len(marker):]] = count
        return counts

    async def reclaim_orphans(self, job_type: JobType | str) -> int:
        """Move jobs leased by dead consumers back to the head of the pending list.

        A consumer is dead when its last heartbeat is older than lease_ttl or
        it has none at all. A consumer that is merely slow past the TTL has
        its job run again elsewhere; delivery is at-least-once either way.

        Returns:
            Number of jobs moved back to pending.
        """
        job_type = JobType(job_type).value
        consumers = consumers_key(self._prefix)
        cutoff = time.time() - self._lease_ttl
        total = 0
        for consumer_id in await self.processing_by_consumer(job_type):
            if consumer_id == self._consumer_id:
                continue
            seen = await self._client.zscore(consumers, consumer_id)
            if seen is not None and seen >= cutoff:
                continue
            reclaimed = await self._release(job_type, consumer_id)
            if reclaimed:
                logger.warning(
                    "jobs.reclaimed",
                    job_type=job_type,
                    consumer_id=self._consumer_id,
                    orphaned_consumer=consumer_id,
                    count=reclaimed,
                    last_seen=seen,
                )
                total += reclaimed
        await self._client.zremrangebyscore(consumers, 0, cutoff)
        return total

    async def _worker_loop(self, job_type: JobType) -> None:
        while self._running:
            try:
                handled = await self.run_once(job_type)
            except asyncio.CancelledError:
                raise
            except (redis.ConnectionError, redis.TimeoutError) as exc:
                logger.error("jobs.redis.unavailable", job_type=job_type.value, error=str(exc))
                handled = False
            if not handled:
                await asyncio.sleep(self._poll_interval)

    async def run_once(self, job_type: JobType | str) -> bool:
        """Lease and run at most one job of the given type.

        Returns:
            True if a job was leased, False if the queue was empty.
        """
        job_type = JobType(job_type).value
        await self.promote_due(job_type)
        processing = processing_key(job_type, self._consumer_id, self._prefix)
        raw = await self._client.lmove(pending_key(job_type, self._prefix), processing, "LEFT", "RIGHT")
        if raw is None:
            return False
        await self._handle(job_type, raw, processing)
        return True

    async def _handle(self, job_type: str, raw: str, processing: str) -> None:
        try:
            job = job_from_json(raw)
        except ValidationError:
            logger.error("jobs.malformed", job_type=job_type, raw_preview=str(raw)[:200], exc_info=True)
            await self._dead_letter(job_type, raw, processing, raw)
            return

        job.attempts += 1
        try:
            await self._execute(job)
        except Exception:
            logger.error(
                "jobs.failed",
                job_type=job_type,
                job_id=job.id,
                attempt=job.attempts,
                max_attempts=self._max_attempts,
                backend=self.backend,
                exc_info=True,
            )
            JOBS_TOTAL.labels(job_type=job_type, status="failed").inc()
            await self._on_failure(job_type, job, raw, processing)
            return

        await self._client.lrem(processing, 1, raw)
        JOBS_TOTAL.labels(job_type=job_type, status="completed").inc()
        logger.info("jobs.completed", job_type=job_type, job_id=job.id, attempt=job.attempts, backend=self.backend)

    async def _on_failure(self, job_type: str, job: Any, raw: str, processing: str) -> None:
        if job.attempts >= self._max_attempts:
            await self._dead_letter(job_type, job.model_dump_json(), processing, raw)
            logger.error("jobs.dead_lettered", job_type=job_type, job_id=job.id, attempts=job.attempts)
            return

        delay = self._backoff_seconds * (2 ** (job.attempts - 1))
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zadd(delayed_key(job_type, self._prefix), {job.model_dump_json(): time.time() + delay})
            pipe.lrem(processing, 1, raw)
            await pipe.execute()
        JOBS_TOTAL.labels(job_type=job_type, status="retried").inc()
        logger.warning("jobs.retry_scheduled", job_type=job_type, job_id=job.id, attempt=job.attempts, delay_s=delay)

    async def _dead_letter(self, job_type: str, record: str, processing: str, raw: str) -> None:
        failed = failed_key(job_type, self._prefix)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lpush(failed, record)
            pipe.ltrim(failed, 0, self._failed_retention - 1)
            pipe.lrem(processing, 1, raw)
            await pipe.execute()
        JOBS_TOTAL.labels(job_type=job_type, status="dead_lettered").inc()

    async def promote_due(self, job_type: JobType | str) -> int:
        """Move delayed jobs whose backoff has elapsed back onto the pending list."""
        job_type = JobType(job_type).value
        delayed = delayed_key(job_type, self._prefix)
        due = await self._client.zrangebyscore(delayed, 0, time.time())
        promoted = 0
        for raw in due:
            # ZREM is the claim: only the consumer that removes it re-queues it.
            if await self._client.zrem(delayed, raw):
                await self._client.rpush(pending_key(job_type, self._prefix), raw)
                promoted += 1
        return promoted

    async def failed_jobs(self, job_type: JobType | str, limit: int = 20) -> list[str]:
        """Newest dead-lettered job records first."""
        return await self._client.lrange(failed_key(JobType(job_type).value, self._prefix), 0, limit - 1)

    async def stats(self, job_type: JobType | str) -> dict[str, int]:
        job_type = JobType(job_type).value
        return {
            "pending": await self._client.llen(pending_key(job_type, self._prefix)),
            "delayed": await self._client.zcard(delayed_key(job_type, self._prefix)),
            "processing": await self._client.llen(processing_key(job_type, self._consumer_id, self._prefix)),
            "failed": await self._client.llen(failed_key(job_type, self._prefix)),
        }
