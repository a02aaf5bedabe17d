import asyncio
import os
import signal
import sys

import structlog

# Add project root to path
sys.path.append(os.getcwd())

from app.core.db import create_db_engine, create_session_factory, run_migrations
from app.core.instrumentation import setup_logging
from app.gateway.dependencies import build_pipeline, build_queue
from app.gateway.realtime import RedisEventPublisher
from app.gateway.redis_bus import RedisBus
from app.pipeline.intake import register_workers
from config.settings import get_settings

logger = structlog.get_logger()


async def job_worker():
    """Standalone worker for the durable (Redis) job queue.

    Realtime events are published on Redis; the gateway relays them to its
    websocket clients.
    """
    settings = get_settings()
    setup_logging(settings.log_level)
    if settings.job_backend != "redis":
        raise SystemExit("scripts/job_worker.py requires JOB_BACKEND=redis")

    # 1. Setup Dependencies
    engine = create_db_engine(settings.database_url)
    run_migrations(engine)
    redis_bus = RedisBus(redis_url=settings.redis_url)
    await redis_bus.connect()

    publisher = RedisEventPublisher(redis_bus)
    queue = build_queue(settings, redis_bus)
    pipeline = build_pipeline(settings, create_session_factory(engine), publisher, queue)

    # 2. Start consuming
    register_workers(pipeline)
    await queue.start()
    logger.info("worker.jobs.started", pid=os.getpid(), consumer_id=settings.job_consumer_id)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
    finally:
        # Interrupted jobs stay leased; the next start or a live peer reclaims them.
        await queue.stop()
        await publisher.flush()
        await redis_bus.disconnect()
        engine.dispose()
        logger.info("worker.jobs.stopped")


if __name__ == "__main__":
    asyncio.run(job_worker())
