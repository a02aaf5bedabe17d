import argparse
import asyncio
import os
import sys

# Add project root to path
sys.path.append(os.getcwd())

from app.gateway.redis_bus import RedisBus
from app.jobs.redis_queue import RedisJobQueue
from app.jobs.schemas import JobType
from config.settings import get_settings


async def check_queue(reclaim: bool = False):
    settings = get_settings()
    redis_bus = RedisBus(redis_url=settings.redis_url)
    await redis_bus.connect()

    # Own id, so a worker running on this host is never mistaken for ourselves.
    queue = RedisJobQueue(
        redis_bus.client,
        consumer_id=f"{settings.job_consumer_id}-check-queue",
        lease_ttl=settings.job_lease_ttl_seconds,
    )
    print("📊 Job queues")
    for job_type in JobType:
        stats = await queue.stats(job_type)
        leases = await queue.processing_by_consumer(job_type)
        print(
            f"  {job_type.value:<18} pending={stats['pending']:<5} delayed={stats['delayed']:<5} "
            f"processing={sum(leases.values()):<5} failed={stats['failed']}"
        )
        for consumer_id, count in sorted(leases.items()):
            print(f"    🔒 {consumer_id}: {count} leased")
        if reclaim:
            moved = await queue.reclaim_orphans(job_type)
            if moved:
                print(f"    ♻️  Reclaimed {moved} job(s) from dead consumers")
        if stats["failed"]:
            # Peek newest dead-lettered job
            newest = await queue.failed_jobs(job_type, limit=1)
            print(f"    📥 Last failed: {newest[0][:200]}")

    await redis_bus.disconnect()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Show job queue state across all consumers.")
    parser.add_argument(
        "--reclaim",
        action="store_true",
        help="Move jobs leased by consumers without a recent heartbeat back to pending",
    )
    args = parser.parse_args()
    asyncio.run(check_queue(reclaim=args.reclaim))
