"""DeskPilot – Redis key factory.

All Redis keys MUST go through this module so that every process agrees on
the layout of the durable job queue and the realtime relay.

Key schema:
    {prefix}:{job_type}:{state}[:{consumer_id}]

Examples:
    deskpilot:jobs:ingest:pending
    deskpilot:jobs:respond:delayed
    deskpilot:jobs:respond:processing:worker-a
    deskpilot:jobs:ingest:failed
    deskpilot:jobs:consumers
"""

JOBS_PREFIX = "deskpilot:jobs"
EVENTS_CHANNEL = "deskpilot:events"


def redis_key(prefix: str, *parts: str) -> str:
    """Build a namespaced Redis key.

    Args:
        prefix: Namespace prefix, e.g. 'deskpilot:jobs'.
        *parts: Key path segments joined with ':'.

    Returns:
        Fully-qualified key string like 'deskpilot:jobs:ingest:pending'.
    """
    if not parts:
        raise ValueError("redis_key requires at least one path part")
    return f"{prefix}:" + ":".join(str(p) for p in parts)


def pending_key(job_type: str, prefix: str = JOBS_PREFIX) -> str:
    return redis_key(prefix, job_type, "pending")


def delayed_key(job_type: str, prefix: str = JOBS_PREFIX) -> str:
    return redis_key(prefix, job_type, "delayed")


def processing_key(job_type: str, consumer_id: str, prefix: str = JOBS_PREFIX) -> str:
    return redis_key(prefix, job_type, "processing", consumer_id)


def failed_key(job_type: str, prefix: str = JOBS_PREFIX) -> str:
    return redis_key(prefix, job_type, "failed")


def consumers_key(prefix: str = JOBS_PREFIX) -> str:
    """ZSET of consumer ids scored by their last heartbeat (epoch seconds)."""
    return redis_key(prefix, "consumers")
