"""DeskPilot – Pipeline entry points.

`enqueue_ingest` is the only producer interface the webhook routes use;
`register_workers` binds the job handlers to a queue.
"""

from typing import Any

import structlog

from app.core.models import Channel
from app.jobs.schemas import IngestPayload, JobType
from app.pipeline.context import PipelineContext
from app.pipeline.ingest import IngestWorker
from app.pipeline.notify import EscalationNotifier
from app.pipeline.respond import ResponseWorker

logger = structlog.get_logger()


async def enqueue_ingest(ctx: PipelineContext, channel: Channel, raw_payload: Any) -> list[str]:
    """Normalize a verified webhook body and enqueue one ingest job per message.

    Returns:
        The enqueued job ids; empty when the payload held no customer message.

    Raises:
        LookupError: No adapter is configured for the channel.
        Exception: Whatever the queue backend raises when it cannot accept a job.
    """
    adapter = ctx.adapter_for(channel)
    if adapter is None:
        raise LookupError(f"No channel adapter for {channel}")

    job_ids = []
    for message in adapter.normalize(raw_payload):
        job_ids.append(
            await ctx.queue.enqueue(JobType.INGEST, IngestPayload(**message.model_dump()))
        )
    if not job_ids:
        logger.debug("intake.no_messages", channel=Channel(channel).value)
    return job_ids


def register_workers(ctx: PipelineContext) -> None:
    ctx.queue.process(JobType.INGEST, IngestWorker(ctx))
    ctx.queue.process(JobType.RESPOND, ResponseWorker(ctx))
    ctx.queue.process(JobType.NOTIFY_ESCALATION, EscalationNotifier(ctx))
