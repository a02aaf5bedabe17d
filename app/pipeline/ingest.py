"""DeskPilot – Ingest Worker.

Handles `ingest` jobs: resolves the customer's conversation, stores the
customer message and chains a `respond` job.

Message order inside a conversation follows created_at, which is the
platform's send time whenever the platform reported one. With the Redis
backend two jobs for the same customer may run out of arrival order (a
retried job runs after its successors); the stored order stays correct
because it never depends on processing order.
"""

from datetime import datetime, timezone

import structlog

from app.core.models import Sender
from app.jobs.schemas import IngestJob, JobType, RespondPayload
from app.pipeline.context import PipelineContext

logger = structlog.get_logger()

# Values above this are epoch milliseconds (Instagram), below are seconds (WhatsApp).
_EPOCH_MS_THRESHOLD = 10**11


def parse_platform_timestamp(value: str | int | float | None) -> datetime | None:
    """Parse a platform-reported send time.

    Accepts epoch seconds, epoch milliseconds (numbers or numeric strings)
    and ISO-8601 strings. Returns None when the value is absent or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            value = float(raw)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    try:
        seconds = float(value)
        if seconds <= 0:
            return None
        if seconds > _EPOCH_MS_THRESHOLD:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


class IngestWorker:
    def __init__(self, ctx: PipelineContext) -> None:
        self._ctx = ctx

    async def __call__(self, job: IngestJob) -> None:
        payload = job.payload
        store = self._ctx.store

        # A failure here fails the job before anything was written.
        conversation, created = await store.find_or_create_conversation(
            payload.channel,
            payload.customer_external_id,
            payload.customer_name,
        )

        created_at = parse_platform_timestamp(payload.platform_timestamp)
        if payload.platform_timestamp is not None and created_at is None:
            logger.warning(
                "ingest.timestamp_unparseable",
                job_id=job.id,
                conversation_id=conversation.id,
                value=str(payload.platform_timestamp)[:50],
            )

        message, appended = await store.append_message(
            conversation.id,
            Sender.CUSTOMER,
            payload.text,
            created_at=created_at,
            platform_message_id=payload.platform_message_id,
            ingest_job_id=job.id,
        )
        if appended:
            logger.info(
                "ingest.message_stored",
                job_id=job.id,
                conversation_id=conversation.id,
                message_id=message.id,
                conversation_created=created,
                channel=payload.channel.value,
            )
            self._ctx.broadcaster.emit_to_conversation(conversation.id, "new_message", message.to_event())
        elif message.respond_enqueued or message.ingest_job_id != job.id:
            logger.info(
                "ingest.duplicate_skipped",
                job_id=job.id,
                conversation_id=conversation.id,
                message_id=message.id,
            )
            return
        else:
            # Retry of this job after it stored the message but before the reply was queued.
            logger.warning(
                "ingest.resuming_partial_write",
                job_id=job.id,
                conversation_id=conversation.id,
                message_id=message.id,
                attempt=job.attempts,
            )

        await self._ctx.queue.enqueue(
            JobType.RESPOND,
            RespondPayload(
                conversation_id=conversation.id,
                customer_message=payload.text,
                channel=payload.channel,
                message_id=message.id,
            ),
        )
        await store.mark_respond_enqueued(message.id)
