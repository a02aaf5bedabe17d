"""DeskPilot – Response Worker.

Handles `respond` jobs, one customer turn each:

  1. Conversation already with a human → nothing to do.
  2. Escalation → status HUMAN, `escalated_to_human` event, `notify_escalation` job. No AI reply.
  3. Otherwise → context window, reply (LLM or fallback), store as AI message,
     deliver through the channel adapter, record the delivery flag, and emit
     `new_message` whether or not delivery succeeded.

Realtime events are emitted only after the state they describe is stored.
A redelivered job (Redis backend) may deliver a reply again.
"""

import structlog

from app.core.models import ConversationStatus, Sender
from app.jobs.schemas import EscalationNotice, JobType, RespondJob
from app.pipeline.context import PipelineContext

logger = structlog.get_logger()

ESCALATED_NOTICE = "This conversation has been escalated to a human agent."


class ResponseWorker:
    def __init__(self, ctx: PipelineContext) -> None:
        self._ctx = ctx

    async def __call__(self, job: RespondJob) -> None:
        payload = job.payload
        conversation = await self._ctx.store.get_conversation(payload.conversation_id)

        if conversation.status == ConversationStatus.HUMAN:
            logger.info("respond.skipped_human_mode", job_id=job.id, conversation_id=conversation.id)
            return

        if await self._ctx.classifier.should_escalate(conversation.id, payload.customer_message):
            await self._escalate(job)
            return

        generator = self._ctx.generator
        context = await generator.load_context(conversation.id, payload.customer_message, payload.message_id)
        reply = await generator.generate(conversation, payload.customer_message, context)

        message, _ = await self._ctx.store.append_message(conversation.id, Sender.AI, reply.text)
        logger.info(
            "respond.reply_stored",
            job_id=job.id,
            conversation_id=conversation.id,
            message_id=message.id,
            source=reply.source,
        )

        adapter = self._ctx.adapter_for(conversation.channel)
        if adapter is None:
            logger.warning("respond.no_adapter", conversation_id=conversation.id, channel=conversation.channel.value)
        else:
            delivered = await adapter.deliver(conversation, reply.text)
            message = await self._ctx.store.mark_delivered(message.id, delivered)
            if not delivered:
                logger.warning(
                    "respond.delivery_failed",
                    job_id=job.id,
                    conversation_id=conversation.id,
                    message_id=message.id,
                    channel=conversation.channel.value,
                )

        self._ctx.broadcaster.emit_to_conversation(conversation.id, "new_message", message.to_event())

    async def _escalate(self, job: RespondJob) -> None:
        conversation_id = job.payload.conversation_id
        conversation = await self._ctx.store.update_status(conversation_id, ConversationStatus.HUMAN)
        logger.info("respond.escalated", job_id=job.id, conversation_id=conversation_id)

        self._ctx.broadcaster.emit_to_conversation(
            conversation_id,
            "escalated_to_human",
            {
                "conversationId": conversation_id,
                "status": conversation.status.value,
                "message": ESCALATED_NOTICE,
            },
        )
        await self._ctx.queue.enqueue(
            JobType.NOTIFY_ESCALATION,
            EscalationNotice(conversation_id=conversation_id),
        )
