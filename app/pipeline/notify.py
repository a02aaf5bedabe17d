"""DeskPilot – Escalation Notifier.

Handles `notify_escalation` jobs: tells every dashboard in the admin room
that a conversation now needs a human agent.
"""

import structlog

from app.gateway.realtime import ADMIN_ROOM
from app.jobs.schemas import NotifyEscalationJob
from app.pipeline.context import PipelineContext

logger = structlog.get_logger()


class EscalationNotifier:
    def __init__(self, ctx: PipelineContext) -> None:
        self._ctx = ctx

    async def __call__(self, job: NotifyEscalationJob) -> None:
        conversation = await self._ctx.store.get_conversation(job.payload.conversation_id)
        self._ctx.broadcaster.emit_to_room(
            ADMIN_ROOM,
            "conversation_escalated",
            {
                "conversationId": conversation.id,
                "customerName": conversation.customer_name,
                "channel": conversation.channel.value,
                "reason": job.payload.reason,
            },
        )
        logger.info("notify.escalation_sent", job_id=job.id, conversation_id=conversation.id)
